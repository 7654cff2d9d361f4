from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationError

from common.crypto import Encryptor
from common.errors import BadYamlError


# Salt state directives for the two lifecycle branches
STATE_PRESENT = "user.present"
STATE_ABSENT = "user.absent"

# Jinja expression resolved by Salt against the pillar when the state is applied.
# The state document never holds the password itself.
PASSWORD_PILLAR_REF = "{{{{ salt['pillar.get']('users:{name}:password') }}}}"

T = TypeVar("T")


def add_if_present(
    entries: List[Dict[str, Any]],
    key: str,
    value: Optional[T],
    default: Optional[T] = None,
) -> None:
    """Append `{key: value}` unless the value is unset or equal to its default.

    Every optional attribute of a state entry goes through here, so the
    suppression rules stay identical across fields:
    - `None` is never emitted.
    - A value equal to a non-None `default` is not emitted.
    """
    if value is None:
        return
    if default is not None and value == default:
        return
    entries.append({key: value})


class User(BaseModel):
    """
    A user account to be managed by SaltStack.

    Attribute names are descriptive; the aliases are the Salt `user.present` /
    `user.absent` argument names, which are also the keys of a pillar entry.

    Fields
    - Lifecycle: `present` chooses which attributes go into the state document.
      `purge` and `force` only apply to absent users; every other attribute only
      applies to present users. Both subsets are kept regardless of `present`,
      so toggling it never loses data.
    - Identity: uid/gid (None lets the OS choose), gid_from_name, system.
    - Home and shell: home, create_home, shell.
    - Password: password_plain is the secret. It is encrypted in the pillar and
      only referenced (never written) in the state. After `from_pillar_entry`
      it holds the stored token, which is written back unchanged until a new
      password is assigned.
    - GECOS (Linux/BSD): fullname, roomnumber, workphone, homephone, other.
    - Shadow (Linux): date_last_change and expire_date are days since epoch;
      min_days, max_days, inact_days and warn_days are day counts.
    - Windows: win_homedrive, win_profile, win_logonscript, win_description.
    - groups: ordered, duplicates are kept as given.

    Errors
    - Constructing or assigning with an invalid value (empty name, wrong type,
      unknown attribute) raises `pydantic.ValidationError`, as does renaming a
      user. These are programming errors and are not `ModelError`s.
    - Document content goes through `from_pillar_entry`, which raises
      `BadYamlError` instead.
    """

    model_config = ConfigDict(
        strict=True,
        extra="forbid",
        validate_assignment=True,
        populate_by_name=True,
    )

    name: str = Field(min_length=1, frozen=True)
    present: bool = True

    uid: Optional[int] = None
    gid: Optional[int] = None
    gid_from_name: bool = False
    system: bool = False

    home: Optional[str] = None
    create_home: bool = Field(default=True, alias="createhome")

    hash_password: bool = False
    enforce_password: bool = True
    password_plain: Optional[str] = Field(default=None, alias="password", repr=False)

    shell: Optional[str] = None

    gecos_fullname: Optional[str] = Field(default=None, alias="fullname")
    gecos_room_number: Optional[str] = Field(default=None, alias="roomnumber")
    gecos_workphone: Optional[str] = Field(default=None, alias="workphone")
    gecos_homephone: Optional[str] = Field(default=None, alias="homephone")
    gecos_other: Optional[str] = Field(default=None, alias="other")

    date_last_change: Optional[int] = Field(default=None, alias="date")
    min_days: Optional[int] = Field(default=None, alias="mindays")
    max_days: Optional[int] = Field(default=None, alias="maxdays")
    inact_days: Optional[int] = Field(default=None, alias="inactdays")
    warn_days: Optional[int] = Field(default=None, alias="warndays")
    expire_date: Optional[int] = Field(default=None, alias="expire")

    win_homedrive: Optional[str] = None
    win_profile: Optional[str] = None
    win_logonscript: Optional[str] = None
    win_description: Optional[str] = None

    purge: bool = False
    force: bool = False

    groups: List[str] = Field(default_factory=list)

    # Password value as read from the pillar (already encrypted there)
    _stored_password: Optional[str] = PrivateAttr(default=None)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, User):
            return NotImplemented
        return self.model_dump() == other.model_dump()

    def __hash__(self) -> int:
        return hash(
            tuple(
                (k, tuple(v) if isinstance(v, list) else v)
                for k, v in self.model_dump().items()
            )
        )

    # -------- State document --------
    def to_state_entry(self) -> Dict[str, List[Dict[str, Any]]]:
        """Return `{directive: [{key: value}, ...]}` for this user.

        The name always comes first. Remaining entries follow the order of
        `_PRESENT_FIELDS` or `_ABSENT_FIELDS` and are filtered by `add_if_present`.
        """
        entries: List[Dict[str, Any]] = [{"name": self.name}]
        if self.present:
            self._emit(entries, _PRESENT_FIELDS)
            return {STATE_PRESENT: entries}
        self._emit(entries, _ABSENT_FIELDS)
        return {STATE_ABSENT: entries}

    def _emit(self, entries: List[Dict[str, Any]], fields: Tuple[str, ...]) -> None:
        model_fields = type(self).model_fields
        for field in fields:
            info = model_fields[field]
            value = getattr(self, field)
            if field == "password_plain" and value is not None:
                value = PASSWORD_PILLAR_REF.format(name=self.name)
            elif isinstance(value, list):
                value = list(value)
            add_if_present(
                entries,
                info.alias or field,
                value,
                info.get_default(call_default_factory=True),
            )

    # -------- Pillar document --------
    def to_pillar_entry(self, encryptor: Encryptor) -> Dict[str, Any]:
        """Return every attribute keyed by document key, with the password encrypted.

        A password loaded by `from_pillar_entry` and not changed since is
        written back as loaded, so it is not encrypted a second time.
        """
        entry = self.model_dump(by_alias=True)
        if self.password_plain is not None and self.password_plain == self._stored_password:
            entry["password"] = self.password_plain
        else:
            entry["password"] = encryptor.encrypt(self.password_plain)
        return entry

    @classmethod
    def from_pillar_entry(cls, entry: Mapping[Any, Any]) -> "User":
        """Build a user from a pillar entry.

        Raises BadYamlError when `name` is missing, a key is not a known
        document key, or a value has the wrong type. A missing `present`
        key means present.
        """
        if "name" not in entry:
            raise BadYamlError("User entry has no 'name' key", key="name")
        name = entry["name"]

        known = document_keys()
        for key, value in entry.items():
            if key not in known:
                raise BadYamlError(
                    f"Unknown key '{key}' in entry for user '{name}'",
                    key=str(key),
                    value=value,
                )

        try:
            user = cls.model_validate(dict(entry))
        except ValidationError as ex:
            err = ex.errors()[0]
            loc = err.get("loc") or ("name",)
            key = str(loc[0])
            value = err.get("input")
            raise BadYamlError(
                f"Invalid value {value!r} for key '{key}' of user '{name}': "
                f"{err['msg']} (got {type(value).__name__})",
                key=key,
                value=value,
            ) from ex
        user._stored_password = user.password_plain
        return user


# Emission order for present users
_PRESENT_FIELDS: Tuple[str, ...] = (
    "uid",
    "gid",
    "gid_from_name",
    "system",
    "home",
    "create_home",
    "hash_password",
    "enforce_password",
    "password_plain",
    "shell",
    "gecos_fullname",
    "gecos_room_number",
    "gecos_workphone",
    "gecos_homephone",
    "gecos_other",
    "date_last_change",
    "min_days",
    "max_days",
    "inact_days",
    "warn_days",
    "expire_date",
    "win_homedrive",
    "win_profile",
    "win_logonscript",
    "win_description",
    "groups",
)

_ABSENT_FIELDS: Tuple[str, ...] = ("purge", "force")


def document_keys() -> Tuple[str, ...]:
    """Keys of a pillar entry, in emission order."""
    return tuple(info.alias or name for name, info in User.model_fields.items())
