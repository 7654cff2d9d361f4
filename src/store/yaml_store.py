from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from accounts.models import User
from accounts.users import DEFAULT_STATE_PREFIX, PILLAR_USERS_KEY, Users
from common.crypto import Encryptor, FernetEncryptor
from common.errors import BadYamlError, DocumentError, DuplicateNameError, EncryptionError, ModelError


# Environment variable names for convenience configuration
ENV_STATE_PATH = "SALTUI_STATE_PATH"
ENV_PILLAR_PATH = "SALTUI_PILLAR_PATH"
ENV_KEY_PATH = "SALTUI_KEY_PATH"
ENV_STATE_PREFIX = "SALTUI_STATE_PREFIX"

logger = logging.getLogger(__name__)


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _dump_yaml(document: Mapping[str, Any]) -> str:
    # Block style, stable key order, no line wrapping: wrapped scalars are
    # not read back reliably by every YAML consumer.
    return yaml.safe_dump(
        document,
        indent=2,
        width=float("inf"),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


class _DuplicateKeyError(yaml.constructor.ConstructorError):
    def __init__(self, key: Any, mapping: yaml.MappingNode, key_node: yaml.Node) -> None:
        super().__init__(
            "while constructing a mapping",
            mapping.start_mark,
            f"found duplicate key {key!r}",
            key_node.start_mark,
        )
        self.key = key
        self.mapping = mapping


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects a key repeated within one mapping instead of keeping the last."""

    def construct_mapping(self, node, deep=False):
        if isinstance(node, yaml.MappingNode):
            seen = set()
            for key_node, _value_node in node.value:
                # keys pulled in by `<<` may be overridden
                if key_node.tag == "tag:yaml.org,2002:merge":
                    continue
                key = self.construct_object(key_node, deep=deep)
                try:
                    repeated = key in seen
                except TypeError:
                    # unhashable; reported by the base constructor
                    continue
                if repeated:
                    raise _DuplicateKeyError(key, node, key_node)
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _is_users_mapping(root: Optional[yaml.Node], node: yaml.Node) -> bool:
    if not isinstance(root, yaml.MappingNode):
        return False
    return any(
        getattr(key_node, "value", None) == PILLAR_USERS_KEY and value_node is node
        for key_node, value_node in root.value
    )


def _load_yaml(path: Path) -> Any:
    """Parse `path`; a repeated user name under `users` is a DuplicateNameError."""
    root: Optional[yaml.Node] = None
    try:
        with path.open("r", encoding="utf-8") as f:
            loader = _UniqueKeyLoader(f)
            try:
                root = loader.get_single_node()
                return loader.construct_document(root) if root is not None else None
            finally:
                loader.dispose()
    except OSError as ex:
        raise DocumentError(f"Cannot read {path}: {ex}", path=path) from ex
    except UnicodeDecodeError as ex:
        raise BadYamlError(f"Cannot decode {path} as UTF-8: {ex}", path=path) from ex
    except _DuplicateKeyError as ex:
        if _is_users_mapping(root, ex.mapping):
            raise DuplicateNameError(f"User '{ex.key}' appears more than once in {path}") from ex
        raise BadYamlError(
            f"Duplicate key '{ex.key}' in {path}: {ex}",
            key=str(ex.key),
            path=path,
        ) from ex
    except yaml.YAMLError as ex:
        raise BadYamlError(f"Cannot parse {path}: {ex}", path=path) from ex


def _write_document(path: Path, document: Mapping[str, Any]) -> None:
    """Serialize fully, then truncate and write `path`."""
    try:
        text = _dump_yaml(document)
    except yaml.YAMLError as ex:
        raise BadYamlError(f"Cannot serialize document for {path}: {ex}", path=path) from ex
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            f.write(text)
    except OSError as ex:
        raise DocumentError(f"Cannot write {path}: {ex}", path=path) from ex


def users_from_pillar(document: Any, *, path: Optional[Path] = None) -> Users:
    """Build a Users collection from a parsed pillar document.

    - An empty document, or one without a `users` key, gives no users.
    - Each entry under `users` is added with `Users.add`, so a repeated
      name raises DuplicateNameError instead of overwriting.
    """
    users = Users()
    if document is None:
        return users
    if not isinstance(document, dict):
        raise BadYamlError(
            f"Pillar document {path} is not a mapping (got {type(document).__name__})",
            path=path,
        )
    if PILLAR_USERS_KEY not in document:
        return users

    users_map = document[PILLAR_USERS_KEY]
    if users_map is None:
        raise BadYamlError(f"Value of '{PILLAR_USERS_KEY}' key was null in {path}", key=PILLAR_USERS_KEY, path=path)
    if not isinstance(users_map, dict):
        raise BadYamlError(
            f"Cannot find users map in pillar {path}: '{PILLAR_USERS_KEY}' is {type(users_map).__name__}",
            key=PILLAR_USERS_KEY,
            value=users_map,
            path=path,
        )

    for key, value in users_map.items():
        if key is None:
            raise BadYamlError(f"User entry key is null in {path}", key=PILLAR_USERS_KEY, path=path)
        name = str(key)
        if not isinstance(value, dict):
            raise BadYamlError(
                f"Value for user '{name}' in {path} is not a mapping (got {type(value).__name__})",
                key=name,
                value=value,
                path=path,
            )
        try:
            user = User.from_pillar_entry(value)
        except BadYamlError as ex:
            raise BadYamlError(
                f"Bad entry for user '{name}' in {path}: {ex}",
                key=f"{PILLAR_USERS_KEY}:{name}:{ex.key}",
                value=ex.value,
                path=path,
            ) from ex
        if user.name != name:
            raise BadYamlError(
                f"Entry '{name}' in {path} holds user named '{user.name}'",
                key=f"{PILLAR_USERS_KEY}:{name}:name",
                value=user.name,
                path=path,
            )
        users.add(user)
    return users


class UserStateStore:
    """
    File-backed persistence for `Users` as a Salt state and a Salt pillar.

    Usage
    - `load()` reads the pillar (the full record of every user) and rebuilds
      the users from it. The state file is output only.
    - `save(users)` writes the state, then the pillar with passwords encrypted
      by the Fernet key at `key_path`. The two writes are independent: a
      failure in one does not stop or undo the other.

    Environment variables (optional)
    - `SALTUI_STATE_PATH`:   path of the Salt state file (.sls)
    - `SALTUI_PILLAR_PATH`:  path of the Salt pillar file (.sls)
    - `SALTUI_KEY_PATH`:     path of the file holding the Fernet key
    - `SALTUI_STATE_PREFIX`: prefix of the per-user state IDs
    """

    def __init__(
        self,
        *,
        state_path: os.PathLike[str] | str,
        pillar_path: os.PathLike[str] | str,
        key_path: Optional[os.PathLike[str] | str] = None,
        state_prefix: str = DEFAULT_STATE_PREFIX,
    ) -> None:
        self.state_path = Path(state_path)
        self.pillar_path = Path(pillar_path)
        self.key_path = Path(key_path) if key_path is not None else None
        self.state_prefix = state_prefix

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls, *, require_key: bool = True) -> "UserStateStore":
        state_path = _getenv(ENV_STATE_PATH)
        pillar_path = _getenv(ENV_PILLAR_PATH)
        key_path = _getenv(ENV_KEY_PATH)
        required = [(ENV_STATE_PATH, state_path), (ENV_PILLAR_PATH, pillar_path)]
        if require_key:
            required.append((ENV_KEY_PATH, key_path))
        missing = [name for name, val in required if not val]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables for user state store: {', '.join(missing)}"
            )
        return cls(
            state_path=state_path,
            pillar_path=pillar_path,
            key_path=key_path,
            state_prefix=_getenv(ENV_STATE_PREFIX, DEFAULT_STATE_PREFIX),
        )

    # -------- Core operations --------
    def load(self) -> Users:
        """Read the pillar file and return the users it holds.

        Raises:
        - DocumentError if the file cannot be read.
        - BadYamlError if the content is malformed; the message names the
          document and the offending key.
        - DuplicateNameError if a user name appears twice.
        """
        return load_users(self.pillar_path)

    def write_state(self, users: Users) -> None:
        _write_document(self.state_path, users.to_state_document(self.state_prefix))
        logger.info("Wrote state for %d users to %s", len(users), self.state_path)

    def write_pillar(self, users: Users, encryptor: Encryptor) -> None:
        try:
            document = users.to_pillar_document(encryptor)
        except EncryptionError as ex:
            raise EncryptionError(f"Cannot encrypt pillar for {self.pillar_path}: {ex}") from ex
        _write_document(self.pillar_path, document)
        logger.info("Wrote pillar for %d users to %s", len(users), self.pillar_path)

    def save(self, users: Users) -> None:
        """Write the state and pillar files for `users`.

        Raises EncryptionError before writing anything if the key cannot be
        used. If one write fails its error is raised after the other write has
        been attempted; if both fail, a DocumentError listing both is raised.
        """
        if self.key_path is None:
            raise RuntimeError("No key path configured; cannot encrypt pillar")
        encryptor = FernetEncryptor.from_key_file(self.key_path)

        errors: List[ModelError] = []
        try:
            self.write_state(users)
        except ModelError as ex:
            logger.error("Failed to write state %s: %s", self.state_path, ex)
            errors.append(ex)
        try:
            self.write_pillar(users, encryptor)
        except ModelError as ex:
            logger.error("Failed to write pillar %s: %s", self.pillar_path, ex)
            errors.append(ex)

        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise DocumentError(
                f"Failed to write both {self.state_path} and {self.pillar_path}",
                errors=errors,
            ) from errors[0]


# -------- Convenience top-level helpers --------
def load_users(pillar_path: os.PathLike[str] | str) -> Users:
    path = Path(pillar_path)
    users = users_from_pillar(_load_yaml(path), path=path)
    logger.info("Loaded %d users from %s", len(users), path)
    return users


def save_users(
    users: Users,
    *,
    state_path: os.PathLike[str] | str,
    pillar_path: os.PathLike[str] | str,
    key_path: os.PathLike[str] | str,
    state_prefix: str = DEFAULT_STATE_PREFIX,
) -> None:
    store = UserStateStore(
        state_path=state_path,
        pillar_path=pillar_path,
        key_path=key_path,
        state_prefix=state_prefix,
    )
    store.save(users)
