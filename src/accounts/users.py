from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional

from common.crypto import Encryptor
from common.errors import DuplicateNameError, UnknownUserError

from .models import User


# Prefix of the per-user state IDs: "<prefix>-<name>"
DEFAULT_STATE_PREFIX = "saltui-users"

# Top-level key of the pillar document
PILLAR_USERS_KEY = "users"

logger = logging.getLogger(__name__)


class Users:
    """
    The users managed by the system, keyed by name.

    - Thread-safe for readers: `all()` and iteration work on a snapshot, so a
      rendering thread never sees a half-applied mutation.
    - Intended for a single mutator; mutations are serialized by one lock.
    - `replace_all()` is not atomic: it clears first, so a duplicate name in the
      new set leaves the users added before it in place.
    """

    def __init__(self, users: Iterable[User] = ()) -> None:
        self._users: Dict[str, User] = {}
        self._lock = threading.Lock()
        for user in users:
            self.add(user)

    def add(self, user: User) -> None:
        with self._lock:
            if user.name in self._users:
                raise DuplicateNameError(f"User '{user.name}' already exists!")
            self._users[user.name] = user

    def remove(self, name: str) -> None:
        with self._lock:
            if self._users.pop(name, None) is None:
                raise UnknownUserError(f"Cannot find user with name '{name}' to delete.")

    def get(self, name: str) -> Optional[User]:
        """Return the user with the given name, or None."""
        with self._lock:
            return self._users.get(name)

    def all(self) -> List[User]:
        """Snapshot of every user, ordered by name."""
        with self._lock:
            return [self._users[name] for name in sorted(self._users)]

    def replace_all(self, users: Iterable[User]) -> None:
        with self._lock:
            self._users.clear()
        for user in users:
            self.add(user)

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._users

    def __iter__(self) -> Iterator[User]:
        return iter(self.all())

    # -------- Documents --------
    def to_state_document(self, prefix: str = DEFAULT_STATE_PREFIX) -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
        """All users as a Salt state: `{"<prefix>-<name>": {directive: [...]}}`."""
        doc: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        for user in self.all():
            doc[f"{prefix}-{user.name}"] = user.to_state_entry()
            logger.debug("Mapped user %s to state (present=%s)", user.name, user.present)
        return doc

    def to_pillar_document(self, encryptor: Encryptor) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """All users as pillar data: `{"users": {name: {...}}}`, passwords encrypted."""
        users: Dict[str, Dict[str, Any]] = {}
        for user in self.all():
            users[user.name] = user.to_pillar_entry(encryptor)
            logger.debug("Mapped user %s to pillar", user.name)
        return {PILLAR_USERS_KEY: users}
