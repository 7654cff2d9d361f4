from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from .errors import EncryptionError


class Encryptor(Protocol):
    def encrypt(self, plain: Optional[str]) -> Optional[str]:
        ...


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


class FernetEncryptor:
    """
    Encrypts sensitive pillar values (passwords) with a Fernet key.

    Notes
    - `encrypt(None)` is `None`; a null password is never an error.
    - Every non-null value is encrypted, including one that is already a token.
      Keeping a stored token as-is is the caller's job (see `User.to_pillar_entry`).
    - Tokens are single-line ASCII, safe to store as plain YAML scalars.
    """

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = _to_fernet(key)
        except (ValueError, TypeError) as ex:
            raise EncryptionError("Invalid Fernet key") from ex

    @classmethod
    def from_key_file(cls, path: os.PathLike[str] | str) -> "FernetEncryptor":
        key_path = Path(path)
        try:
            raw = key_path.read_bytes()
        except OSError as ex:
            raise EncryptionError(f"Cannot read key file {key_path}: {ex}") from ex
        try:
            return cls(raw.strip())
        except EncryptionError as ex:
            raise EncryptionError(f"Error creating encryptor from key {key_path}") from ex

    def encrypt(self, plain: Optional[str]) -> Optional[str]:
        if plain is None:
            return None
        try:
            token = self._fernet.encrypt(plain.encode("utf-8"))
        except (TypeError, ValueError) as ex:
            raise EncryptionError(f"Error encrypting data: {ex}") from ex
        return token.decode("ascii")

    def decrypt(self, token: Optional[str]) -> Optional[str]:
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("utf-8")).decode("utf-8")
        except InvalidToken as ex:
            raise EncryptionError("Failed to decrypt value: invalid Fernet token") from ex


def generate_key_file(path: os.PathLike[str] | str) -> Path:
    """Write a fresh Fernet key to `path` (owner read/write only) and return the path."""
    key_path = Path(path)
    try:
        key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(Fernet.generate_key())
    except OSError as ex:
        raise EncryptionError(f"Cannot write key file {key_path}: {ex}") from ex
    return key_path
