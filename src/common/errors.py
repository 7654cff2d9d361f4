from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Sequence


class ModelError(Exception):
    """Root of all errors raised by the user model and its persistence."""


class DuplicateNameError(ModelError):
    """A user with the same name is already registered."""


class UnknownUserError(ModelError):
    """An operation needed a user that is not registered."""


class EncryptionError(ModelError):
    """Key material could not be used, or a value could not be encrypted/decrypted."""


class DocumentError(ModelError):
    """
    Reading or writing a YAML document failed.

    `path` is the document involved (None when the failure is not tied to a file).
    `errors` holds the individual failures when several writes failed together.
    """

    def __init__(
        self,
        message: str,
        *,
        path: Optional[Path] = None,
        errors: Sequence[ModelError] = (),
    ) -> None:
        super().__init__(message)
        self.path = path
        self.errors = list(errors)


class BadYamlError(DocumentError):
    """Document content is malformed or has a value of the wrong type for `key`."""

    def __init__(
        self,
        message: str,
        *,
        key: Optional[str] = None,
        value: Any = None,
        path: Optional[Path] = None,
    ) -> None:
        super().__init__(message, path=path)
        self.key = key
        self.value = value
