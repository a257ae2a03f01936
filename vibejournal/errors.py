# -*- coding: utf-8 -*-
"""Exception taxonomy for vibejournal.

Query misses are not errors: lookups return ``None`` (or ``False``).
Everything else that can go wrong surfaces as a subclass of JournalError.
"""
from __future__ import annotations

from typing import Optional


class JournalError(Exception):
    """Base class for all vibejournal errors."""


class NotInitializedError(JournalError, RuntimeError):
    """An operation was called before its required setup completed."""


class DuplicateKeyError(JournalError, KeyError):
    """``add`` was called with a key that already exists in the collection."""

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"{collection}: key {key!r} already exists")
        self.collection = collection
        self.key = key

    def __str__(self) -> str:
        return self.args[0]


class DecryptionError(JournalError):
    """Wrong key or corrupted ciphertext."""


class InvalidPasswordError(DecryptionError):
    """The stored password verifier rejected the supplied password."""


class RemoteUnavailableError(JournalError):
    """Network, credential or rate-limit failure on the remote analysis path."""


class MalformedRemoteResponseError(RemoteUnavailableError):
    """The remote analysis payload was not the expected JSON shape."""


class BulkOperationError(JournalError):
    """A bulk mutation stopped early; completed per-entry updates remain."""

    def __init__(
        self,
        operation: str,
        completed: int,
        total: int,
        failed_id: Optional[str] = None,
    ) -> None:
        msg = f"{operation} stopped after {completed}/{total} records"
        if failed_id:
            msg += f" (failed on {failed_id})"
        super().__init__(msg)
        self.operation = operation
        self.completed = completed
        self.total = total
        self.failed_id = failed_id
