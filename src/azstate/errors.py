"""Exception hierarchy for the Azure Blob state backend."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .locks import LockRecord


class StateBackendError(Exception):
    """Base class for every error raised by ``azstate``."""

    def __init__(self, message: str, *, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class ConfigurationError(StateBackendError):
    """Raised when configuration is incomplete, ambiguous or invalid."""

    def __init__(
        self,
        message: str,
        *,
        missing: Sequence[str] = (),
        conflicting: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.missing = tuple(missing)
        self.conflicting = tuple(conflicting)


class AuthenticationError(StateBackendError):
    """Raised when the identity provider or storage service rejects a credential."""


class NotFoundError(StateBackendError):
    """Raised when an object expected to exist is absent."""


class LockNotFoundError(NotFoundError):
    """Raised when a lock operation targets an object that is not locked."""


class ConflictError(StateBackendError):
    """Raised when another writer or lock holder got there first."""


class LockConflictError(ConflictError):
    """Raised when the state object is leased by someone else."""

    def __init__(self, *, key: str, lock: LockRecord | None) -> None:
        if lock is None:
            message = f"State {key!r} is locked; the lock record is not yet visible."
        else:
            message = (
                f"State {key!r} is locked by {lock.who} since "
                f"{lock.created.isoformat()} (lock ID {lock.id}, operation {lock.operation or '-'})."
            )
        super().__init__(message, key=key)
        self.lock = lock


class LockLostError(ConflictError):
    """Raised when a write presents a lease that has expired or was broken."""

    def __init__(self, *, key: str, lock_id: str | None = None) -> None:
        held = f" (lock ID {lock_id})" if lock_id else ""
        super().__init__(
            f"The lock on {key!r}{held} is no longer held: its lease expired or was broken. "
            "Acquire the lock again and re-read state before writing.",
            key=key,
        )
        self.lock_id = lock_id


class FingerprintConflictError(ConflictError):
    """Raised when a conditional write observes content newer than the caller's copy."""

    def __init__(self, *, key: str, expected: str | None, actual: str | None) -> None:
        super().__init__(
            f"State {key!r} changed since it was last read "
            f"(expected fingerprint {expected}, found {actual}).",
            key=key,
        )
        self.expected = expected
        self.actual = actual


class LockMismatchError(StateBackendError):
    """Raised when an unlock presents a lock ID that does not own the lease."""

    def __init__(self, *, key: str, lock_id: str, lock: LockRecord | None) -> None:
        holder = lock.id if lock is not None else "unknown"
        super().__init__(
            f"Lock ID {lock_id!r} does not match the lock held on {key!r} (held by {holder}).",
            key=key,
        )
        self.lock_id = lock_id
        self.lock = lock


class StorageTimeoutError(StateBackendError):
    """Raised when a storage request exceeds its deadline."""

    def __init__(self, message: str, *, key: str | None = None, operation: str) -> None:
        super().__init__(message, key=key)
        self.operation = operation


class StorageError(StateBackendError):
    """Raised when the storage service or transport fails."""

    def __init__(
        self,
        message: str,
        *,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message, key=key)
        self.operation = operation


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ConflictError",
    "FingerprintConflictError",
    "LockConflictError",
    "LockLostError",
    "LockMismatchError",
    "LockNotFoundError",
    "NotFoundError",
    "StateBackendError",
    "StorageError",
    "StorageTimeoutError",
]
