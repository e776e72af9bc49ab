"""Exception hierarchy for the sync engine.

Local errors (validation, missing records, illegal status transitions) are
raised synchronously to the caller. Remote errors carry a ``retryable`` flag
that the queue uses to decide between backoff-retry and a terminal failure.
"""

from typing import Any


class LedgerSyncError(Exception):
    """Base class for all ledgersync errors."""


class ValidationError(LedgerSyncError, ValueError):
    """Entity data failed structural validation."""

    retryable = False

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(LedgerSyncError, KeyError):
    """Requested entity or operation does not exist."""

    retryable = False

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class InvalidTransitionError(LedgerSyncError):
    """A sync status change is not allowed by the state machine."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move from '{current}' to '{target}'")
        self.current = current
        self.target = target


class ChecksumMismatchError(ValidationError):
    """An import bundle's checksum does not match its data."""


class SyncInProgressError(LedgerSyncError):
    """A sync cycle is already running for this dataset."""


class MigrationError(LedgerSyncError):
    """Stored data could not be upgraded to the requested schema version."""

    def __init__(self, message: str, backup_path: str | None = None):
        super().__init__(message)
        self.backup_path = backup_path


class TransportError(LedgerSyncError):
    """Network failure talking to the remote store. Always retryable."""

    retryable = True

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteRejectionError(LedgerSyncError):
    """The remote store refused an operation. Never retried automatically."""

    retryable = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(RemoteRejectionError):
    """Credentials were missing, expired or not authorized."""


class RemoteValidationError(RemoteRejectionError):
    """The remote store rejected the payload shape or values."""


class RemoteConflictError(RemoteRejectionError):
    """The remote store holds a different version of the record."""

    def __init__(
        self,
        message: str,
        remote_record: dict[str, Any] | None = None,
        status_code: int | None = 409,
    ):
        super().__init__(message, status_code)
        self.remote_record = remote_record


def is_retryable(error: BaseException) -> bool:
    """Classify an error raised while dispatching an operation.

    Timeouts and anything not explicitly marked as a rejection are treated
    as transport failures.
    """
    return bool(getattr(error, "retryable", True))
