"""
Error taxonomy for sync.

Every failure the library raises derives from SyncError so callers can
catch one type. Subclasses map to the recovery policy: transport errors
are worth retrying unchanged, everything else is fatal for the
operation that raised it.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all sync failures."""

    recoverable = False


class TransportError(SyncError):
    """The server could not be reached or the exchange broke mid-way."""

    recoverable = True


class RemoteError(TransportError):
    """The server answered with an error payload."""

    recoverable = False

    def __init__(self, message: str, kind: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status


class ConstraintError(SyncError):
    """A request violates a structural constraint (schema, payload shape)."""


class MalformedChangeSetError(ConstraintError):
    """The ChangeSet payload cannot be decoded."""


class MissingPrimaryKeyError(ConstraintError):
    """A table has no usable single-column primary key."""


class UnknownTableError(ConstraintError):
    """The table does not exist or is not tracked."""


class RecordNotFoundError(ConstraintError):
    """An update targeted a record that does not exist."""


class ClockUnstableError(SyncError):
    """The clock handshake did not converge."""

    def __init__(self, attempts: int):
        super().__init__(
            f"Connection too unstable to sync with server "
            f"(no clock convergence after {attempts} attempts)"
        )
        self.attempts = attempts


class ConflictResolutionError(SyncError):
    """The conflict resolution engine could not process a change."""


class TransactionTimeoutError(SyncError):
    """A transaction outlived its deadline and was rolled back."""


class SyncBusyError(SyncError):
    """Too many syncs are waiting, or the wait timed out."""


class SchemaError(SyncError):
    """The local schema cannot describe the data being synced."""
