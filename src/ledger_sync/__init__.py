"""
ledger-sync: offline-first sync of SQLite tables through a version ledger.

Clients queue local mutations while offline and push them as ChangeSets;
the server merges them column by column against its audit trail, then
clients pull back every table that moved.
"""

from .errors import (
    SyncError,
    TransportError,
    RemoteError,
    ConstraintError,
    MalformedChangeSetError,
    MissingPrimaryKeyError,
    UnknownTableError,
    RecordNotFoundError,
    ClockUnstableError,
    ConflictResolutionError,
    TransactionTimeoutError,
    SyncBusyError,
    SchemaError,
)
from .config import SyncConfig
from .store import SQLiteStore, Transaction
from .ledger import VersionLedger, TrackedTransaction, ColumnAudit, DeleteTombstone
from .clock import ClockSynchronizer
from .changes import Change, ChangeAction, ChangeSet
from .merge import DatabaseMerger, MergeResult
from .server import SyncServer
from .transport import Transport, LocalTransport, HttpTransport
from .cache import LocalCache
from .queue import OfflineQueue, LocalQueueEntry
from .sync import OfflineSyncClient, SyncResult, SyncSession

__version__ = "0.1.0"
__all__ = [
    "SyncError",
    "TransportError",
    "RemoteError",
    "ConstraintError",
    "MalformedChangeSetError",
    "MissingPrimaryKeyError",
    "UnknownTableError",
    "RecordNotFoundError",
    "ClockUnstableError",
    "ConflictResolutionError",
    "TransactionTimeoutError",
    "SyncBusyError",
    "SchemaError",
    "SyncConfig",
    "SQLiteStore",
    "Transaction",
    "VersionLedger",
    "TrackedTransaction",
    "ColumnAudit",
    "DeleteTombstone",
    "ClockSynchronizer",
    "Change",
    "ChangeAction",
    "ChangeSet",
    "DatabaseMerger",
    "MergeResult",
    "SyncServer",
    "Transport",
    "LocalTransport",
    "HttpTransport",
    "LocalCache",
    "OfflineQueue",
    "LocalQueueEntry",
    "OfflineSyncClient",
    "SyncResult",
    "SyncSession",
]
