"""
Server-side sync operations.

SyncServer bundles what a client consumes over the wire: the clock
handshake, ChangeSet application, the schema and its version, and
searches used to pull table versions, records and tombstones. Binding
these operations to HTTP routes is left to the hosting application;
handle() gives it a transport-neutral dispatcher returning JSON-ready
payloads.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .changes import ChangeSet
from .clock import server_time_offset
from .config import SyncConfig
from .errors import ConstraintError, SyncError, UnknownTableError
from .ledger import VersionLedger
from .merge import DatabaseMerger
from .store import Predicate, SQLiteStore
from .values import utcnow

logger = logging.getLogger(__name__)


class SyncServer:
    """The authoritative copy of the dataset."""

    def __init__(
        self,
        store: SQLiteStore,
        ledger: Optional[VersionLedger] = None,
        config: Optional[SyncConfig] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            store: the server database, with the ledger installed
            ledger: ledger configuration, defaults to tracking every table
            config: timeouts and default user
            now: source of server time
        """
        self.config = config or SyncConfig()
        self.store = store
        self.ledger = ledger or VersionLedger(default_user=self.config.default_user)
        self.now = now
        self.merger = DatabaseMerger(store, self.ledger, self.config.transaction_timeout)

    def sync_get_time(self, start: Any) -> int:
        """Clock handshake: server_now - start in milliseconds."""
        return server_time_offset(start, self.now)

    def apply_change_set(self, payload: Any) -> Dict[str, Any]:
        """
        Apply a ChangeSet (object or wire dict) and return the ack.

        Raises:
            SyncError: the ChangeSet was rejected as a whole
        """
        change_set = payload if isinstance(payload, ChangeSet) else ChangeSet.from_dict(payload)
        result = self.merger.apply_change_set(change_set)
        return {"ok": True, "result": result.to_dict()}

    def get_schema(self) -> Dict[str, Any]:
        return self.store.get_schema()

    def get_schema_version(self) -> int:
        return self.store.schema_version()

    def set_schema_version(self, version: int) -> None:
        """Record a schema change; clients refetch the schema on next sync."""
        self.store.set_schema_version(version)

    def search(self, table: str, predicate: Predicate = None, order_by: Any = None) -> List[Dict[str, Any]]:
        with self.store.transaction(write=False) as tx:
            if not tx.has_table(table):
                raise UnknownTableError(f"Unknown table {table}")
            return tx.search(table, predicate, order_by)

    def handle(self, operation: str, payload: Any = None) -> Dict[str, Any]:
        """
        Dispatch one wire operation.

        Operations: syncGetTime, sync, schema, schemaVersion, search
        (payload {"table", "conditions", "orderBy"}).

        Returns:
            {"result": ...} on success, {"error": message, "kind": name}
            on failure
        """
        try:
            if operation == "syncGetTime":
                return {"result": self.sync_get_time(payload)}
            if operation == "sync":
                return self.apply_change_set(payload)
            if operation == "schema":
                return {"result": self.get_schema()}
            if operation == "schemaVersion":
                return {"result": self.get_schema_version()}
            if operation == "search":
                payload = payload or {}
                return {
                    "result": self.search(
                        payload.get("table"), payload.get("conditions"), payload.get("orderBy")
                    )
                }
            raise ConstraintError(f"Unknown operation {operation}")
        except (SyncError, ValueError, sqlite3.Error) as e:
            logger.warning("Operation %s failed: %s", operation, e)
            return {"error": str(e), "kind": type(e).__name__}
