"""
Offline sync orchestration on the client.

OfflineSyncClient applies local mutations to the cache and queues them,
then sync() pushes the queue to the server and pulls back every table
whose server version moved past the local one.

Only one sync runs at a time per SyncSession. Callers arriving while a
sync is running wait their turn in arrival order; the wait queue is
bounded and the wait can time out.
"""

import logging
import sqlite3
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from .cache import LocalCache
from .changes import Change, ChangeAction
from .clock import ClockSynchronizer
from .config import SyncConfig
from .errors import SyncBusyError, SyncError, TransportError
from .ledger import DELETE_TABLE, TABLE_VERSION_TABLE, VERSION_TABLE
from .queue import OfflineQueue
from .transport import Transport
from .values import utcnow

logger = logging.getLogger(__name__)


class SyncSession:
    """Single-flight guard with a bounded FIFO of waiting callers."""

    def __init__(self, max_pending: int = 16, wait_timeout: Optional[float] = None):
        """
        Args:
            max_pending: how many callers may wait at once
            wait_timeout: seconds a caller waits before giving up, None
                to wait until its turn
        """
        self.max_pending = max_pending
        self.wait_timeout = wait_timeout
        self._condition = threading.Condition()
        self._waiting: deque = deque()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pending(self) -> int:
        return len(self._waiting)

    @contextmanager
    def acquire(self) -> Iterator[None]:
        """
        Hold the session for the duration of the block.

        Raises:
            SyncBusyError: the wait queue is full or the wait timed out
        """
        with self._condition:
            if self._active or self._waiting:
                if len(self._waiting) >= self.max_pending:
                    raise SyncBusyError(f"{len(self._waiting)} syncs already waiting")
                ticket = object()
                self._waiting.append(ticket)
                granted = self._condition.wait_for(
                    lambda: not self._active and self._waiting[0] is ticket,
                    timeout=self.wait_timeout,
                )
                self._waiting.remove(ticket)
                if not granted:
                    # the next in line may be able to go now
                    self._condition.notify_all()
                    raise SyncBusyError(f"Timed out after {self.wait_timeout}s waiting for a running sync")
            self._active = True

        try:
            yield
        finally:
            with self._condition:
                self._active = False
                self._condition.notify_all()


@dataclass
class SyncResult:
    """Outcome of one sync() call."""
    pushed: int = 0
    tables_synced: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None


class OfflineSyncClient:
    """
    Client side of the sync protocol.

    Local mutations are written to the cache and appended to the offline
    queue in one local transaction, so the queue always reflects exactly
    what the cache shows.
    """

    def __init__(
        self,
        transport: Transport,
        cache: LocalCache,
        queue: Optional[OfflineQueue] = None,
        config: Optional[SyncConfig] = None,
        session: Optional[SyncSession] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            transport: how to reach the server
            cache: the local copy of the synced tables
            queue: pending local changes, defaults to a queue in the
                cache's database
            config: clock, session and user settings
            session: sync guard, may be shared between clients of the
                same local database
            now: source of client time
        """
        self.config = config or SyncConfig()
        self.transport = transport
        self.cache = cache
        self.queue = queue or OfflineQueue(cache.store)
        self.session = session or SyncSession(self.config.max_pending_syncs, self.config.sync_wait_timeout)
        self.now = now

    # -- local mutations ------------------------------------------------------

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert locally and queue the change; return the stored record."""
        queued = self.transactional_changes([Change(table, ChangeAction.INSERT, record)])
        return self.cache.get_by_key(table, queued[0].record)

    def update(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Update locally and queue the change; return the stored record."""
        queued = self.transactional_changes([Change(table, ChangeAction.UPDATE, record)])
        return self.cache.get_by_key(table, queued[0].record)

    def remove(self, table: str, key_or_record: Any) -> None:
        with self.cache.transaction(write=False) as tx:
            key = tx.key_of(table, key_or_record)
        self.transactional_changes([Change(table, ChangeAction.REMOVE, key)])

    def transactional_changes(self, changes: List[Union[Change, Dict[str, Any]]]) -> List[Change]:
        """
        Apply several changes locally as one unit and queue them together.

        Returns:
            The queued changes
        """
        changes = [c if isinstance(c, Change) else Change.from_dict(c) for c in changes]
        self._ensure_schema()
        now = self.now()
        with self.cache.transaction() as tx:
            queued = self.cache.apply_local(tx, changes, self.config.default_user, now)
            self.queue.enqueue(queued, enqueue_date=now, tx=tx)
        return queued

    # -- local reads ----------------------------------------------------------

    def get_by_key(self, table: str, key_or_record: Any) -> Optional[Dict[str, Any]]:
        return self.cache.get_by_key(table, key_or_record)

    def search(self, table: str, predicate: Optional[dict] = None, order_by: Any = None) -> List[Dict[str, Any]]:
        return self.cache.search(table, predicate, order_by)

    def search_first(self, table: str, predicate: Optional[dict] = None, order_by: Any = None) -> Optional[Dict[str, Any]]:
        return self.cache.search_first(table, predicate, order_by)

    @property
    def pending_changes(self) -> int:
        return len(self.queue)

    # -- sync -----------------------------------------------------------------

    def sync(self, tables: Optional[List[str]] = None) -> SyncResult:
        """
        Push the offline queue, then pull server changes.

        Args:
            tables: restrict the pull to these tables

        Returns:
            SyncResult; failures are reported in its error field, never
            raised
        """
        result = SyncResult()
        try:
            with self.session.acquire():
                logger.info("Sync started (%d queued entries)", len(self.queue))
                self._push(result)
                self._sync_schema()
                self._pull(tables, result)
        except (SyncError, sqlite3.Error) as e:
            logger.warning("Sync failed after %d pushed entries: %s", result.pushed, e)
            result.error = e
            return result

        logger.info("Sync finished: %d entries pushed, tables pulled %s", result.pushed, result.tables_synced)
        return result

    def _push(self, result: SyncResult) -> None:
        clock = ClockSynchronizer(
            self.transport.sync_get_time,
            tolerance_ms=self.config.clock_tolerance_ms,
            max_attempts=self.config.clock_max_attempts,
            now=self.now,
        )
        while True:
            entry = self.queue.peek()
            if entry is None:
                return
            lapse = clock.compute_lapse()
            self.transport.push(entry.to_change_set(lapse))
            # acknowledged, safe to forget
            self.queue.pop(entry.id)
            result.pushed += 1
            logger.info("Pushed queue entry %s (%d changes, lapse %dms)", entry.id, len(entry.changes), lapse)

    def _ensure_schema(self) -> None:
        if self.cache.schema() is None:
            self._sync_schema()

    def _sync_schema(self) -> None:
        remote_version = self.transport.get_schema_version()
        if self.cache.schema() is not None and self.cache.schema_version() >= remote_version:
            return
        logger.info("Fetching server schema version %s", remote_version)
        self.cache.prepare_schema(self.transport.get_schema(), remote_version)

    def _pull(self, tables: Optional[List[str]], result: SyncResult) -> None:
        predicate = {"table_name": list(tables)} if tables is not None else None
        local_versions = self.cache.table_versions(tables)
        remote_versions = self.transport.search(TABLE_VERSION_TABLE, predicate, "table_name")

        for remote in remote_versions:
            table, version = remote.get("table_name"), remote.get("version_table")
            if not isinstance(table, str) or isinstance(version, bool) or not isinstance(version, int):
                raise TransportError(f"Malformed table version row: {remote!r}")
            since = local_versions.get(table, 0)
            if version <= since:
                continue
            self._pull_table(table, since, remote)
            result.tables_synced.append(table)

    def _pull_table(self, table: str, since: int, table_version: Dict[str, Any]) -> None:
        """
        Replay one table's server changes since a version.

        Records and tombstones are replayed in table version order, and
        the table's version row is written in the same local transaction
        so progress is recorded only with the data it covers.
        """
        self.cache.require_table(table)
        pk = self.cache.schema()[table]["pk"]
        if len(pk) != 1:
            raise SyncError(f"Table {table} has no single primary key, can't sync it")

        records = self.transport.search(table, {VERSION_TABLE: {"ope": ">", "value": since}}, VERSION_TABLE)
        tombstones = self.transport.search(
            DELETE_TABLE,
            {"table_name": table, "version_table": {"ope": ">", "value": since}},
            "version_table",
        )

        ordered = [(r.get(VERSION_TABLE) or 0, Change(table, ChangeAction.AUTO, r)) for r in records]
        for tombstone in tombstones:
            if "record_key" not in tombstone or not isinstance(tombstone.get("version_table"), int):
                raise TransportError(f"Malformed tombstone for {table}: {tombstone!r}")
            key = self.cache.key_from_text(table, tombstone["record_key"])
            ordered.append((tombstone["version_table"], Change(table, ChangeAction.REMOVE, {pk[0]: key})))
        ordered.sort(key=lambda item: item[0])
        changes = [change for _, change in ordered]
        changes.append(Change(TABLE_VERSION_TABLE, ChangeAction.AUTO, dict(table_version)))

        with self.cache.transaction() as tx:
            self.cache.apply_remote(tx, changes)
        logger.info(
            "Pulled %s from version %s to %s: %d records, %d deletions",
            table, since, table_version["version_table"], len(records), len(tombstones),
        )
