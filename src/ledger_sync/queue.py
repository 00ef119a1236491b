"""
Durable offline queue.

Local mutations are appended here, in the same SQLite file as the local
cache, and stay until the server has acknowledged them. Entries are
replayed strictly oldest first.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .changes import Change, ChangeSet
from .store import SQLiteStore, Transaction
from .values import format_timestamp, to_timestamp, utcnow

logger = logging.getLogger(__name__)

QUEUE_TABLE = "velox_offline_changes"


@dataclass
class LocalQueueEntry:
    """One batch of local changes waiting to be pushed."""
    enqueue_date: datetime
    changes: List[Change] = field(default_factory=list)
    id: Optional[int] = None

    def to_change_set(self, time_lapse: int = 0) -> ChangeSet:
        """Build the ChangeSet pushed for this entry."""
        return ChangeSet(origin_date=self.enqueue_date, time_lapse=time_lapse, changes=list(self.changes))

    @classmethod
    def from_row(cls, row) -> "LocalQueueEntry":
        return cls(
            id=row["id"],
            enqueue_date=to_timestamp(row["enqueue_date"]),
            changes=[Change.from_dict(c) for c in json.loads(row["changes_json"])],
        )


class OfflineQueue:
    """FIFO of LocalQueueEntry persisted in a SQLite table."""

    def __init__(self, store: SQLiteStore):
        self.store = store
        self._init_tables()

    def _init_tables(self) -> None:
        with self.store.transaction() as tx:
            tx.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {QUEUE_TABLE} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    enqueue_date TEXT NOT NULL,
                    changes_json TEXT NOT NULL
                )
                """
            )

    def enqueue(
        self,
        changes: List[Change],
        enqueue_date: Optional[datetime] = None,
        tx: Optional[Transaction] = None,
    ) -> LocalQueueEntry:
        """
        Append a batch of changes.

        Args:
            changes: the changes, in application order
            enqueue_date: client time of the mutation, defaults to now
            tx: an open transaction to join, so the entry commits together
                with the local mutation it records

        Returns:
            The stored entry
        """
        entry = LocalQueueEntry(enqueue_date=to_timestamp(enqueue_date) or utcnow(), changes=list(changes))
        if tx is None:
            with self.store.transaction() as own:
                return self._insert(own, entry)
        return self._insert(tx, entry)

    def _insert(self, tx: Transaction, entry: LocalQueueEntry) -> LocalQueueEntry:
        cursor = tx.execute(
            f"INSERT INTO {QUEUE_TABLE} (enqueue_date, changes_json) VALUES (?, ?)",
            (
                format_timestamp(entry.enqueue_date),
                json.dumps([c.to_dict() for c in entry.changes]),
            ),
        )
        entry.id = cursor.lastrowid
        logger.debug("Queued entry %s with %d changes", entry.id, len(entry.changes))
        return entry

    def peek(self) -> Optional[LocalQueueEntry]:
        """The oldest entry, or None when the queue is empty."""
        with self.store.transaction(write=False) as tx:
            row = tx.execute(f"SELECT * FROM {QUEUE_TABLE} ORDER BY id ASC LIMIT 1").fetchone()
            return LocalQueueEntry.from_row(row) if row else None

    def pop(self, entry_id: int) -> None:
        """Drop an entry once the server has acknowledged it."""
        with self.store.transaction() as tx:
            tx.execute(f"DELETE FROM {QUEUE_TABLE} WHERE id = ?", (entry_id,))

    def entries(self) -> List[LocalQueueEntry]:
        with self.store.transaction(write=False) as tx:
            rows = tx.execute(f"SELECT * FROM {QUEUE_TABLE} ORDER BY id ASC").fetchall()
            return [LocalQueueEntry.from_row(row) for row in rows]

    def __len__(self) -> int:
        with self.store.transaction(write=False) as tx:
            row = tx.execute(f"SELECT COUNT(*) AS n FROM {QUEUE_TABLE}").fetchone()
            return row["n"]
