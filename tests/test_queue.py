"""
Tests for the durable offline queue.
"""

import os
import tempfile
from datetime import datetime, timezone, timedelta

import pytest

from ledger_sync.changes import Change, ChangeAction
from ledger_sync.queue import OfflineQueue
from ledger_sync.store import SQLiteStore


T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_db():
    """Create a temporary database file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def store(temp_db):
    return SQLiteStore(temp_db)


@pytest.fixture
def queue(store):
    return OfflineQueue(store)


def change(key, title="x"):
    return Change("tasks", ChangeAction.UPDATE, {"id": key, "title": title})


class TestOfflineQueue:
    """Tests for OfflineQueue."""

    def test_empty(self, queue):
        assert len(queue) == 0
        assert queue.peek() is None
        assert queue.entries() == []

    def test_fifo(self, queue):
        """The oldest entry is always first."""
        first = queue.enqueue([change(1)], enqueue_date=T0)
        queue.enqueue([change(2), change(3)], enqueue_date=T0 + timedelta(seconds=1))

        assert len(queue) == 2
        head = queue.peek()
        assert head.id == first.id
        assert head.enqueue_date == T0
        assert head.changes == [change(1)]

        queue.pop(head.id)
        assert [len(e.changes) for e in queue.entries()] == [2]

    def test_survives_reopen(self, store, queue):
        """Entries are persisted in the database."""
        queue.enqueue([change(1, "Bobby")], enqueue_date=T0)
        reopened = OfflineQueue(store)
        assert reopened.peek().changes[0].record == {"id": 1, "title": "Bobby"}

    def test_joins_enclosing_transaction(self, store, queue):
        """An entry enqueued in a failed transaction is not kept."""
        with pytest.raises(RuntimeError):
            with store.transaction() as tx:
                queue.enqueue([change(1)], tx=tx)
                raise RuntimeError("local write failed")
        assert len(queue) == 0

    def test_to_change_set(self, queue):
        entry = queue.enqueue([change(1)], enqueue_date=T0)
        cs = entry.to_change_set(time_lapse=350)
        assert cs.origin_date == T0
        assert cs.time_lapse == 350
        assert cs.corrected_date == T0 + timedelta(milliseconds=350)
        assert cs.changes == [change(1)]
