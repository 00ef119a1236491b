"""
Tests for the offline sync client and the sync session.
"""

import os
import tempfile
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from ledger_sync.cache import LocalCache
from ledger_sync.errors import (
    ClockUnstableError,
    RemoteError,
    SchemaError,
    SyncBusyError,
    TransportError,
)
from ledger_sync.ledger import DELETE_TABLE, TABLE_VERSION_TABLE, VERSION_RECORD, VERSION_TABLE, VersionLedger
from ledger_sync.server import SyncServer
from ledger_sync.store import SQLiteStore
from ledger_sync.sync import OfflineSyncClient, SyncResult, SyncSession
from ledger_sync.transport import LocalTransport, Transport
from ledger_sync.values import utcnow


@pytest.fixture
def temp_db_server():
    """Create the server database file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def temp_db_client():
    """Create the client database file."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.remove(path)


@pytest.fixture
def server(temp_db_server):
    store = SQLiteStore(temp_db_server)
    with store.transaction() as tx:
        tx.execute("CREATE TABLE projects (id INTEGER PRIMARY KEY, name TEXT)")
        tx.execute("CREATE TABLE tasks (id INTEGER PRIMARY KEY, title TEXT, status TEXT)")
    ledger = VersionLedger()
    ledger.install(store)
    return SyncServer(store, ledger)


@pytest.fixture
def transport(server):
    return LocalTransport(server)


@pytest.fixture
def client(transport, temp_db_client):
    return OfflineSyncClient(transport, LocalCache(SQLiteStore(temp_db_client)))


def server_edit(server, fn, when=None):
    """Mutate the server database directly."""
    server.ledger.clock = (lambda: when) if when else utcnow
    try:
        with server.store.transaction() as raw:
            return fn(server.ledger.track(raw, "server"))
    finally:
        server.ledger.clock = utcnow


def server_row(server, table, key):
    with server.store.transaction(write=False) as tx:
        return tx.get_by_key(table, key)


def wait_until(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.001)


class TestSyncResult:
    """Tests for SyncResult."""

    def test_success(self):
        assert SyncResult().success is True
        assert SyncResult(error=TransportError("down")).success is False


class TestPull:
    """Server changes reaching the client."""

    def test_first_sync_fetches_schema_and_records(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))

        result = client.sync()

        assert result.success, result.error
        assert result.tables_synced == ["tasks"]
        assert client.get_by_key("tasks", 1)["title"] == "Bob"
        assert client.cache.table_versions() == {"tasks": 1}
        assert "tasks" in client.cache.schema()

    def test_second_sync_fetches_nothing(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        client.sync()
        before = client.search("tasks")

        result = client.sync()

        assert result.success
        assert result.tables_synced == []
        assert client.search("tasks") == before

    def test_replaying_a_pull_is_idempotent(self, server, client):
        """Forgetting the pulled version and pulling again changes nothing."""
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        server_edit(server, lambda tx: tx.update("tasks", {"id": 1, "title": "Bobby"}))
        client.sync()
        before = client.search("tasks")

        with client.cache.transaction() as tx:
            tx.execute(f"DELETE FROM {TABLE_VERSION_TABLE}")
        result = client.sync()

        assert result.tables_synced == ["tasks"]
        assert client.search("tasks") == before
        assert client.cache.table_versions() == {"tasks": 2}

    def test_deletes_are_pulled(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 2, "title": "Ann"}))
        client.sync()

        server_edit(server, lambda tx: tx.remove("tasks", 1))
        client.sync()

        assert client.get_by_key("tasks", 1) is None
        assert client.get_by_key("tasks", 2)["title"] == "Ann"

    def test_delete_then_reinsert_replays_in_order(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        client.sync()

        server_edit(server, lambda tx: tx.remove("tasks", 1))
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "again"}))
        client.sync()

        assert client.get_by_key("tasks", 1)["title"] == "again"

    def test_deletes_on_untyped_key_are_pulled(self, server, client):
        """Tombstone keys match keys stored in a column with no declared type."""
        with server.store.transaction() as tx:
            tx.execute("CREATE TABLE notes (id PRIMARY KEY, body TEXT)")
        server.ledger.install(server.store)
        server_edit(server, lambda tx: tx.insert("notes", {"id": 1, "body": "x"}))
        client.sync()
        assert client.get_by_key("notes", 1)["body"] == "x"

        server_edit(server, lambda tx: tx.remove("notes", 1))
        result = client.sync()

        assert result.tables_synced == ["notes"]
        assert client.get_by_key("notes", 1) is None

    def test_table_subset(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        server_edit(server, lambda tx: tx.insert("projects", {"id": 1, "name": "P"}))

        result = client.sync(tables=["projects"])

        assert result.tables_synced == ["projects"]
        assert client.get_by_key("tasks", 1) is None

    def test_failure_keeps_finished_tables(self, server, client, transport):
        """A failing table stops the pull but earlier tables stay pulled."""
        server_edit(server, lambda tx: tx.insert("projects", {"id": 1, "name": "P"}))
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        original = transport.search

        def flaky(table, predicate=None, order_by=None):
            if table == "tasks":
                raise TransportError("connection lost")
            return original(table, predicate, order_by)

        with patch.object(transport, "search", side_effect=flaky):
            result = client.sync()

        assert isinstance(result.error, TransportError)
        assert result.tables_synced == ["projects"]
        assert client.cache.table_versions() == {"projects": 1}
        assert client.get_by_key("projects", 1)["name"] == "P"
        assert client.get_by_key("tasks", 1) is None

    def test_unknown_table_needs_new_schema(self, server, client):
        """A table missing from the cached schema fails until the schema version moves."""
        client.sync()
        with server.store.transaction() as tx:
            tx.execute("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)")
        server.ledger.install(server.store)
        server_edit(server, lambda tx: tx.insert("notes", {"id": 1, "body": "hi"}))

        result = client.sync()
        assert isinstance(result.error, SchemaError)

        server.set_schema_version(1)
        result = client.sync()
        assert result.success, result.error
        assert result.tables_synced == ["notes"]
        assert client.get_by_key("notes", 1)["body"] == "hi"


class TestPush:
    """Local changes reaching the server."""

    def test_bob_becomes_bobby(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        client.sync()

        local = client.update("tasks", {"id": 1, "title": "Bobby"})
        assert local[VERSION_RECORD] == 1
        assert client.pending_changes == 1

        result = client.sync()

        assert result.success, result.error
        assert result.pushed == 1
        assert client.pending_changes == 0
        stored = server_row(server, "tasks", 1)
        assert stored["title"] == "Bobby"
        assert stored[VERSION_RECORD] == 1
        with server.store.transaction(write=False) as tx:
            chain = server.ledger.audit_entries(tx, "tasks", 1)
        assert [(e.column_name, e.column_before, e.column_after) for e in chain] == [("title", "Bob", "Bobby")]
        # the server's version of the record comes back
        assert client.get_by_key("tasks", 1)[VERSION_TABLE] == stored[VERSION_TABLE]

    def test_offline_insert_before_first_sync(self, server, client):
        """The schema is fetched on first use."""
        client.insert("tasks", {"id": 7, "title": "new"})
        result = client.sync()

        assert result.pushed == 1
        assert server_row(server, "tasks", 7)[VERSION_RECORD] == 0
        assert client.get_by_key("tasks", 7)[VERSION_TABLE] == 1

    def test_remove(self, server, client):
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "Bob"}))
        client.sync()

        client.remove("tasks", 1)
        client.sync()

        assert server_row(server, "tasks", 1) is None
        with server.store.transaction(write=False) as tx:
            assert len(tx.search(DELETE_TABLE)) == 1

    def test_transactional_changes(self, server, client):
        client.transactional_changes([
            {"table": "projects", "action": "insert", "record": {"id": 1, "name": "P"}},
            {"table": "tasks", "action": "insert", "record": {"id": 1, "title": "T"}},
        ])
        assert client.pending_changes == 1
        assert client.sync().pushed == 1
        assert server_row(server, "projects", 1)["name"] == "P"
        assert server_row(server, "tasks", 1)["title"] == "T"

    def test_older_offline_edit_keeps_newer_server_value(self, server, client):
        """The server keeps a newer edit and the history reads through the client value."""
        server_edit(server, lambda tx: tx.insert("tasks", {"id": 1, "title": "t", "status": "old"}))
        server_edit(server, lambda tx: tx.update("tasks", {"id": 1, "title": "t1"}))
        client.sync()

        client.update("tasks", {"id": 1, "status": "done"})
        server_edit(
            server,
            lambda tx: tx.update("tasks", {"id": 1, "status": "final"}),
            when=utcnow() + timedelta(minutes=1),
        )

        result = client.sync()

        assert result.success, result.error
        assert server_row(server, "tasks", 1)["status"] == "final"
        with server.store.transaction(write=False) as tx:
            chain = server.ledger.audit_entries(tx, "tasks", 1, column="status")
        assert [(e.column_before, e.column_after) for e in chain] == [("old", "done"), ("done", "final")]
        assert client.get_by_key("tasks", 1)["status"] == "final"


class TestPushFailures:
    """Failed pushes leave the queue for the next sync."""

    SCHEMA = {
        "tasks": {
            "pk": ["id"],
            "columns": [
                {"name": "id", "type": "INTEGER"},
                {"name": "title", "type": "TEXT"},
                {"name": VERSION_RECORD, "type": "INTEGER"},
                {"name": VERSION_TABLE, "type": "INTEGER"},
                {"name": "velox_version_date", "type": "TEXT"},
                {"name": "velox_version_user", "type": "TEXT"},
            ],
        }
    }

    @pytest.fixture
    def remote(self):
        remote = MagicMock(spec=Transport)
        remote.get_schema_version.return_value = 1
        remote.get_schema.return_value = self.SCHEMA
        remote.sync_get_time.return_value = 0
        return remote

    @pytest.fixture
    def offline_client(self, remote, temp_db_client):
        return OfflineSyncClient(remote, LocalCache(SQLiteStore(temp_db_client)))

    def test_transport_failure(self, remote, offline_client):
        offline_client.insert("tasks", {"id": 1, "title": "a"})
        remote.push.side_effect = TransportError("down")

        result = offline_client.sync()

        assert not result.success
        assert isinstance(result.error, TransportError)
        assert result.pushed == 0
        assert offline_client.pending_changes == 1
        remote.search.assert_not_called()

    def test_failure_after_partial_progress(self, remote, offline_client):
        offline_client.insert("tasks", {"id": 1, "title": "a"})
        offline_client.insert("tasks", {"id": 2, "title": "b"})
        remote.push.side_effect = [{"inserted": 1}, TransportError("down")]

        result = offline_client.sync()

        assert result.pushed == 1
        assert not result.success
        remaining = offline_client.queue.entries()
        assert [e.changes[0].record["id"] for e in remaining] == [2]

    def test_rejected_change_set(self, remote, offline_client):
        offline_client.insert("tasks", {"id": 1, "title": "a"})
        remote.push.side_effect = RemoteError("Unknown table", kind="UnknownTableError")

        result = offline_client.sync()

        assert isinstance(result.error, RemoteError)
        assert offline_client.pending_changes == 1

    def test_unstable_clock(self, remote, offline_client):
        offline_client.insert("tasks", {"id": 1, "title": "a"})
        remote.sync_get_time.return_value = 5000

        result = offline_client.sync()

        assert isinstance(result.error, ClockUnstableError)
        assert remote.sync_get_time.call_count == 10
        remote.push.assert_not_called()
        assert offline_client.pending_changes == 1

    def test_lapse_is_attached(self, remote, offline_client):
        offline_client.insert("tasks", {"id": 1, "title": "a"})
        remote.sync_get_time.side_effect = [3000, 10]
        remote.search.return_value = []

        offline_client.sync()

        pushed = remote.push.call_args[0][0]
        assert pushed.time_lapse == 3000

    def test_malformed_clock_reply(self, remote, offline_client):
        offline_client.insert("tasks", {"id": 1, "title": "a"})
        remote.sync_get_time.return_value = None

        result = offline_client.sync()

        assert isinstance(result.error, TransportError)
        remote.push.assert_not_called()
        assert offline_client.pending_changes == 1

    def test_malformed_table_version_row(self, remote, offline_client):
        remote.search.return_value = [{"version_table": 3}]

        result = offline_client.sync()

        assert isinstance(result.error, TransportError)
        assert result.tables_synced == []


class TestSyncSession:
    """Tests for the single-flight session."""

    def test_waiters_run_in_arrival_order(self):
        session = SyncSession()
        order = []

        def worker(name):
            with session.acquire():
                order.append(name)

        threads = []
        with session.acquire():
            for i, name in enumerate(["a", "b", "c"]):
                thread = threading.Thread(target=worker, args=(name,))
                thread.start()
                threads.append(thread)
                wait_until(lambda: session.pending == i + 1)
        for thread in threads:
            thread.join(timeout=5)

        assert order == ["a", "b", "c"]
        assert not session.active

    def test_wait_queue_is_bounded(self):
        session = SyncSession(max_pending=1)
        release = threading.Event()

        def worker():
            with session.acquire():
                release.wait(5)

        with session.acquire():
            thread = threading.Thread(target=worker)
            thread.start()
            wait_until(lambda: session.pending == 1)
            with pytest.raises(SyncBusyError):
                with session.acquire():
                    pass
        release.set()
        thread.join(timeout=5)

    def test_wait_timeout(self):
        session = SyncSession(wait_timeout=0.05)
        with session.acquire():
            with pytest.raises(SyncBusyError):
                with session.acquire():
                    pass
            assert session.pending == 0

    def test_released_after_error(self):
        session = SyncSession(wait_timeout=0.05)
        with pytest.raises(RuntimeError):
            with session.acquire():
                raise RuntimeError("boom")
        with session.acquire():
            assert session.active

    def test_busy_sync_returns_error(self, client):
        client.session = SyncSession(wait_timeout=0.05)
        with client.session.acquire():
            result = client.sync()
        assert isinstance(result.error, SyncBusyError)
