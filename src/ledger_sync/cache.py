"""
Local cache adapter.

The client keeps a copy of the server tables it syncs in a local SQLite
file, together with the server schema it was built from and one
velox_modif_table_version row per table recording how far each table has
been pulled.

Two write paths exist:
- apply_local() for the client's own mutations, which stamps record
  versions the way the server ledger will expect them when pushed
- apply_remote() for pulled server data, which is trusted and stored as
  received
"""

import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .changes import Change, ChangeAction, resolve_change
from .errors import RecordNotFoundError, SchemaError
from .ledger import TABLE_VERSION_TABLE, VERSION_DATE, VERSION_RECORD, VERSION_TABLE, VERSION_USER
from .store import Predicate, SQLiteStore, Transaction, quote_identifier
from .values import METADATA_PREFIX, format_timestamp, utcnow

logger = logging.getLogger(__name__)

META_TABLE = "velox_offline_meta"

_SCHEMA_KEY = "schema"
_SCHEMA_VERSION_KEY = "schema_version"


def _column_ddl(column: Dict[str, Any]) -> str:
    ddl = quote_identifier(column["name"])
    if column.get("type"):
        ddl += f" {column['type']}"
    return ddl


def _key_from_text(text: Optional[str], declared: str) -> Any:
    # follows SQLite's column affinity rules
    if text is None:
        return None
    declared = declared.upper()
    if "INT" in declared:
        try:
            return int(text)
        except ValueError:
            return text
    if any(t in declared for t in ("CHAR", "CLOB", "TEXT", "BLOB")):
        return text
    for convert in (int, float):
        try:
            return convert(text)
        except ValueError:
            pass
    return text


class LocalCache:
    """SQLite-backed local copy of the synced tables."""

    def __init__(self, store: SQLiteStore, clock: Callable[[], datetime] = utcnow):
        """
        Args:
            store: the local database, may be shared with an OfflineQueue
            clock: source of client time for local mutations
        """
        self.store = store
        self.clock = clock
        self._init_tables()

    def _init_tables(self) -> None:
        with self.store.transaction() as tx:
            tx.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {META_TABLE} (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            tx.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE_VERSION_TABLE} (
                    table_name VARCHAR(128) PRIMARY KEY,
                    version_table INTEGER NOT NULL,
                    version_date TEXT
                )
                """
            )

    def transaction(self, write: bool = True):
        return self.store.transaction(write=write)

    # -- schema -------------------------------------------------------------

    def _get_meta(self, key: str) -> Optional[str]:
        with self.store.transaction(write=False) as tx:
            row = tx.execute(f"SELECT value FROM {META_TABLE} WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else None

    def _set_meta(self, tx: Transaction, key: str, value: str) -> None:
        tx.execute(
            f"""
            INSERT INTO {META_TABLE} (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    def schema(self) -> Optional[Dict[str, Any]]:
        """The cached server schema, None before the first fetch."""
        raw = self._get_meta(_SCHEMA_KEY)
        return json.loads(raw) if raw else None

    def schema_version(self) -> int:
        raw = self._get_meta(_SCHEMA_VERSION_KEY)
        return int(raw) if raw else 0

    def prepare_schema(self, schema: Dict[str, Any], version: int) -> List[str]:
        """
        Store a server schema and create the local tables it describes.

        Missing tables are created and missing columns are added; nothing
        is ever dropped. Ledger tables other than the table versions stay
        on the server.

        Returns:
            Names of the tables available locally
        """
        local_tables = []
        with self.store.transaction() as tx:
            for table, description in schema.items():
                if table.startswith(METADATA_PREFIX) and table != TABLE_VERSION_TABLE:
                    continue
                columns = description.get("columns") or []
                pk = description.get("pk") or []
                if not tx.has_table(table):
                    parts = [_column_ddl(c) for c in columns]
                    if pk:
                        parts.append(f"PRIMARY KEY ({', '.join(quote_identifier(k) for k in pk)})")
                    tx.execute(f"CREATE TABLE {quote_identifier(table)} ({', '.join(parts)})")
                else:
                    existing = set(tx.columns(table))
                    for column in columns:
                        if column["name"] not in existing:
                            tx.execute(f"ALTER TABLE {quote_identifier(table)} ADD COLUMN {_column_ddl(column)}")
                local_tables.append(table)

            self._set_meta(tx, _SCHEMA_KEY, json.dumps(schema))
            self._set_meta(tx, _SCHEMA_VERSION_KEY, str(int(version)))

        logger.info("Local schema prepared at version %s (%d tables)", version, len(local_tables))
        return local_tables

    def require_table(self, table: str) -> None:
        """
        Raises:
            SchemaError: if the cached schema doesn't know the table
        """
        schema = self.schema() or {}
        if table not in schema:
            raise SchemaError(f"Table {table} is not in the local schema")

    def key_from_text(self, table: str, text: Optional[str]) -> Any:
        """
        Read a tombstone's text record key back as the local key value.

        The value is converted the way the primary key column of the
        cached schema would store it, so that the delete matches.
        """
        description = (self.schema() or {}).get(table) or {}
        pk = description.get("pk") or []
        declared = ""
        for column in description.get("columns") or []:
            if pk and column["name"] == pk[0]:
                declared = column.get("type") or ""
        return _key_from_text(text, declared)

    # -- reads ----------------------------------------------------------------

    def table_versions(self, tables: Optional[List[str]] = None) -> Dict[str, int]:
        """Pulled version per table."""
        predicate = {"table_name": list(tables)} if tables is not None else None
        with self.store.transaction(write=False) as tx:
            rows = tx.search(TABLE_VERSION_TABLE, predicate)
        return {row["table_name"]: row["version_table"] or 0 for row in rows}

    def get_by_key(self, table: str, key_or_record: Any) -> Optional[Dict[str, Any]]:
        with self.store.transaction(write=False) as tx:
            return tx.get_by_key(table, key_or_record)

    def search(
        self,
        table: str,
        predicate: Predicate = None,
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self.store.transaction(write=False) as tx:
            return tx.search(table, predicate, order_by, limit, offset)

    def search_first(self, table: str, predicate: Predicate = None, order_by: Any = None) -> Optional[Dict[str, Any]]:
        with self.store.transaction(write=False) as tx:
            return tx.search_first(table, predicate, order_by)

    # -- writes ---------------------------------------------------------------

    def apply_remote(self, tx: Transaction, changes: List[Change]) -> int:
        """
        Store pulled server data as is.

        Returns:
            Number of changes that touched a row
        """
        touched = 0
        for change in changes:
            resolved = resolve_change(tx, change)
            if resolved.action is ChangeAction.REMOVE:
                touched += tx.remove(change.table, change.record)
            elif resolved.action is ChangeAction.INSERT:
                tx.insert(change.table, change.record)
                touched += 1
            else:
                tx.update(change.table, change.record)
                touched += 1
        return touched

    def apply_local(
        self,
        tx: Transaction,
        changes: List[Change],
        user: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Change]:
        """
        Apply the client's own mutations.

        Inserts start at record version 0, updates move the stored record
        version up by one, and both are dated with the client clock.

        Returns:
            The changes as they must be pushed to the server

        Raises:
            RecordNotFoundError: if an update targets an unknown record
        """
        now = format_timestamp(now or self.clock())
        queued = []
        for change in changes:
            table = change.table
            if change.action is ChangeAction.REMOVE:
                key = tx.key_of(table, change.record)
                tx.remove(table, key)
                queued.append(Change(table, ChangeAction.REMOVE, key))
                continue

            # a plain insert may leave its key to the database
            current = None
            if change.action is not ChangeAction.INSERT:
                current = resolve_change(tx, change).current
                if current is None and change.action is ChangeAction.UPDATE:
                    raise RecordNotFoundError(f"No record {tx.key_of(table, change.record)} in table {table}")

            row = dict(change.record)
            row[VERSION_DATE] = now
            if user is not None and row.get(VERSION_USER) is None:
                row[VERSION_USER] = user

            if current is None:
                row[VERSION_RECORD] = 0
                row.pop(VERSION_TABLE, None)
                stored = tx.insert(table, row)
                row.update(tx.key_of(table, stored))
                queued.append(Change(table, ChangeAction.INSERT, row))
            else:
                row[VERSION_RECORD] = (current.get(VERSION_RECORD) or 0) + 1
                row[VERSION_TABLE] = current.get(VERSION_TABLE)
                tx.update(table, row)
                queued.append(Change(table, ChangeAction.UPDATE, row))
        return queued
