"""
Version ledger.

Every insert, update and delete on a tracked table goes through a
TrackedTransaction, which performs the bookkeeping in the same
transaction as the data mutation:

- velox_modif_table_version keeps one monotonically increasing version
  per table (its logical clock) and the date of the last mutation
- velox_modif_track keeps one audit row per changed column per update,
  with the value before and after the change
- velox_delete_track keeps one tombstone per deleted record

Each tracked table also carries four metadata columns:

- velox_version_record: the record version (0 at insert, +1 per update)
- velox_version_table: the table version assigned to the last mutation
- velox_version_date: the date of the last mutation
- velox_version_user: the user who did the last mutation

If any bookkeeping step fails the exception propagates and the enclosing
transaction rolls back the data mutation along with it.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ConstraintError, MissingPrimaryKeyError, RecordNotFoundError
from .store import DB_VERSION_TABLE, SQLiteStore, Transaction, quote_identifier
from .values import (
    METADATA_PREFIX,
    format_timestamp,
    is_metadata_column,
    to_text,
    to_timestamp,
    utcnow,
    values_equal,
)

logger = logging.getLogger(__name__)

TABLE_VERSION_TABLE = "velox_modif_table_version"
AUDIT_TABLE = "velox_modif_track"
DELETE_TABLE = "velox_delete_track"

VERSION_RECORD = "velox_version_record"
VERSION_TABLE = "velox_version_table"
VERSION_DATE = "velox_version_date"
VERSION_USER = "velox_version_user"

METADATA_COLUMNS: Tuple[Tuple[str, str], ...] = (
    (VERSION_RECORD, "INTEGER"),
    (VERSION_TABLE, "INTEGER"),
    (VERSION_DATE, "TEXT"),
    (VERSION_USER, "VARCHAR(128)"),
)

_LEDGER_DDL = (
    f"""
    CREATE TABLE IF NOT EXISTS {TABLE_VERSION_TABLE} (
        table_name VARCHAR(128) PRIMARY KEY,
        version_table INTEGER NOT NULL,
        version_date TEXT
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {AUDIT_TABLE} (
        version_record INTEGER,
        version_table INTEGER,
        version_date TEXT,
        version_user VARCHAR(128),
        table_name VARCHAR(128),
        record_key VARCHAR(128),
        column_name VARCHAR(128),
        column_before TEXT,
        column_after TEXT,
        PRIMARY KEY (table_name, record_key, version_table, version_record, version_date, column_name)
    )
    """,
    f"""
    CREATE INDEX IF NOT EXISTS idx_{AUDIT_TABLE}_record
    ON {AUDIT_TABLE}(table_name, record_key, version_record)
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {DELETE_TABLE} (
        version_table INTEGER,
        delete_date TEXT,
        table_name VARCHAR(128),
        record_key VARCHAR(128),
        PRIMARY KEY (table_name, version_table)
    )
    """,
    f"CREATE TABLE IF NOT EXISTS {DB_VERSION_TABLE} (version INTEGER NOT NULL)",
)

TableFilter = Callable[[str], bool]


def table_filter(tables_to_track: Any = None) -> TableFilter:
    """
    Build the predicate deciding which tables are tracked.

    Args:
        tables_to_track: one of
            - None: track every table
            - a callable receiving the table name and returning a bool
            - a list of table names to track
            - {"include": [...]}: tables to track
            - {"exclude": [...]}: tables not to track

    Raises:
        ConstraintError: on any other shape
    """
    if tables_to_track is None:
        return lambda table: True
    if callable(tables_to_track):
        return tables_to_track
    if isinstance(tables_to_track, (list, tuple, set, frozenset)):
        names = frozenset(tables_to_track)
        return lambda table: table in names
    if isinstance(tables_to_track, dict):
        if isinstance(tables_to_track.get("include"), (list, tuple, set, frozenset)):
            included = frozenset(tables_to_track["include"])
            return lambda table: table in included
        if isinstance(tables_to_track.get("exclude"), (list, tuple, set, frozenset)):
            excluded = frozenset(tables_to_track["exclude"])
            return lambda table: table not in excluded
    raise ConstraintError(
        "incorrect tables_to_track option. It should be a function receiving the "
        "table name and returning True to track, a list of tables to track, "
        "{'include': [...]} with tables to track or {'exclude': [...]} with "
        "tables not to track"
    )


@dataclass
class ColumnAudit:
    """One column change of one record."""

    table_name: str
    record_key: str
    version_table: int
    version_record: int
    version_date: str
    version_user: Optional[str]
    column_name: str
    column_before: Optional[str]
    column_after: Optional[str]

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ColumnAudit":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__})

    def to_dict(self) -> dict:
        return asdict(self)

    def identity(self) -> Dict[str, Any]:
        """Columns forming the composite key of the entry."""
        return {
            "table_name": self.table_name,
            "record_key": self.record_key,
            "version_table": self.version_table,
            "version_record": self.version_record,
            "version_date": self.version_date,
            "column_name": self.column_name,
        }

    @property
    def effective_time(self) -> datetime:
        return to_timestamp(self.version_date)


@dataclass
class DeleteTombstone:
    """Marker left behind by a deleted record."""

    version_table: int
    delete_date: str
    table_name: str
    record_key: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DeleteTombstone":
        return cls(**{k: row[k] for k in cls.__dataclass_fields__})

    def to_dict(self) -> dict:
        return asdict(self)


class VersionLedger:
    """
    Ledger configuration plus the bookkeeping primitives.

    Use track() to wrap a transaction handle; all writes made through the
    wrapper are recorded.
    """

    def __init__(
        self,
        tables_to_track: Any = None,
        default_user: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Args:
            tables_to_track: which tables to track, see table_filter()
            default_user: user stamped on mutations that don't name one
            clock: source of "now" for version dates
        """
        self._filter = table_filter(tables_to_track)
        self.default_user = default_user
        self.clock = clock

    def is_tracked(self, table: str) -> bool:
        if table.startswith(METADATA_PREFIX):
            return False
        return bool(self._filter(table))

    def install(self, store: SQLiteStore) -> List[str]:
        """
        Create the ledger tables and add metadata columns to tracked tables.

        Returns:
            Names of the tracked tables

        Raises:
            MissingPrimaryKeyError: if a tracked table has no single-column
                primary key
        """
        with store.transaction() as tx:
            for ddl in _LEDGER_DDL:
                tx.execute(ddl)

            tracked = [t for t in tx.table_names() if self.is_tracked(t)]
            for table in tracked:
                self.single_primary_key(tx, table)
                existing = set(tx.columns(table))
                for column, column_type in METADATA_COLUMNS:
                    if column not in existing:
                        tx.execute(
                            f"ALTER TABLE {quote_identifier(table)} "
                            f"ADD COLUMN {column} {column_type}"
                        )
                tx.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_{VERSION_TABLE} "
                    f"ON {quote_identifier(table)}({VERSION_TABLE})"
                )

        logger.info("Version ledger installed on %s for tables %s", store.db_path, tracked)
        return tracked

    def track(self, tx: Transaction, user: Optional[str] = None) -> "TrackedTransaction":
        """Wrap a transaction handle so its writes update the ledger."""
        return TrackedTransaction(tx, self, user)

    # -- bookkeeping primitives ---------------------------------------------

    def single_primary_key(self, tx: Transaction, table: str) -> str:
        pk = tx.primary_key(table)
        if not pk:
            raise MissingPrimaryKeyError(
                f"Table {table} doesn't have any primary key, can't use modification track"
            )
        if len(pk) > 1:
            raise MissingPrimaryKeyError(
                f"Table {table} has many primary keys, can't use modification track"
            )
        return pk[0]

    def record_key(self, tx: Transaction, table: str, key_or_record: Any) -> Tuple[str, Any]:
        """Return (primary key column, key value) for a record or bare key."""
        pk = self.single_primary_key(tx, table)
        value = key_or_record.get(pk) if isinstance(key_or_record, dict) else key_or_record
        if value is None:
            raise MissingPrimaryKeyError(f"Missing primary key {pk} for table {table}")
        return pk, value

    def bump_table_version(self, tx: Transaction, table: str, now: datetime) -> int:
        """Increment the table version and return the new value."""
        tx.execute(
            f"""
            INSERT INTO {TABLE_VERSION_TABLE} (table_name, version_table, version_date)
            VALUES (?, 1, ?)
            ON CONFLICT(table_name) DO UPDATE SET
                version_table = version_table + 1,
                version_date = excluded.version_date
            """,
            (table, format_timestamp(now)),
        )
        return self.table_version(tx, table)

    def table_version(self, tx: Transaction, table: str) -> int:
        row = tx.execute(
            f"SELECT version_table FROM {TABLE_VERSION_TABLE} WHERE table_name = ?", (table,)
        ).fetchone()
        return row["version_table"] if row else 0

    def write_audit(self, tx: Transaction, entry: ColumnAudit) -> None:
        values = entry.to_dict()
        columns = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        tx.execute(f"INSERT INTO {AUDIT_TABLE} ({columns}) VALUES ({marks})", list(values.values()))

    def rewrite_audit_before(self, tx: Transaction, entry: ColumnAudit, column_before: Optional[str]) -> None:
        """Replace the before value of an existing audit entry."""
        identity = entry.identity()
        where = " AND ".join(f"{k} = ?" for k in identity)
        tx.execute(
            f"UPDATE {AUDIT_TABLE} SET column_before = ? WHERE {where}",
            [column_before] + list(identity.values()),
        )

    def audit_exists(self, tx: Transaction, entry: ColumnAudit) -> bool:
        identity = entry.identity()
        where = " AND ".join(f"{k} = ?" for k in identity)
        row = tx.execute(
            f"SELECT 1 FROM {AUDIT_TABLE} WHERE {where}", list(identity.values())
        ).fetchone()
        return row is not None

    def audit_entries(
        self,
        tx: Transaction,
        table: str,
        record_key: Any,
        after_version_record: Optional[int] = None,
        column: Optional[str] = None,
    ) -> List[ColumnAudit]:
        """
        Audit entries of a record in chain order.

        Args:
            after_version_record: only entries with a greater version_record
            column: only entries for this column
        """
        sql = f"SELECT * FROM {AUDIT_TABLE} WHERE table_name = ? AND record_key = ?"
        params: List[Any] = [table, to_text(record_key)]
        if after_version_record is not None:
            sql += " AND version_record > ?"
            params.append(after_version_record)
        if column is not None:
            sql += " AND column_name = ?"
            params.append(column)
        sql += " ORDER BY version_record ASC, version_date ASC"
        return [ColumnAudit.from_row(dict(row)) for row in tx.execute(sql, params).fetchall()]

    def tombstones(self, tx: Transaction, table: str, after_version_table: int = 0) -> List[DeleteTombstone]:
        rows = tx.execute(
            f"SELECT * FROM {DELETE_TABLE} WHERE table_name = ? AND version_table > ? "
            f"ORDER BY version_table ASC",
            (table, after_version_table),
        ).fetchall()
        return [DeleteTombstone.from_row(dict(row)) for row in rows]


class TrackedTransaction:
    """
    Transaction handle that records every write in the ledger.

    Reads and writes on untracked tables are passed through unchanged.
    """

    def __init__(self, tx: Transaction, ledger: VersionLedger, user: Optional[str] = None):
        self.tx = tx
        self.ledger = ledger
        self.user = user

    def __getattr__(self, name: str) -> Any:
        # reads (get_by_key, search, columns...) go straight to the handle
        return getattr(self.tx, name)

    def _user_for(self, record: Dict[str, Any]) -> Optional[str]:
        if record.get(VERSION_USER) is not None:
            return record[VERSION_USER]
        if self.user is not None:
            return self.user
        return self.ledger.default_user

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        if not self.ledger.is_tracked(table):
            return self.tx.insert(table, record)

        self.ledger.single_primary_key(self.tx, table)
        now = self.ledger.clock()
        row = dict(record)
        row[VERSION_RECORD] = 0
        row[VERSION_TABLE] = self.ledger.bump_table_version(self.tx, table, now)
        row[VERSION_DATE] = format_timestamp(record.get(VERSION_DATE) or now)
        row[VERSION_USER] = self._user_for(record)
        logger.debug("insert %s at table version %s", table, row[VERSION_TABLE])
        return self.tx.insert(table, row)

    def update(self, table: str, record: Dict[str, Any], version_date: Any = None) -> Dict[str, Any]:
        """
        Update a record, auditing every column whose value changes.

        Args:
            version_date: when the edit happened; without it an explicit
                velox_version_date in the record is kept, unless it just
                repeats the stored one, and the edit is dated now otherwise
        """
        if not self.ledger.is_tracked(table):
            return self.tx.update(table, record)

        pk, key = self.ledger.record_key(self.tx, table, record)
        prior = self.tx.get_by_key(table, {pk: key})
        if prior is None:
            raise RecordNotFoundError(f"No record {key} in table {table}")

        now = self.ledger.clock()
        previous = prior.get(VERSION_RECORD)
        version_record = 1 if previous is None else previous + 1
        version_table = self.ledger.bump_table_version(self.tx, table, now)

        incoming_date = record.get(VERSION_DATE)
        if version_date is not None:
            version_date = format_timestamp(version_date)
        elif incoming_date is None or _same_instant(incoming_date, prior.get(VERSION_DATE)):
            version_date = format_timestamp(now)
        else:
            version_date = format_timestamp(incoming_date)
        user = self._user_for(record)

        for column in self.tx.columns(table):
            if is_metadata_column(column) or column == pk or column not in record:
                continue
            if values_equal(prior[column], record[column]):
                continue
            self.ledger.write_audit(
                self.tx,
                ColumnAudit(
                    table_name=table,
                    record_key=to_text(key),
                    version_table=version_table,
                    version_record=version_record,
                    version_date=version_date,
                    version_user=user,
                    column_name=column,
                    column_before=to_text(prior[column]),
                    column_after=to_text(record[column]),
                ),
            )

        row = dict(record)
        row.update({
            VERSION_RECORD: version_record,
            VERSION_TABLE: version_table,
            VERSION_DATE: version_date,
            VERSION_USER: user,
        })
        logger.debug("update %s[%s] to record version %s", table, key, version_record)
        return self.tx.update(table, row)

    def remove(self, table: str, key_or_record: Any) -> int:
        if not self.ledger.is_tracked(table):
            return self.tx.remove(table, key_or_record)

        pk, key = self.ledger.record_key(self.tx, table, key_or_record)
        if self.tx.get_by_key(table, {pk: key}) is None:
            return 0

        now = self.ledger.clock()
        version_table = self.ledger.bump_table_version(self.tx, table, now)
        self.tx.execute(
            f"INSERT INTO {DELETE_TABLE} (version_table, delete_date, table_name, record_key) "
            f"VALUES (?, ?, ?, ?)",
            (version_table, format_timestamp(now), table, to_text(key)),
        )
        logger.debug("remove %s[%s] at table version %s", table, key, version_table)
        return self.tx.remove(table, {pk: key})


def _same_instant(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    try:
        return to_timestamp(left) == to_timestamp(right)
    except ValueError:
        return False
