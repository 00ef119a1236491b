"""
SQLite storage engine.

Implements the transactional execution contract used by the ledger, the
conflict engine and the client cache: a transaction handle exposing
insert, update, remove, get_by_key and search, all scoped to one
transaction that commits on success and rolls back on any error.
"""

import json
import logging
import re
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .errors import ConstraintError, MissingPrimaryKeyError, TransactionTimeoutError, UnknownTableError
from .values import format_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

DB_VERSION_TABLE = "velox_db_version"
DEFAULT_TRANSACTION_TIMEOUT = 30.0

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPERATORS = {
    "=": "=",
    ">": ">",
    ">=": ">=",
    "<": "<",
    "<=": "<=",
    "<>": "<>",
    "!=": "<>",
    "in": "IN",
    "not in": "NOT IN",
    "between": "BETWEEN",
}

Predicate = Optional[Dict[str, Any]]


def quote_identifier(name: str) -> str:
    """Quote a table or column name after validating it."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ConstraintError(f"Invalid identifier: {name!r}")
    return f'"{name}"'


def adapt_value(value: Any) -> Any:
    """Convert a Python value to something sqlite3 can bind."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def build_where(predicate: Predicate) -> Tuple[str, List[Any]]:
    """
    Translate a search predicate into a WHERE clause.

    Each entry maps a column to one of:
    - a plain value (equality)
    - None (IS NULL)
    - a list, tuple or set (IN)
    - {"ope": operator, "value": value} for =, >, >=, <, <=, <>, in,
      not in and between

    Returns:
        Tuple of (clause without the WHERE keyword, bound parameters)
    """
    if not predicate:
        return "", []

    clauses = []
    params: List[Any] = []
    for column, condition in predicate.items():
        col = quote_identifier(column)

        if condition is None:
            clauses.append(f"{col} IS NULL")
            continue

        if isinstance(condition, dict):
            if "ope" not in condition:
                raise ConstraintError(f"Invalid condition for {column}: {condition!r}")
            operator = _OPERATORS.get(str(condition["ope"]).strip().lower())
            if operator is None:
                raise ConstraintError(f"Unknown operator {condition['ope']!r}")
            value = condition.get("value")
        elif isinstance(condition, (list, tuple, set, frozenset)):
            operator, value = "IN", condition
        else:
            operator, value = "=", condition

        if operator in ("IN", "NOT IN"):
            values = list(value or [])
            if not values:
                # empty IN matches nothing, empty NOT IN matches everything
                clauses.append("0" if operator == "IN" else "1")
                continue
            marks = ", ".join("?" for _ in values)
            clauses.append(f"{col} {operator} ({marks})")
            params.extend(adapt_value(v) for v in values)
        elif operator == "BETWEEN":
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise ConstraintError(f"between needs two values for {column}")
            clauses.append(f"{col} BETWEEN ? AND ?")
            params.extend(adapt_value(v) for v in value)
        else:
            clauses.append(f"{col} {operator} ?")
            params.append(adapt_value(value))

    return " AND ".join(clauses), params


def build_order_by(order_by: Any) -> str:
    """Translate "col", ["a", "b"] or [{"col": "a", "direction": "desc"}]."""
    if not order_by:
        return ""
    if isinstance(order_by, (str, dict)):
        order_by = [order_by]

    parts = []
    for item in order_by:
        if isinstance(item, str):
            parts.append(quote_identifier(item))
        else:
            direction = str(item.get("direction", "asc")).lower()
            if direction not in ("asc", "desc"):
                raise ConstraintError(f"Invalid sort direction {direction!r}")
            parts.append(f"{quote_identifier(item['col'])} {direction.upper()}")
    return ", ".join(parts)


class Transaction:
    """
    Handle on one open transaction.

    Every operation first checks the transaction deadline; past it a
    TransactionTimeoutError is raised, which makes the owning context
    roll back.
    """

    def __init__(self, conn: sqlite3.Connection, deadline: Optional[float] = None, timeout: Optional[float] = None):
        self.conn = conn
        self.deadline = deadline
        self.timeout = timeout

    def check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise TransactionTimeoutError(
                f"Transaction timeout after {self.timeout} seconds, rolled back"
            )

    def execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        """Run raw SQL inside the transaction."""
        self.check_deadline()
        return self.conn.execute(sql, [adapt_value(p) for p in params])

    # -- schema -------------------------------------------------------------

    def table_names(self) -> List[str]:
        rows = self.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        ).fetchall()
        return [row["name"] for row in rows]

    def table_info(self, table: str) -> List[sqlite3.Row]:
        rows = self.execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
        if not rows:
            raise UnknownTableError(f"Unknown table {table}")
        return rows

    def columns(self, table: str) -> List[str]:
        return [row["name"] for row in self.table_info(table)]

    def primary_key(self, table: str) -> List[str]:
        pk_rows = [row for row in self.table_info(table) if row["pk"]]
        return [row["name"] for row in sorted(pk_rows, key=lambda r: r["pk"])]

    def has_table(self, table: str) -> bool:
        quote_identifier(table)
        row = self.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        ).fetchone()
        return row is not None

    def key_of(self, table: str, key_or_record: Any) -> Dict[str, Any]:
        """
        Extract the primary key of a table from a record or a bare value.

        Raises:
            MissingPrimaryKeyError: if the table has no primary key or the
                record does not carry it
        """
        pk = self.primary_key(table)
        if not pk:
            raise MissingPrimaryKeyError(f"Table {table} doesn't have any primary key")

        if not isinstance(key_or_record, dict):
            if len(pk) != 1:
                raise MissingPrimaryKeyError(
                    f"Table {table} has a composite primary key, a record is needed"
                )
            return {pk[0]: key_or_record}

        missing = [k for k in pk if key_or_record.get(k) is None]
        if missing:
            raise MissingPrimaryKeyError(
                f"Missing primary key {', '.join(missing)} for table {table}"
            )
        return {k: key_or_record[k] for k in pk}

    # -- data ---------------------------------------------------------------

    def _check_columns(self, table: str, record: Dict[str, Any]) -> None:
        known = set(self.columns(table))
        unknown = [c for c in record if c not in known]
        if unknown:
            raise ConstraintError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")

    def insert(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record and return it as stored."""
        self._check_columns(table, record)
        columns = list(record)
        names = ", ".join(quote_identifier(c) for c in columns)
        marks = ", ".join("?" for _ in columns)
        if columns:
            sql = f"INSERT INTO {quote_identifier(table)} ({names}) VALUES ({marks})"
        else:
            sql = f"INSERT INTO {quote_identifier(table)} DEFAULT VALUES"
        cursor = self.execute(sql, [record[c] for c in columns])

        pk = self.primary_key(table)
        if len(pk) == 1 and record.get(pk[0]) is None:
            return self.get_by_key(table, cursor.lastrowid)
        if pk:
            return self.get_by_key(table, record)
        return dict(record)

    def update(self, table: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Update the record designated by its primary key, return it as stored."""
        self._check_columns(table, record)
        key = self.key_of(table, record)
        columns = [c for c in record if c not in key]
        if columns:
            assignments = ", ".join(f"{quote_identifier(c)} = ?" for c in columns)
            where, params = build_where(key)
            self.execute(
                f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {where}",
                [record[c] for c in columns] + params,
            )
        return self.get_by_key(table, key)

    def remove(self, table: str, key_or_record: Any) -> int:
        """Delete a record by primary key, return the number of rows removed."""
        where, params = build_where(self.key_of(table, key_or_record))
        cursor = self.execute(f"DELETE FROM {quote_identifier(table)} WHERE {where}", params)
        return cursor.rowcount

    def get_by_key(self, table: str, key_or_record: Any) -> Optional[Dict[str, Any]]:
        where, params = build_where(self.key_of(table, key_or_record))
        row = self.execute(
            f"SELECT * FROM {quote_identifier(table)} WHERE {where}", params
        ).fetchone()
        return dict(row) if row is not None else None

    def search(
        self,
        table: str,
        predicate: Predicate = None,
        order_by: Any = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Return all records of a table matching the predicate."""
        self.table_info(table)
        sql = f"SELECT * FROM {quote_identifier(table)}"
        where, params = build_where(predicate)
        if where:
            sql += f" WHERE {where}"
        order = build_order_by(order_by)
        if order:
            sql += f" ORDER BY {order}"
        if limit is not None or offset:
            sql += " LIMIT ? OFFSET ?"
            params += [-1 if limit is None else int(limit), int(offset or 0)]
        return [dict(row) for row in self.execute(sql, params).fetchall()]

    def search_first(self, table: str, predicate: Predicate = None, order_by: Any = None) -> Optional[Dict[str, Any]]:
        rows = self.search(table, predicate, order_by, limit=1)
        return rows[0] if rows else None


class SQLiteStore:
    """
    A SQLite database reached through short-lived transactions.

    Each transaction gets its own connection, so a store can be shared
    between threads.
    """

    def __init__(self, db_path: str, transaction_timeout: float = DEFAULT_TRANSACTION_TIMEOUT, busy_timeout: float = 5.0):
        """
        Args:
            db_path: Path to the SQLite database file
            transaction_timeout: Default deadline in seconds for transactions
                (0 disables it)
            busy_timeout: Seconds to wait for a database lock
        """
        self.db_path = Path(db_path).expanduser()
        self.transaction_timeout = transaction_timeout
        self.busy_timeout = busy_timeout

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection in manual transaction mode."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self, timeout: Optional[float] = None, write: bool = True) -> Iterator[Transaction]:
        """
        Open a transaction.

        Commits when the block exits normally, rolls back on any exception
        (including a timeout raised by the handle itself).

        Args:
            timeout: Deadline in seconds, defaults to the store's setting
            write: Take the write lock up front (BEGIN IMMEDIATE) so that
                read-then-write sequences cannot interleave
        """
        if timeout is None:
            timeout = self.transaction_timeout
        deadline = time.monotonic() + timeout if timeout and timeout > 0 else None

        conn = self._get_connection()
        tx = Transaction(conn, deadline, timeout)
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            yield tx
            tx.check_deadline()
            conn.execute("COMMIT")
        except BaseException as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if isinstance(e, Exception):
                logger.warning("Transaction on %s rolled back: %s", self.db_path, e)
            raise
        finally:
            conn.close()

    def run_in_transaction(self, fn: Callable[[Transaction], T], timeout: Optional[float] = None) -> T:
        """Run fn(tx) in one transaction and return its result."""
        with self.transaction(timeout) as tx:
            return fn(tx)

    def get_schema(self) -> Dict[str, Dict[str, Any]]:
        """
        Describe every table.

        Returns:
            {table: {"pk": [columns], "columns": [{"name", "type"}]}}
        """
        schema = {}
        with self.transaction(write=False) as tx:
            for table in tx.table_names():
                info = tx.table_info(table)
                schema[table] = {
                    "pk": [r["name"] for r in sorted((r for r in info if r["pk"]), key=lambda r: r["pk"])],
                    "columns": [{"name": r["name"], "type": r["type"]} for r in info],
                }
        return schema

    def schema_version(self) -> int:
        """Global schema version, 0 when never set."""
        with self.transaction(write=False) as tx:
            if not tx.has_table(DB_VERSION_TABLE):
                return 0
            row = tx.execute(f"SELECT MAX(version) AS v FROM {DB_VERSION_TABLE}").fetchone()
            return row["v"] or 0

    def set_schema_version(self, version: int) -> None:
        with self.transaction() as tx:
            tx.execute(f"CREATE TABLE IF NOT EXISTS {DB_VERSION_TABLE} (version INTEGER NOT NULL)")
            tx.execute(f"DELETE FROM {DB_VERSION_TABLE}")
            tx.execute(f"INSERT INTO {DB_VERSION_TABLE} (version) VALUES (?)", (int(version),))
