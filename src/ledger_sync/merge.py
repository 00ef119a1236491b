"""
Change-set merge with column-granular conflict resolution.

Applies a client ChangeSet to the server database inside one transaction,
going through the version ledger so every write is versioned and audited.
For each record it decides whether to insert, fully update, partially
update or leave it alone, column by column, so that no committed server
edit is silently lost.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from .changes import ChangeAction, ChangeSet, ResolvedChange, resolve_change
from .errors import ConflictResolutionError, MissingPrimaryKeyError, UnknownTableError
from .ledger import (
    VERSION_DATE,
    VERSION_RECORD,
    VERSION_TABLE,
    VERSION_USER,
    ColumnAudit,
    TrackedTransaction,
    VersionLedger,
)
from .store import SQLiteStore
from .values import format_timestamp, is_metadata_column, shift_ms, to_text, values_equal

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Result of applying one ChangeSet."""
    inserted: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    conflicts_resolved: int = 0

    @property
    def applied(self) -> int:
        return self.inserted + self.updated + self.removed

    def to_dict(self) -> dict:
        return asdict(self)


class DatabaseMerger:
    """
    Applies ChangeSets against a ledger-tracked store.

    Conflict rule per column: the server keeps its value when one of its
    own edits made after the client's base version is more recent, in
    corrected time, than the client's change; otherwise the client's
    value wins. When the server keeps its value the audit chain is
    spliced so it still reads as one unbroken history.
    """

    def __init__(self, store: SQLiteStore, ledger: VersionLedger, transaction_timeout: Optional[float] = None):
        """
        Args:
            store: the server database
            ledger: ledger configuration for that database
            transaction_timeout: deadline for one ChangeSet, defaults to
                the store's setting
        """
        self.store = store
        self.ledger = ledger
        self.transaction_timeout = transaction_timeout

    def apply_change_set(self, change_set: ChangeSet) -> MergeResult:
        """
        Apply all changes in order, atomically.

        Returns:
            MergeResult with statistics

        Raises:
            SyncError: any failure; nothing of the ChangeSet is committed
        """
        result = MergeResult()
        change_time = change_set.corrected_date

        with self.store.transaction(self.transaction_timeout) as raw:
            tx = self.ledger.track(raw)
            for change in change_set.changes:
                if not self.ledger.is_tracked(change.table) or not tx.has_table(change.table):
                    raise UnknownTableError(f"Table {change.table} is not a tracked table")
                try:
                    resolved = resolve_change(tx, change)
                    self._apply(tx, resolved, change_time, result)
                except MissingPrimaryKeyError as e:
                    raise ConflictResolutionError(f"Can't apply change on {change.table}: {e}") from e

        logger.info(
            "ChangeSet applied: %d inserted, %d updated, %d removed, %d unchanged, %d conflicts",
            result.inserted, result.updated, result.removed, result.unchanged, result.conflicts_resolved,
        )
        return result

    def _apply(self, tx: TrackedTransaction, resolved: ResolvedChange, change_time: datetime, result: MergeResult) -> None:
        table, record = resolved.table, resolved.record

        if resolved.action is ChangeAction.REMOVE:
            # no conflict check, the last delete wins
            result.removed += tx.remove(table, record)
            return

        if resolved.action is ChangeAction.INSERT:
            tx.insert(table, self._incoming_fields(record, change_time))
            result.inserted += 1
            return

        server_version = resolved.current.get(VERSION_RECORD) or 0
        incoming_version = record.get(VERSION_RECORD) or 0
        if server_version < incoming_version:
            # the client's base is already the latest server version
            tx.update(table, self._incoming_fields(record, change_time), version_date=change_time)
            result.updated += 1
            return

        self._reconcile(tx, table, resolved.current, record, change_time, result)

    def _incoming_fields(self, record: Dict[str, Any], change_time: datetime) -> Dict[str, Any]:
        fields = {k: v for k, v in record.items() if k not in (VERSION_RECORD, VERSION_TABLE)}
        fields[VERSION_DATE] = format_timestamp(change_time)
        return fields

    def _reconcile(
        self,
        tx: TrackedTransaction,
        table: str,
        current: Dict[str, Any],
        record: Dict[str, Any],
        change_time: datetime,
        result: MergeResult,
    ) -> None:
        pk, key = self.ledger.record_key(tx, table, record)
        changed: List[str] = [
            column for column in record
            if not is_metadata_column(column) and column != pk
            and (column not in current or not values_equal(current[column], record[column]))
        ]
        if not changed:
            result.unchanged += 1
            return

        incoming_version = record.get(VERSION_RECORD) or 0
        user = record.get(VERSION_USER) or tx.user or self.ledger.default_user
        payload = {column: record[column] for column in changed}

        # every server edit made on top of the version the client started from
        for entry in self.ledger.audit_entries(tx, table, key, after_version_record=incoming_version - 1):
            if entry.column_name not in changed:
                continue
            if entry.effective_time <= change_time:
                logger.debug(
                    "%s[%s].%s: client change is newer than server edit at v%s",
                    table, key, entry.column_name, entry.version_record,
                )
                continue

            logger.debug(
                "%s[%s].%s: server edit at v%s is newer, keeping server value",
                table, key, entry.column_name, entry.version_record,
            )
            self._splice(tx, entry, record, change_time, user)
            changed.remove(entry.column_name)
            del payload[entry.column_name]
            result.conflicts_resolved += 1

        if not changed:
            result.unchanged += 1
            return

        payload[pk] = key
        payload[VERSION_DATE] = format_timestamp(change_time)
        payload[VERSION_USER] = user
        tx.update(table, payload, version_date=change_time)
        result.updated += 1

    def _splice(
        self,
        tx: TrackedTransaction,
        entry: ColumnAudit,
        record: Dict[str, Any],
        change_time: datetime,
        user: Optional[str],
    ) -> None:
        """
        Fold the client's older value beneath a newer server edit.

        The chain before -> after becomes before -> mid -> after, where mid
        is the client's value dated at the client's corrected time.
        """
        mid = to_text(record[entry.column_name])
        self.ledger.rewrite_audit_before(tx, entry, mid)

        inserted = ColumnAudit(
            table_name=entry.table_name,
            record_key=entry.record_key,
            version_table=record.get(VERSION_TABLE) or 0,
            version_record=entry.version_record,
            version_date=format_timestamp(change_time),
            version_user=user,
            column_name=entry.column_name,
            column_before=entry.column_before,
            column_after=mid,
        )
        while self.ledger.audit_exists(tx, inserted):
            # same change set splicing the same edit twice
            inserted.version_date = format_timestamp(shift_ms(inserted.version_date, 1))
        self.ledger.write_audit(tx, inserted)

