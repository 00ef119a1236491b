"""
Change and ChangeSet wire types.

A ChangeSet is a batch of record mutations made on a client, plus the
clock correction measured just before pushing it. It travels as JSON:

    {"date": "...", "timeLapse": 1234, "changes": [{"table", "action", "record"}]}
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .clock import corrected_time
from .errors import MalformedChangeSetError
from .values import format_timestamp, to_timestamp, utcnow


class ChangeAction(Enum):
    """What a change does to its record."""
    INSERT = "insert"
    UPDATE = "update"
    REMOVE = "remove"
    AUTO = "auto"  # insert if absent, update otherwise


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass
class Change:
    """
    A single mutation of one record.

    The record carries the field values and, when the client knows them,
    the velox_version_* metadata of the version it was based on.
    """
    table: str
    action: ChangeAction
    record: Dict[str, Any]

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "table": self.table,
            "action": self.action.value,
            "record": _jsonable(self.record),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Change":
        """
        Create from dictionary.

        Raises:
            MalformedChangeSetError: if a field is missing or invalid
        """
        if not isinstance(d, dict):
            raise MalformedChangeSetError(f"Change must be an object, got {type(d).__name__}")
        table = d.get("table")
        if not isinstance(table, str) or not table:
            raise MalformedChangeSetError("Change without table")
        try:
            action = ChangeAction(d.get("action") or ChangeAction.AUTO.value)
        except ValueError:
            raise MalformedChangeSetError(f"Unknown action {d.get('action')!r} for table {table}")
        record = d.get("record")
        if not isinstance(record, dict):
            raise MalformedChangeSetError(f"Change on {table} without record")
        return cls(table=table, action=action, record=dict(record))


@dataclass
class ChangeSet:
    """A batch of changes applied atomically by the server."""
    origin_date: datetime
    time_lapse: int = 0
    changes: List[Change] = field(default_factory=list)

    @property
    def corrected_date(self) -> datetime:
        """The origin date translated into server time."""
        return corrected_time(self.origin_date, self.time_lapse)

    def to_dict(self) -> dict:
        return {
            "date": format_timestamp(self.origin_date),
            "timeLapse": self.time_lapse,
            "changes": [c.to_dict() for c in self.changes],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, d: dict) -> "ChangeSet":
        """
        Decode a wire payload.

        Raises:
            MalformedChangeSetError: if the payload shape is wrong
        """
        if not isinstance(d, dict):
            raise MalformedChangeSetError("ChangeSet must be an object")
        changes = d.get("changes")
        if not isinstance(changes, list):
            raise MalformedChangeSetError("ChangeSet without changes list")
        try:
            origin_date = to_timestamp(d.get("date")) or utcnow()
            time_lapse = int(d.get("timeLapse") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedChangeSetError(f"Invalid ChangeSet header: {e}")
        return cls(
            origin_date=origin_date,
            time_lapse=time_lapse,
            changes=[Change.from_dict(c) for c in changes],
        )

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeSet":
        try:
            data = json.loads(json_str)
        except ValueError as e:
            raise MalformedChangeSetError(f"Invalid JSON payload: {e}")
        return cls.from_dict(data)


@dataclass
class ResolvedChange:
    """A change whose action no longer depends on the stored state."""
    change: Change
    action: ChangeAction
    current: Optional[Dict[str, Any]] = None

    @property
    def table(self) -> str:
        return self.change.table

    @property
    def record(self) -> Dict[str, Any]:
        return self.change.record


def resolve_change(tx: Any, change: Change) -> ResolvedChange:
    """
    Settle insert-versus-update by looking the record up.

    REMOVE is kept as is. INSERT, UPDATE and AUTO become INSERT when the
    key is unknown and UPDATE otherwise, with the stored row attached.

    Args:
        tx: transaction handle exposing get_by_key
        change: the change to resolve
    """
    if change.action is ChangeAction.REMOVE:
        return ResolvedChange(change, ChangeAction.REMOVE)
    current = tx.get_by_key(change.table, change.record)
    if current is None:
        return ResolvedChange(change, ChangeAction.INSERT)
    return ResolvedChange(change, ChangeAction.UPDATE, current)
