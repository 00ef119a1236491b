"""
Value helpers shared by the ledger and the conflict engine.

Timestamps travel as ISO-8601 strings and are stored in a fixed-width UTC
form so that SQLite text ordering matches chronological ordering.

Column comparison is canonical per type rather than a blanket string
coercion:
- None only equals None
- booleans compare against 0/1 and "true"/"false" spellings
- numbers compare numerically against numeric strings ("42" == 42)
- datetimes compare against ISO strings by instant, and two ISO
  timestamp strings compare by instant too
- anything else compares with ==
"""

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

METADATA_PREFIX = "velox_"

_TRUE = ("true", "t", "1", "yes")
_FALSE = ("false", "f", "0", "no")
_ISO_TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def is_metadata_column(column: str) -> bool:
    return column.startswith(METADATA_PREFIX)


def to_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO-8601 strings
    (including a trailing "Z") and epoch milliseconds.

    Raises:
        ValueError: if the value cannot be read as a timestamp
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Any) -> Optional[str]:
    """Render a timestamp in the canonical stored form."""
    dt = to_timestamp(value)
    if dt is None:
        return None
    return dt.isoformat(timespec="milliseconds")


def shift_ms(value: Any, milliseconds: int) -> datetime:
    """Return the timestamp moved by a signed number of milliseconds."""
    return to_timestamp(value) + timedelta(milliseconds=milliseconds)


def ms_between(later: Any, earlier: Any) -> int:
    """Signed whole milliseconds from earlier to later."""
    delta = to_timestamp(later) - to_timestamp(earlier)
    return int(round(delta.total_seconds() * 1000))


def to_text(value: Any) -> Optional[str]:
    """Render a column value the way the audit trail stores it."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, bytes):
        return value.hex()
    return str(value)


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return None


def _as_number(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
    elif isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
    else:
        return None
    return number if number.is_finite() else None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_iso_timestamp(value: Any) -> bool:
    return isinstance(value, str) and _ISO_TIMESTAMP.match(value) is not None


def values_equal(left: Any, right: Any) -> bool:
    """
    Compare a stored column value with an incoming one.

    Args:
        left: value as stored
        right: value as received (possibly stringified by the wire)

    Returns:
        True if both denote the same logical value
    """
    if left is None or right is None:
        return left is None and right is None

    if isinstance(left, bool) or isinstance(right, bool):
        a, b = _as_bool(left), _as_bool(right)
        return a is not None and a == b

    if _is_iso_timestamp(left) and _is_iso_timestamp(right) and left != right:
        try:
            return to_timestamp(left) == to_timestamp(right)
        except ValueError:
            return False

    if isinstance(left, datetime) or isinstance(right, datetime):
        try:
            return to_timestamp(left) == to_timestamp(right)
        except ValueError:
            return False

    if _is_number(left) or _is_number(right):
        a, b = _as_number(left), _as_number(right)
        if a is not None and b is not None:
            return a == b
        return False

    return left == right
