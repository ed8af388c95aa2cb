"""
Total coercions for values crossing the QuickBooks boundary.

None of these raise: unparsable input becomes None, so one bad field never
aborts a batch.
"""

import math
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any


def parse_amount(value: Any) -> float | None:
    """Parse a QBO amount ("12.50", 12.5, Decimal) into a float."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    try:
        number = Decimal(str(value).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite():
        return None
    return float(number)


def parse_int(value: Any) -> int | None:
    """Parse an integer such as a SyncToken ("3")."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    try:
        return int(str(value).strip(), 10)
    except ValueError:
        return None


def ensure_utc(dt: datetime | None) -> datetime | None:
    """
    Ensure datetime has UTC timezone.

    Naive datetimes are assumed to already be UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a QBO timestamp ("2024-01-15T10:30:00-08:00") into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    try:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def parse_date(value: Any) -> date | None:
    """Parse a QBO transaction date ("2024-01-15")."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def format_qbo_timestamp(dt: datetime) -> str:
    """Format a datetime for a QBO query WHERE clause."""
    return ensure_utc(dt).strftime("%Y-%m-%dT%H:%M:%S+00:00")
