"""Shared utility helpers used across services."""

from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_CENTS = Decimal("0.01")


def safe_int(v):
    """Safely convert a value to int, returning None on failure."""
    if v is None:
        return None
    try:
        return int(v)
    except (ValueError, TypeError):
        return None


def safe_float(v):
    """Safely convert a value to float, returning None on failure."""
    if v is None:
        return None
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def money(v) -> Decimal:
    """Coerce a price-like value to a 2-place Decimal (None/garbage → 0.00)."""
    if v is None or isinstance(v, bool):
        return Decimal("0.00")
    try:
        return Decimal(str(v)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


def iso(dt):
    """ISO-8601 string for a datetime, or None."""
    return dt.isoformat() if dt else None


def as_utc(dt):
    """Tag a naive datetime as UTC; aware datetimes are converted to UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
