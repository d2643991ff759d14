"""Shared parsing utilities for provider adapters.

Centralises the date and amount parsing every provider needs: ISO 8601
strings, date-only strings, scaled integer amounts and loose decimals.
"""

import hashlib
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation


def parse_iso_datetime(value) -> datetime | None:
    """Parse an ISO 8601 string (or date/datetime object) to a UTC-aware datetime.

    Handles:
    - Z suffix ("2024-01-15T10:30:00Z")
    - +0000 no-colon offset ("2024-01-15T10:30:00+0000")
    - Date-only strings ("2024-06-28")
    - datetime/date objects passed through with UTC normalisation

    Returns:
        A timezone-aware UTC datetime, or None if the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    value_str = str(value)
    if value_str.endswith("Z"):
        value_str = value_str[:-1] + "+00:00"
    if (
        len(value_str) >= 5
        and value_str[-5] in ("+", "-")
        and value_str[-4:].isdigit()
        and "T" in value_str
    ):
        value_str = value_str[:-2] + ":" + value_str[-2:]

    try:
        return ensure_utc(datetime.fromisoformat(value_str))
    except (ValueError, TypeError):
        return None


def parse_date(value) -> date | None:
    """Parse a date-only value ("2024-06-28", date, or datetime).

    Returns:
        A date, or None if the value is empty or unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def ensure_utc(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def expires_in_to_datetime(expires_in, now: datetime | None = None) -> datetime | None:
    """Convert an OAuth ``expires_in`` (seconds) to an absolute UTC expiry."""
    if expires_in is None:
        return None
    try:
        seconds = int(expires_in)
    except (TypeError, ValueError):
        return None
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=seconds)


def to_decimal(value) -> Decimal | None:
    """Convert a number or numeric string to Decimal.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1") rather than
    its binary expansion.
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def scaled_to_decimal(unscaled_value, scale) -> Decimal | None:
    """Convert an ``{unscaledValue, scale}`` pair to an exact Decimal.

    ``unscaledValue=-2550, scale=2`` is -25.50.  A negative scale
    multiplies: ``unscaledValue=5, scale=-3`` is 5000.
    """
    unscaled = to_decimal(unscaled_value)
    if unscaled is None:
        return None
    try:
        exponent = int(scale or 0)
    except (TypeError, ValueError):
        return None
    return unscaled.scaleb(-exponent)


def description_hash(description: str | None) -> str | None:
    """Stable hash of a normalised description, used for change matching."""
    if description is None:
        return None
    normalised = " ".join(description.split()).lower()
    return hashlib.sha256(normalised.encode()).hexdigest()
