"""Shared utilities for ORM models."""

import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

# Decimal places kept by every Numeric money column
MONEY_SCALE = 4
_MONEY_QUANTUM = Decimal(1).scaleb(-MONEY_SCALE)


def generate_uuid() -> str:
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime read back from the database.

    SQLite drops tzinfo on round-trip, so columns written as aware UTC
    come back naive.  Aware values are converted to UTC unchanged.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_money(value: Decimal | None) -> Decimal | None:
    """Round an amount to the scale the money columns store.

    Stored amounts come back at ``MONEY_SCALE`` places, so anything
    compared against a stored row has to be rounded the same way first.
    """
    if value is None:
        return None
    return Decimal(value).quantize(_MONEY_QUANTUM, rounding=ROUND_HALF_UP)
