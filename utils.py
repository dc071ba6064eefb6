"""Utility / helper functions used across the application."""

from __future__ import annotations

import calendar
import datetime
import logging
from datetime import timezone
from decimal import Decimal
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns; every stored value is UTC, so a naive value is tagged as such.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(raw) -> Optional[datetime.datetime]:
    """Convert a Unix timestamp (as sent by Stripe) to an aware datetime."""
    if raw is None or raw == "":
        return None
    try:
        return datetime.datetime.fromtimestamp(int(raw), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError):
        logger.warning("Could not parse timestamp: %r", raw)
        return None


def parse_iso_datetime(raw: Optional[str]) -> Optional[datetime.datetime]:
    if not raw:
        return None
    try:
        return as_utc(datetime.datetime.fromisoformat(raw))
    except (ValueError, TypeError):
        logger.warning("Could not parse datetime: %r", raw)
        return None


def add_months(value: datetime.datetime, months: int) -> datetime.datetime:
    """Shift *value* by *months*, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def advance_period(value: datetime.datetime, billing_cycle: str) -> datetime.datetime:
    """Return the end of the billing period that starts at *value*."""
    return add_months(value, 12 if billing_cycle == "annual" else 1)


def days_until(target: Optional[datetime.datetime], now: datetime.datetime) -> Optional[int]:
    if target is None:
        return None
    return max(0, (as_utc(target) - now).days)


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def cents_to_decimal(value) -> Decimal:
    """Convert a Stripe minor-unit amount to a two-place ``Decimal``."""
    return (Decimal(int(value or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def decimal_to_cents(value) -> int:
    return int((Decimal(str(value)) * 100).quantize(Decimal("1")))
