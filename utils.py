"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
from datetime import timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from dateutil.relativedelta import relativedelta
from flask import request

from errors import ValidationError

logger = logging.getLogger(__name__)

_Q2 = Decimal("0.01")


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def utc_today() -> datetime.date:
    return utc_now().date()


def as_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_date(raw: Optional[str]) -> Optional[datetime.date]:
    if not raw:
        return None
    try:
        return datetime.datetime.strptime(raw, "%Y-%m-%d").date()
    except (ValueError, TypeError):
        logger.warning("Could not parse date: %r", raw)
        return None


def add_billing_cycle(start: datetime.date, billing_cycle: str, count: int = 1) -> Optional[datetime.date]:
    """Return *start* advanced by *count* billing cycles, or None for one-time plans."""
    if billing_cycle == "monthly":
        return start + relativedelta(months=count)
    if billing_cycle == "quarterly":
        return start + relativedelta(months=3 * count)
    if billing_cycle == "yearly":
        return start + relativedelta(years=count)
    if billing_cycle == "one_time":
        return None
    raise ValueError(f"Unknown billing cycle: {billing_cycle!r}")


# ---------------------------------------------------------------------------
# Money helpers
# ---------------------------------------------------------------------------

def money(value) -> Decimal:
    """Quantize *value* to the minor currency unit using round-half-up."""
    return Decimal(str(value)).quantize(_Q2, rounding=ROUND_HALF_UP)


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


def parse_decimal(value) -> Optional[Decimal]:
    """Convert *value* to ``Decimal``; returns None when it is missing or malformed.

    Floats are routed through ``str`` so ``0.1`` stays ``Decimal("0.1")``.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        logger.warning("Could not convert %r to Decimal", value)
        return None
    if not result.is_finite():
        return None
    return result


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def get_json_body() -> dict:
    """Return the request's JSON object or raise ``ValidationError``."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def optional_id(data: dict, key: str) -> Optional[int]:
    """Read a positive integer id from *data*; None when absent."""
    value = data.get(key)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be an integer id.")
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer id.")
    if result < 1:
        raise ValidationError(f"{key} must be an integer id.")
    return result


def required_id(data: dict, key: str) -> int:
    result = optional_id(data, key)
    if result is None:
        raise ValidationError(f"{key} is required.")
    return result


def required_date(data: dict, key: str) -> datetime.date:
    result = parse_date(data.get(key)) if isinstance(data.get(key), str) else None
    if result is None:
        raise ValidationError(f"{key} must be a YYYY-MM-DD date.")
    return result
