"""
Centralized data conversion helpers.

Safe numeric conversion for upstream payloads and UTC date/time helpers.
SQLite hands back naive datetimes, so everything read from the Store goes
through ``as_utc`` before arithmetic.

Usage:
    from floorsync.core.data_helpers import safe_float, safe_int, as_utc
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any

import pandas as pd


def safe_float(value: Any, default: float | None = None) -> float | None:
    """
    Safely convert value to float.

    Handles None, NaN, Inf, pandas NA and numeric strings.

    Args:
        value: Any value to convert
        default: Default to return if conversion fails

    Returns:
        Float value or default if conversion fails
    """
    if value is None:
        return default
    try:
        if pd.isna(value):
            return default
    except (TypeError, ValueError):
        return default
    try:
        f = float(value)
    except (ValueError, TypeError):
        return default
    if math.isnan(f) or math.isinf(f):
        return default
    return f


def safe_int(value: Any, default: int | None = None) -> int | None:
    """
    Safely convert value to int.

    Args:
        value: Any value to convert
        default: Default to return if conversion fails

    Returns:
        Int value or default if conversion fails
    """
    f = safe_float(value)
    if f is None:
        return default
    # Handle float strings like "123.0"
    return int(f)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_timestamp(value: Any) -> int | None:
    """
    Coerce an upstream timestamp to unix seconds.

    The price-floor API is inconsistent about units. Values above 1e14 are
    microseconds, values above 1e11 milliseconds, anything smaller is
    already seconds.
    """
    ts = safe_float(value)
    if ts is None or ts <= 0:
        return None
    if ts > 1e14:
        ts /= 1_000_000
    elif ts > 1e11:
        ts /= 1000
    return int(ts)


def utc_date(ts: int) -> date:
    """UTC calendar date of a unix timestamp in seconds."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).date()


def day_start_ts(day: date) -> int:
    """Unix seconds at 00:00 UTC of ``day``."""
    return int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp())


__all__ = [
    "safe_float",
    "safe_int",
    "utc_now",
    "as_utc",
    "normalize_timestamp",
    "utc_date",
    "day_start_ts",
]
