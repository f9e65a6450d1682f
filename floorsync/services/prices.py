"""
Price point validation and history summaries.

Turns raw upstream points into price_history rows. Points without a
timestamp or without a positive native floor are discarded and counted;
they are never stored. ``summarize_price_frame`` reduces a stored history
frame to the figures shown next to a chart.

Usage:
    from floorsync.services.prices import validate_points

    result = validate_points("azuki", points)
    if result.valid:
        await store.prices.bulk_upsert(result.rows)
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import pandas as pd

from floorsync.core.data_helpers import safe_float, utc_date
from floorsync.core.logging import get_logger
from floorsync.services.data_providers.base import RawPricePoint


logger = get_logger("services.prices")


@dataclass
class ValidationResult:
    """Result of price point validation."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rejected: int = 0
    reasons: Counter = field(default_factory=Counter)

    @property
    def valid(self) -> bool:
        return bool(self.rows)

    @property
    def error(self) -> str | None:
        if self.rows:
            return None
        if not self.reasons:
            return "No data received"
        detail = ", ".join(f"{reason}={n}" for reason, n in sorted(self.reasons.items()))
        return f"No valid price data ({detail})"


def validate_points(slug: str, points: Iterable[RawPricePoint]) -> ValidationResult:
    """
    Validate raw points and convert them to price_history rows.

    Checks:
    1. Timestamp present
    2. Native floor present and greater than zero

    Multiple points on the same UTC date collapse to the last one.

    Args:
        slug: Collection slug the points belong to
        points: Raw points from the price-history provider

    Returns:
        ValidationResult with rows ordered by date
    """
    result = ValidationResult()
    by_date: dict[Any, dict[str, Any]] = {}

    for point in points:
        if point.timestamp is None:
            result.rejected += 1
            result.reasons["missing_timestamp"] += 1
            continue
        if point.floor_native is None:
            result.rejected += 1
            result.reasons["missing_floor"] += 1
            continue
        if point.floor_native <= 0:
            result.rejected += 1
            result.reasons["non_positive_floor"] += 1
            continue

        day = utc_date(point.timestamp)
        by_date[day] = {
            "collection_slug": slug,
            "date": day,
            "timestamp": point.timestamp,
            "floor_eth": point.floor_native,
            "floor_usd": point.floor_usd,
            "volume_eth": point.volume_native,
            "volume_usd": point.volume_usd,
            "sales_count": point.sales_count,
        }

    result.rows = [by_date[day] for day in sorted(by_date)]
    if result.rejected:
        logger.debug(f"{slug}: discarded {result.rejected} invalid points")
    return result


def summarize_price_frame(df: pd.DataFrame) -> dict[str, Any]:
    """
    Summarize a date-indexed price frame from ``get_as_dataframe``.

    Returns:
        Dict with first/last/min/max/mean floor (ETH), change_pct between
        the first and last floor, and total ETH volume
    """
    floor = df["floor_eth"].dropna()
    first = safe_float(floor.iloc[0]) if not floor.empty else None
    last = safe_float(floor.iloc[-1]) if not floor.empty else None
    change_pct = None
    if first and last is not None:
        change_pct = round((last - first) / first * 100, 2)

    return {
        "days": len(df),
        "start": df.index[0].date().isoformat(),
        "end": df.index[-1].date().isoformat(),
        "first_floor_eth": first,
        "last_floor_eth": last,
        "min_floor_eth": safe_float(floor.min()),
        "max_floor_eth": safe_float(floor.max()),
        "mean_floor_eth": safe_float(floor.mean()),
        "change_pct": change_pct,
        "total_volume_eth": safe_float(df["volume_eth"].sum()),
    }
