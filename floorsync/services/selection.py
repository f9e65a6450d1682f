"""
Quarterly market-cap selection.

Picks the top N collections by market cap from a full upstream snapshot
and commits them as the active selection period. Periods are calendar
quarters in UTC, labelled ``YYYY-Qn``.

Usage:
    engine = SelectionEngine(store, provider, queue, count=250)

    check = await engine.needs_new_selection()
    if check.needed:
        result = await engine.run_quarterly_selection()
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from floorsync.core.data_helpers import safe_float, utc_now
from floorsync.core.exceptions import AppException, SelectionDataError
from floorsync.core.logging import get_logger, run_id_var
from floorsync.core.rate_limiter import Priority, RequestQueue
from floorsync.database.orm import Collection
from floorsync.repositories.store import Store
from floorsync.services.data_providers.base import EntitySnapshot, MarketCapProvider
from floorsync.services.data_providers.resilience import call_with_timeout


logger = get_logger("services.selection")


# =============================================================================
# PERIOD ARITHMETIC
# =============================================================================


def current_period(now: datetime) -> str:
    """Quarter label for ``now``: quarter = ceil(month / 3)."""
    quarter = (now.month - 1) // 3 + 1
    return f"{now.year}-Q{quarter}"


def parse_period(period: str) -> tuple[int, int]:
    try:
        year_str, quarter_str = period.split("-Q")
        year, quarter = int(year_str), int(quarter_str)
    except ValueError:
        raise ValueError(f"Invalid period label: {period!r}") from None
    if not 1 <= quarter <= 4:
        raise ValueError(f"Invalid quarter in {period!r}")
    return year, quarter


def next_period(period: str) -> str:
    """Following quarter: 2025-Q4 -> 2026-Q1."""
    year, quarter = parse_period(period)
    if quarter == 4:
        return f"{year + 1}-Q1"
    return f"{year}-Q{quarter + 1}"


def period_start(period: str) -> date:
    """First day of the quarter."""
    year, quarter = parse_period(period)
    return date(year, (quarter - 1) * 3 + 1, 1)


# =============================================================================
# RESULTS
# =============================================================================


@dataclass
class SelectionCheck:
    needed: bool
    current_period: str
    reason: str | None = None
    active_period: str | None = None


@dataclass
class SelectionResult:
    """Outcome of one selection run."""

    success: bool
    period: str
    selected: int = 0
    inserted: int = 0
    updated: int = 0
    min_market_cap: float | None = None
    max_market_cap: float | None = None
    avg_market_cap: float | None = None
    warnings: list[str] = field(default_factory=list)
    top: list[str] = field(default_factory=list)
    snapshot_size: int = 0
    duration_seconds: float = 0.0
    log_id: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "period": self.period,
            "selected": self.selected,
            "inserted": self.inserted,
            "updated": self.updated,
            "min_market_cap": self.min_market_cap,
            "max_market_cap": self.max_market_cap,
            "avg_market_cap": self.avg_market_cap,
            "warnings": list(self.warnings),
            "top": list(self.top),
            "snapshot_size": self.snapshot_size,
            "duration_seconds": round(self.duration_seconds, 2),
            "log_id": self.log_id,
            "error": self.error,
        }


# =============================================================================
# ENGINE
# =============================================================================


class SelectionEngine:
    """Quarterly top-N selection by market cap."""

    def __init__(
        self,
        store: Store,
        provider: MarketCapProvider,
        queue: RequestQueue,
        count: int = 250,
        criteria: str = "market_cap_usd",
        fetch_timeout: float | None = 30.0,
        now: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.provider = provider
        self.queue = queue
        self.count = count
        self.criteria = criteria
        self.fetch_timeout = fetch_timeout
        self.now = now

    async def needs_new_selection(self) -> SelectionCheck:
        """A new selection is needed when no period is active or it is stale."""
        period = current_period(self.now())
        active = await self.store.periods.get_active()

        if active is None:
            return SelectionCheck(
                needed=True,
                current_period=period,
                reason="No active selection period found",
            )

        if active.period != period:
            return SelectionCheck(
                needed=True,
                current_period=period,
                active_period=active.period,
                reason=f"Current period {period} differs from active period {active.period}",
            )

        return SelectionCheck(needed=False, current_period=period, active_period=active.period)

    async def perform_selection(
        self,
        snapshot: Sequence[EntitySnapshot],
        n: int | None = None,
    ) -> SelectionResult:
        """
        Rank a snapshot by market cap and commit the top ``n``.

        Entities without a positive market cap are ignored. Equal market
        caps keep their snapshot order. Fewer than ``n`` valid entities is
        a warning, not an error.

        Raises:
            ValueError: If n is less than 1
            SelectionDataError: If no entity has a usable market cap
            StoreError: If the commit fails (prior selection left intact)
        """
        if n is None:
            n = self.count
        if n < 1:
            raise ValueError(f"Selection size must be at least 1, got {n}")
        now = self.now()
        period = current_period(now)

        seen: set[str] = set()
        valid: list[tuple[EntitySnapshot, float]] = []
        for entity in snapshot:
            cap = safe_float(entity.market_cap)
            if cap is None or cap <= 0 or entity.slug in seen:
                continue
            seen.add(entity.slug)
            valid.append((entity, cap))

        if not valid:
            raise SelectionDataError(
                details={"period": period, "snapshot_size": len(snapshot)}
            )

        # sorted() is stable with reverse=True, so ties keep input order
        ranked = sorted(valid, key=lambda pair: pair[1], reverse=True)[:n]

        warnings: list[str] = []
        if len(ranked) < n:
            message = f"Only {len(ranked)} collections with valid market cap data (wanted {n})"
            warnings.append(message)
            logger.warning(message)

        rows = [{**entity.to_row(), "market_cap": cap} for entity, cap in ranked]
        counts = await self.store.periods.commit_selection(
            period=period,
            selection_date=now.date(),
            criteria=self.criteria,
            selected=rows,
            now=now,
        )

        caps = [cap for _, cap in ranked]
        result = SelectionResult(
            success=True,
            period=period,
            selected=len(ranked),
            inserted=counts["inserted"],
            updated=counts["updated"],
            min_market_cap=min(caps),
            max_market_cap=max(caps),
            avg_market_cap=sum(caps) / len(caps),
            warnings=warnings,
            top=[entity.slug for entity, _ in ranked[:5]],
            snapshot_size=len(snapshot),
        )
        logger.info(
            f"Selected {result.selected} collections for {period} "
            f"(market cap ${result.min_market_cap:,.0f} - ${result.max_market_cap:,.0f})"
        )
        return result

    async def fetch_snapshot(self) -> list[EntitySnapshot]:
        """Full market-cap listing through the request queue at high priority."""
        return await self.queue.enqueue(
            lambda: call_with_timeout(self.provider.fetch_all_entities, self.fetch_timeout),
            priority=Priority.HIGH,
        )

    async def run_quarterly_selection(self) -> SelectionResult:
        """Fetch a snapshot, perform the selection and record a SyncLog row.

        Failures are logged and reported in the result, never raised.
        """
        period = current_period(self.now())
        started = time.monotonic()
        log_id = await self.store.sync_logs.start("quarterly_selection", now=self.now())
        token = run_id_var.set(log_id)
        snapshot_size = 0
        logger.info(f"Starting quarterly selection for {period}")

        try:
            snapshot = await self.fetch_snapshot()
            snapshot_size = len(snapshot)
            result = await self.perform_selection(snapshot)
        except AppException as e:
            duration = time.monotonic() - started
            logger.error(f"Quarterly selection failed: {e.message}")
            await self.store.sync_logs.complete(
                log_id, "failed", processed=snapshot_size, error=e.message, now=self.now()
            )
            return SelectionResult(
                success=False,
                period=period,
                snapshot_size=snapshot_size,
                duration_seconds=duration,
                log_id=log_id,
                error=e.message,
            )
        except Exception as e:
            duration = time.monotonic() - started
            logger.exception("Quarterly selection failed")
            await self.store.sync_logs.complete(
                log_id, "failed", processed=snapshot_size, error=str(e), now=self.now()
            )
            return SelectionResult(
                success=False,
                period=period,
                snapshot_size=snapshot_size,
                duration_seconds=duration,
                log_id=log_id,
                error=str(e),
            )
        finally:
            run_id_var.reset(token)

        result.duration_seconds = time.monotonic() - started
        result.log_id = log_id
        await self.store.sync_logs.complete(
            log_id,
            "completed",
            processed=snapshot_size,
            inserted=result.inserted,
            updated=result.updated,
            error="; ".join(result.warnings) or None,
            now=self.now(),
        )
        return result

    async def force_selection_update(self) -> SelectionResult:
        """Re-run the selection now, even if the active period is current."""
        logger.info("Forcing selection update")
        return await self.run_quarterly_selection()

    async def get_active_selection_info(self) -> dict[str, Any]:
        now = self.now()
        period = current_period(now)
        upcoming = next_period(period)
        next_date = period_start(upcoming)
        active = await self.store.periods.get_active()

        return {
            "active_period": active.period if active else None,
            "selection_date": active.selection_date.isoformat() if active else None,
            "total_selected": active.total_selected if active else 0,
            "criteria": active.criteria if active else None,
            "min_market_cap": active.min_market_cap if active else None,
            "max_market_cap": active.max_market_cap if active else None,
            "avg_market_cap": active.avg_market_cap if active else None,
            "active_count": await self.store.collections.count(selected_only=True),
            "current_period": period,
            "is_current_period": bool(active and active.period == period),
            "next_period": upcoming,
            "next_selection_date": next_date.isoformat(),
            "days_until_next": max(0, (next_date - now.date()).days),
        }

    async def get_selection_history(self, limit: int = 10) -> list[dict[str, Any]]:
        periods = await self.store.periods.history(limit)
        return [
            {
                "period": p.period,
                "selection_date": p.selection_date.isoformat(),
                "total_selected": p.total_selected,
                "criteria": p.criteria,
                "min_market_cap": p.min_market_cap,
                "max_market_cap": p.max_market_cap,
                "avg_market_cap": p.avg_market_cap,
                "status": p.status,
            }
            for p in periods
        ]

    async def get_current_selection(self) -> Sequence[Collection]:
        return await self.store.collections.list_selected()
