"""
Daily price-history synchronization.

For every selected collection, fetch the missing daily points through the
request queue, validate them and upsert them into the Store. Collections
run in bounded batches (settle-all) with a fixed delay between batches;
one collection exhausting its retries never stops its siblings.

Usage:
    engine = SyncEngine(store, selection, provider, queue, SyncOptions.from_settings(settings))

    summary = await engine.daily_sync()
    results = await engine.force_sync(["azuki"], days_back=3)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from floorsync.core.config import Settings
from floorsync.core.data_helpers import utc_now
from floorsync.core.exceptions import (
    AppException,
    FatalFetchError,
    JobError,
    NoValidDataError,
)
from floorsync.core.logging import get_logger, run_id_var
from floorsync.core.rate_limiter import Priority, RequestQueue
from floorsync.repositories.store import Store
from floorsync.services.data_providers.base import PriceHistoryProvider
from floorsync.services.data_providers.resilience import (
    RetryExhaustedError,
    RetryStats,
    call_with_timeout,
    retry_async,
)
from floorsync.services.prices import ValidationResult, validate_points
from floorsync.services.selection import SelectionEngine


logger = get_logger("services.sync")

SECONDS_PER_DAY = 86_400
GRANULARITY = "1d"


@dataclass(frozen=True)
class SyncOptions:
    """Batching and retry knobs for daily and backfill runs."""

    batch_size: int = 10
    batch_delay: float = 2.0
    max_retries: int = 3
    retry_base_delay: float = 2.0
    days_to_fetch: int = 1
    fetch_timeout: float | None = 30.0
    backfill_days: int = 365
    backfill_batch_size: int = 5
    backfill_batch_delay: float = 5.0
    backfill_max_retries: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "SyncOptions":
        return cls(
            batch_size=settings.sync_batch_size,
            batch_delay=settings.sync_batch_delay_seconds,
            max_retries=settings.sync_max_retries,
            retry_base_delay=settings.sync_retry_base_delay_seconds,
            days_to_fetch=settings.sync_days_to_fetch,
            fetch_timeout=settings.external_api_timeout,
            backfill_days=settings.backfill_days,
            backfill_batch_size=settings.backfill_batch_size,
            backfill_batch_delay=settings.backfill_batch_delay_seconds,
            backfill_max_retries=settings.backfill_max_retries,
        )


@dataclass
class EntitySyncResult:
    """Outcome of syncing one collection."""

    slug: str
    success: bool
    inserted: int = 0
    skipped: bool = False
    attempts: int = 0
    error: str | None = None
    fatal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug,
            "success": self.success,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "attempts": self.attempts,
            "error": self.error,
            "fatal": self.fatal,
        }


@dataclass
class SyncSummary:
    """Aggregate outcome of a run."""

    success: bool
    processed: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    log_id: int | None = None
    failures: list[EntitySyncResult] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_results(cls, results: Sequence[EntitySyncResult]) -> "SyncSummary":
        failures = [r for r in results if not r.success]
        return cls(
            success=True,
            processed=len(results),
            inserted=sum(r.inserted for r in results),
            skipped=sum(1 for r in results if r.skipped),
            errors=len(failures),
            failures=failures,
        )

    @property
    def counts(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "errors": self.errors,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            **self.counts,
            "duration_seconds": round(self.duration_seconds, 2),
            "log_id": self.log_id,
            "failures": [f.to_dict() for f in self.failures],
            "error": self.error,
        }


class SyncEngine:
    """Incremental price-history sync for the selected collections."""

    def __init__(
        self,
        store: Store,
        selection: SelectionEngine,
        provider: PriceHistoryProvider,
        queue: RequestQueue,
        options: SyncOptions | None = None,
        now: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.selection = selection
        self.provider = provider
        self.queue = queue
        self.options = options or SyncOptions()
        self.now = now
        self.sleep = sleep

    # =========================================================================
    # SINGLE COLLECTION
    # =========================================================================

    async def _fetch_validated(
        self,
        slug: str,
        start_ts: int,
        end_ts: int,
        priority: Priority,
    ) -> ValidationResult:
        points = await self.queue.enqueue(
            lambda: call_with_timeout(
                lambda: self.provider.fetch_price_history(slug, GRANULARITY, start_ts, end_ts),
                self.options.fetch_timeout,
            ),
            priority=priority,
        )
        validation = validate_points(slug, points)
        if not validation.valid:
            raise NoValidDataError(
                validation.error,
                details={"slug": slug, "received": len(points), "rejected": validation.rejected},
            )
        return validation

    async def sync_one(
        self,
        slug: str,
        days: int | None = None,
        *,
        max_retries: int | None = None,
        skip_if_current: bool = True,
        priority: Priority = Priority.NORMAL,
    ) -> EntitySyncResult:
        """
        Sync the last ``days`` of history for one collection.

        With ``skip_if_current`` a collection that already has a valid
        record for today is skipped without calling upstream. Otherwise
        the fetch is retried with linear backoff; a fatal upstream error
        stops immediately. Never raises.
        """
        if days is None:
            days = self.options.days_to_fetch
        if max_retries is None:
            max_retries = self.options.max_retries
        now = self.now()

        try:
            if skip_if_current and await self.store.prices.has_valid_record(slug, now.date()):
                logger.debug(f"{slug}: already have today's data")
                return EntitySyncResult(slug=slug, success=True, skipped=True)

            end_ts = int(now.timestamp())
            start_ts = end_ts - days * SECONDS_PER_DAY
            stats = RetryStats()

            try:
                validation = await retry_async(
                    lambda: self._fetch_validated(slug, start_ts, end_ts, priority),
                    max_attempts=max_retries,
                    base_delay=self.options.retry_base_delay,
                    sleep=self.sleep,
                    stats=stats,
                )
            except RetryExhaustedError as e:
                error = e.last_error.message if isinstance(e.last_error, AppException) else str(e)
                logger.warning(f"{slug}: giving up after {stats.attempts} attempts: {error}")
                return EntitySyncResult(
                    slug=slug, success=False, attempts=stats.attempts, error=error
                )
            except FatalFetchError as e:
                logger.warning(f"{slug}: fatal upstream error: {e.message}")
                return EntitySyncResult(
                    slug=slug, success=False, attempts=stats.attempts, error=e.message, fatal=True
                )

            written = await self.store.prices.bulk_upsert(validation.rows)
            logger.debug(f"{slug}: {written} records written")
            return EntitySyncResult(
                slug=slug, success=True, inserted=written, attempts=stats.attempts
            )
        except AppException as e:
            logger.error(f"{slug}: sync failed: {e.message}")
            return EntitySyncResult(slug=slug, success=False, error=e.message)
        except Exception as e:
            logger.exception(f"{slug}: sync failed")
            return EntitySyncResult(slug=slug, success=False, error=str(e))

    # =========================================================================
    # BATCHES
    # =========================================================================

    async def _run_batches(
        self,
        slugs: Sequence[str],
        *,
        batch_size: int,
        batch_delay: float,
        days: int,
        max_retries: int,
        skip_if_current: bool,
    ) -> list[EntitySyncResult]:
        results: list[EntitySyncResult] = []
        total_batches = (len(slugs) + batch_size - 1) // batch_size

        for start in range(0, len(slugs), batch_size):
            batch = list(slugs[start:start + batch_size])
            logger.info(
                f"Processing batch {start // batch_size + 1}/{total_batches} "
                f"({len(batch)} collections)"
            )
            outcomes = await asyncio.gather(
                *(
                    self.sync_one(
                        slug,
                        days,
                        max_retries=max_retries,
                        skip_if_current=skip_if_current,
                    )
                    for slug in batch
                ),
                return_exceptions=True,
            )
            for slug, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    outcome = EntitySyncResult(slug=slug, success=False, error=str(outcome))
                if not outcome.success:
                    logger.warning(f"{slug}: {outcome.error}")
                results.append(outcome)

            if start + batch_size < len(slugs) and batch_delay > 0:
                await self.sleep(batch_delay)

        return results

    # =========================================================================
    # RUNS
    # =========================================================================

    async def refresh_metadata(self) -> int:
        """Upsert metadata for every collection in the upstream listing.

        Returns:
            Number of collections written, 0 on failure
        """
        try:
            snapshot = await self.selection.fetch_snapshot()
            count = await self.store.collections.upsert_many(e.to_row() for e in snapshot)
        except Exception as e:
            logger.warning(f"Collection metadata refresh failed: {e}")
            return 0
        logger.info(f"Refreshed metadata for {count} collections")
        return count

    async def _finish(
        self,
        log_id: int,
        summary: SyncSummary,
        started: float,
    ) -> SyncSummary:
        summary.duration_seconds = time.monotonic() - started
        summary.log_id = log_id
        if summary.success:
            await self.store.sync_logs.complete(
                log_id,
                "completed",
                **summary.counts,
                error=f"{summary.errors} collections failed" if summary.errors else None,
                now=self.now(),
            )
        else:
            await self.store.sync_logs.complete(
                log_id, "failed", **summary.counts, error=summary.error, now=self.now()
            )
        return summary

    async def daily_sync(self) -> SyncSummary:
        """
        Run the daily sync.

        Order: quarterly selection (when due), metadata refresh, then the
        selected collections in rank order. The SyncLog row is marked
        failed only when the run itself throws.
        """
        started = time.monotonic()
        log_id = await self.store.sync_logs.start("daily", now=self.now())
        token = run_id_var.set(log_id)
        logger.info("Starting daily sync")

        try:
            check = await self.selection.needs_new_selection()
            if check.needed:
                logger.info(f"Quarterly selection needed: {check.reason}")
                selection = await self.selection.run_quarterly_selection()
                if not selection.success:
                    logger.warning(
                        f"Quarterly selection failed, syncing existing set: {selection.error}"
                    )

            await self.refresh_metadata()

            selected = await self.store.collections.list_selected()
            logger.info(f"Found {len(selected)} collections to sync")

            results = await self._run_batches(
                [c.slug for c in selected],
                batch_size=self.options.batch_size,
                batch_delay=self.options.batch_delay,
                days=self.options.days_to_fetch,
                max_retries=self.options.max_retries,
                skip_if_current=True,
            )
            summary = SyncSummary.from_results(results)
        except Exception as e:
            logger.exception("Daily sync failed")
            summary = SyncSummary(success=False, error=str(e))
        finally:
            run_id_var.reset(token)

        summary = await self._finish(log_id, summary, started)
        logger.info(
            f"Daily sync {'completed' if summary.success else 'failed'}: "
            f"processed={summary.processed} inserted={summary.inserted} "
            f"skipped={summary.skipped} errors={summary.errors} "
            f"({summary.duration_seconds:.1f}s)"
        )
        return summary

    async def historical_sync(self, slug: str, days: int = 30) -> SyncSummary:
        """Sync ``days`` of history for one collection, logged as a collection run."""
        started = time.monotonic()
        log_id = await self.store.sync_logs.start("collection", target_slug=slug, now=self.now())
        token = run_id_var.set(log_id)
        logger.info(f"Syncing {days} days of history for {slug}")

        try:
            result = await self.sync_one(slug, days, skip_if_current=True)
        finally:
            run_id_var.reset(token)

        summary = SyncSummary.from_results([result])
        if not result.success:
            summary.success = False
            summary.error = result.error
        return await self._finish(log_id, summary, started)

    async def force_sync(
        self,
        slugs: Sequence[str],
        days_back: int = 1,
    ) -> list[EntitySyncResult]:
        """Re-fetch and overwrite the given collections, ignoring today's data."""
        logger.info(f"Force syncing {len(slugs)} collections ({days_back} days)")
        results = []
        for slug in slugs:
            results.append(
                await self.sync_one(
                    slug,
                    days_back,
                    skip_if_current=False,
                    priority=Priority.HIGH,
                )
            )
        return results

    async def full_history_sync(self, days: int | None = None) -> SyncSummary:
        """
        Bootstrap: select (when due) and backfill every selected collection.

        Uses the smaller backfill batches with more retries. Collections
        that already have today's record are skipped, so an interrupted
        run can simply be started again.
        """
        if days is None:
            days = self.options.backfill_days
        started = time.monotonic()
        log_id = await self.store.sync_logs.start("backfill", now=self.now())
        token = run_id_var.set(log_id)
        logger.info(f"Starting {days}-day history backfill")

        try:
            check = await self.selection.needs_new_selection()
            if check.needed:
                selection = await self.selection.run_quarterly_selection()
                if not selection.success:
                    raise JobError(f"Market cap selection failed: {selection.error}")

            selected = await self.store.collections.list_selected()
            results = await self._run_batches(
                [c.slug for c in selected],
                batch_size=self.options.backfill_batch_size,
                batch_delay=self.options.backfill_batch_delay,
                days=days,
                max_retries=self.options.backfill_max_retries,
                skip_if_current=True,
            )
            summary = SyncSummary.from_results(results)
        except AppException as e:
            logger.error(f"Backfill failed: {e.message}")
            summary = SyncSummary(success=False, error=e.message)
        except Exception as e:
            logger.exception("Backfill failed")
            summary = SyncSummary(success=False, error=str(e))
        finally:
            run_id_var.reset(token)

        return await self._finish(log_id, summary, started)

    async def get_sync_status(self) -> dict[str, Any]:
        """Store stats, last run, last successful run and recent logs."""
        recent = await self.store.sync_logs.recent(5)
        last_success = await self.store.sync_logs.last_with_status("completed")
        return {
            "database": await self.store.get_stats(),
            "last_sync": sync_log_to_dict(recent[0]) if recent else None,
            "last_successful_sync": sync_log_to_dict(last_success) if last_success else None,
            "recent_logs": [sync_log_to_dict(log) for log in recent],
            "queue": self.queue.status(),
        }


def sync_log_to_dict(log) -> dict[str, Any]:
    return {
        "id": log.id,
        "type": log.sync_type,
        "target_slug": log.target_slug,
        "status": log.status,
        "processed": log.processed,
        "inserted": log.inserted,
        "updated": log.updated,
        "skipped": log.skipped,
        "errors": log.errors,
        "error": log.error_message,
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
        "duration_seconds": log.duration_seconds,
    }
