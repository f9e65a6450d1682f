"""Tests for the daily price-history sync."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from floorsync.core.exceptions import FatalFetchError, TransientFetchError
from floorsync.core.rate_limiter import Priority
from floorsync.services.data_providers.resilience import RetryExhaustedError, RetryStats, retry_async
from floorsync.services.prices import validate_points
from floorsync.services.sync import SECONDS_PER_DAY, SyncEngine, SyncOptions


async def _select(store, clock, slugs):
    await store.periods.commit_selection(
        "2025-Q1",
        clock().date(),
        "market_cap_usd",
        [{"slug": slug, "market_cap": 1000.0 - i} for i, slug in enumerate(slugs)],
        now=clock(),
    )


# =============================================================================
# VALIDATION & RETRY
# =============================================================================


class TestValidatePoints:
    def test_drops_non_positive_floors(self, clock, point_factory):
        today = clock().date()
        floors = [1.0, 0.0, 2.0, -1.0, 3.0, 0.0, 4.0, 5.0, 6.0, 7.0]
        points = [point_factory(today - timedelta(days=i), f) for i, f in enumerate(floors)]

        result = validate_points("a", points)

        assert len(result.rows) == 7
        assert result.rejected == 3
        assert result.reasons["non_positive_floor"] == 3
        assert [r["date"] for r in result.rows] == sorted(r["date"] for r in result.rows)

    def test_same_day_keeps_last_point(self, clock, point_factory):
        today = clock().date()
        result = validate_points("a", [point_factory(today, 1.0), point_factory(today, 1.5)])

        assert len(result.rows) == 1
        assert result.rows[0]["floor_eth"] == 1.5

    def test_error_when_nothing_valid(self, clock, point_factory):
        result = validate_points("a", [point_factory(clock().date(), None)])
        assert not result.valid
        assert "missing_floor=1" in result.error
        assert validate_points("a", []).error == "No data received"


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_fail_fail_succeed(self, sleep):
        outcomes = [TransientFetchError("1"), TransientFetchError("2"), "ok"]

        async def flaky():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        stats = RetryStats()
        result = await retry_async(flaky, max_attempts=3, base_delay=2.0, sleep=sleep, stats=stats)

        assert result == "ok"
        assert stats.attempts == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_exhausted(self, sleep):
        async def always_fails():
            raise TransientFetchError("down")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_async(always_fails, max_attempts=2, base_delay=1.0, sleep=sleep)

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, TransientFetchError)

    @pytest.mark.asyncio
    async def test_waits_for_retry_after_when_longer(self, sleep):
        outcomes = [
            TransientFetchError("429", status_code=429, retry_after=10.0),
            TransientFetchError("429", status_code=429, retry_after=1.0),
            TransientFetchError("429", status_code=429, retry_after=3600.0),
            "ok",
        ]

        async def throttled():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result = await retry_async(
            throttled, max_attempts=4, base_delay=2.0, sleep=sleep, max_retry_after=300.0
        )

        assert result == "ok"
        assert sleep.delays == [10.0, 4.0, 300.0]

    @pytest.mark.asyncio
    async def test_fatal_not_retried(self, sleep):
        calls = 0

        async def not_found():
            nonlocal calls
            calls += 1
            raise FatalFetchError("not found", status_code=404)

        with pytest.raises(FatalFetchError):
            await retry_async(not_found, max_attempts=5, sleep=sleep)

        assert calls == 1
        assert sleep.delays == []


# =============================================================================
# SINGLE COLLECTION
# =============================================================================


class TestSyncOne:
    @pytest.mark.asyncio
    async def test_writes_valid_points_only(self, sync_engine, price_provider, store, clock, point_factory):
        today = clock().date()
        floors = [1.0, 0.0, 2.0, -1.0, 3.0, 0.0, 4.0, 5.0, 6.0, 7.0]
        price_provider.scripts["a"] = [
            [point_factory(today - timedelta(days=i), f) for i, f in enumerate(floors)]
        ]

        result = await sync_engine.sync_one("a", days=10)

        assert result.success
        assert result.inserted == 7
        assert await store.prices.count("a") == 7

    @pytest.mark.asyncio
    async def test_requests_window_ending_now(self, sync_engine, price_provider, clock):
        await sync_engine.sync_one("a", days=3)

        slug, granularity, start_ts, end_ts = price_provider.calls[0]
        assert (slug, granularity) == ("a", "1d")
        assert end_ts == int(clock().timestamp())
        assert end_ts - start_ts == 3 * SECONDS_PER_DAY

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, sync_engine, price_provider, sleep, clock, point_factory):
        price_provider.scripts["a"] = [
            TransientFetchError("timeout"),
            TransientFetchError("429"),
            [point_factory(clock().date(), 2.0)],
        ]

        result = await sync_engine.sync_one("a")

        assert result.success
        assert result.attempts == 3
        assert price_provider.calls_for("a") == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_fatal_error_stops_immediately(self, sync_engine, price_provider):
        price_provider.scripts["gone"] = [FatalFetchError("HTTP 404", status_code=404)]

        result = await sync_engine.sync_one("gone")

        assert not result.success
        assert result.fatal
        assert result.attempts == 1
        assert price_provider.calls_for("gone") == 1

    @pytest.mark.asyncio
    async def test_zero_valid_points_retried_then_reported(self, sync_engine, price_provider, clock, point_factory):
        price_provider.scripts["a"] = [[point_factory(clock().date(), 0.0)]]

        result = await sync_engine.sync_one("a")

        assert not result.success
        assert result.attempts == 3
        assert "non_positive_floor" in result.error

    @pytest.mark.asyncio
    async def test_skips_when_today_present(self, sync_engine, price_provider, store, clock, point_factory):
        await sync_engine.sync_one("a")
        price_provider.calls.clear()

        result = await sync_engine.sync_one("a")

        assert result.skipped
        assert price_provider.calls == []

    @pytest.mark.asyncio
    async def test_timeout_is_retried_then_reported(
        self, store, selection_engine, queue, clock, sleep
    ):
        calls = 0

        class SlowProvider:
            async def fetch_price_history(self, slug, granularity, start_ts, end_ts):
                nonlocal calls
                calls += 1
                await asyncio.sleep(1)
                return []

        engine = SyncEngine(
            store,
            selection_engine,
            SlowProvider(),
            queue,
            options=SyncOptions(max_retries=3, retry_base_delay=2.0, fetch_timeout=0.01),
            now=clock,
            sleep=sleep,
        )

        result = await engine.sync_one("a")

        assert not result.success
        assert not result.fatal
        assert result.attempts == 3
        assert calls == 3
        assert "timed out" in result.error
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_store_failure_reported_not_raised(self, sync_engine, store):
        store.prices.bulk_upsert = AsyncMock(side_effect=RuntimeError("disk full"))

        result = await sync_engine.sync_one("a")

        assert not result.success
        assert result.error == "disk full"


# =============================================================================
# RUNS
# =============================================================================


class TestDailySync:
    @pytest.mark.asyncio
    async def test_first_run_selects_and_syncs(self, sync_engine, store, sleep, market_provider):
        summary = await sync_engine.daily_sync()

        assert summary.success
        assert summary.processed == 3
        assert summary.inserted == 3
        assert summary.errors == 0
        # selection fetch plus metadata refresh
        assert market_provider.calls == 2
        # 3 collections in batches of 2: one pause between batches
        assert sleep.delays.count(2.0) == 1
        log = await store.sync_logs.get(summary.log_id)
        assert log.sync_type == "daily"
        assert log.status == "completed"
        assert log.inserted == 3

    @pytest.mark.asyncio
    async def test_second_run_same_day_inserts_nothing(self, sync_engine, price_provider):
        await sync_engine.daily_sync()
        calls_after_first = len(price_provider.calls)

        summary = await sync_engine.daily_sync()

        assert summary.success
        assert summary.inserted == 0
        assert summary.skipped == 3
        assert len(price_provider.calls) == calls_after_first

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(
        self, store, selection_engine, price_provider, queue, clock, sleep
    ):
        slugs = ["a", "b", "bad", "c", "d"]
        await _select(store, clock, slugs)
        price_provider.scripts["bad"] = [TransientFetchError("HTTP 503", status_code=503)]
        engine = SyncEngine(
            store,
            selection_engine,
            price_provider,
            queue,
            options=SyncOptions(batch_size=5, max_retries=3),
            now=clock,
            sleep=sleep,
        )

        summary = await engine.daily_sync()

        assert summary.success
        assert summary.processed == 5
        assert summary.errors == 1
        assert [f.slug for f in summary.failures] == ["bad"]
        assert await store.prices.count() == 4
        log = await store.sync_logs.get(summary.log_id)
        assert log.status == "completed"
        assert log.errors == 1
        assert log.error_message == "1 collections failed"

    @pytest.mark.asyncio
    async def test_selection_failure_falls_back_to_existing_set(
        self, sync_engine, store, market_provider, clock
    ):
        await store.periods.commit_selection(
            "2024-Q4", clock().date(), "market_cap_usd", [{"slug": "old", "market_cap": 1.0}],
            now=clock(),
        )
        market_provider.error = TransientFetchError("listing down")

        summary = await sync_engine.daily_sync()

        assert summary.success
        assert summary.processed == 1
        assert await store.prices.count("old") == 1

    @pytest.mark.asyncio
    async def test_run_level_failure_marks_log_failed(self, sync_engine, store):
        store.collections.list_selected = AsyncMock(side_effect=RuntimeError("db gone"))

        summary = await sync_engine.daily_sync()

        assert not summary.success
        assert summary.error == "db gone"
        log = await store.sync_logs.get(summary.log_id)
        assert log.status == "failed"
        assert log.error_message == "db gone"


class TestOtherRuns:
    @pytest.mark.asyncio
    async def test_historical_sync_logged_per_collection(self, sync_engine, store, price_provider, clock):
        summary = await sync_engine.historical_sync("azuki", days=30)

        assert summary.success
        assert summary.inserted == 1
        _, _, start_ts, end_ts = price_provider.calls[0]
        assert end_ts - start_ts == 30 * SECONDS_PER_DAY
        log = await store.sync_logs.get(summary.log_id)
        assert log.sync_type == "collection"
        assert log.target_slug == "azuki"

    @pytest.mark.asyncio
    async def test_force_sync_overwrites_today(self, sync_engine, store, price_provider, clock, point_factory):
        today = clock().date()
        price_provider.scripts["a"] = [[point_factory(today, 1.0)], [point_factory(today, 1.2)]]
        await sync_engine.sync_one("a")

        results = await sync_engine.force_sync(["a"], days_back=2)

        assert [r.success for r in results] == [True]
        assert price_provider.calls_for("a") == 2
        latest = await store.prices.get_latest("a")
        assert latest.floor_eth == pytest.approx(1.2)
        assert await store.prices.count("a") == 1

    @pytest.mark.asyncio
    async def test_force_sync_uses_high_priority(self, sync_engine):
        sync_engine.sync_one = AsyncMock(return_value=None)

        await sync_engine.force_sync(["a", "b"], days_back=3)

        for call in sync_engine.sync_one.await_args_list:
            assert call.kwargs["priority"] is Priority.HIGH
            assert call.kwargs["skip_if_current"] is False

    @pytest.mark.asyncio
    async def test_full_history_sync(self, sync_engine, store, price_provider):
        summary = await sync_engine.full_history_sync(days=90)

        assert summary.success
        assert summary.processed == 3
        assert all(end - start == 90 * SECONDS_PER_DAY for _, _, start, end in price_provider.calls)
        log = await store.sync_logs.get(summary.log_id)
        assert log.sync_type == "backfill"
        assert log.status == "completed"

    @pytest.mark.asyncio
    async def test_full_history_sync_rerun_skips_synced(self, sync_engine, store, price_provider):
        first = await sync_engine.full_history_sync(days=30)
        calls_after_first = len(price_provider.calls)

        second = await sync_engine.full_history_sync(days=30)

        assert first.processed == 3
        assert calls_after_first == 3
        assert len(price_provider.calls) == calls_after_first
        assert second.success
        assert second.skipped == second.processed == 3
        assert second.inserted == 0

    @pytest.mark.asyncio
    async def test_full_history_sync_fails_without_selection(self, sync_engine, store, market_provider):
        market_provider.error = TransientFetchError("listing down")

        summary = await sync_engine.full_history_sync(days=30)

        assert not summary.success
        assert "listing down" in summary.error
        log = await store.sync_logs.get(summary.log_id)
        assert log.status == "failed"

    @pytest.mark.asyncio
    async def test_sync_status(self, sync_engine):
        await sync_engine.daily_sync()

        status = await sync_engine.get_sync_status()

        assert status["database"]["total_price_records"] == 3
        assert {log["type"] for log in status["recent_logs"]} == {"daily", "quarterly_selection"}
        assert status["last_sync"]["status"] == "completed"
        assert status["last_successful_sync"]["status"] == "completed"
        assert status["queue"]["name"] == "test"
