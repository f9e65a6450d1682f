"""Tests for quarterly market-cap selection."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from floorsync.core.exceptions import SelectionDataError, TransientFetchError
from floorsync.services.data_providers.base import EntitySnapshot
from floorsync.services.selection import (
    SelectionEngine,
    current_period,
    next_period,
    parse_period,
    period_start,
)


def _entity(slug: str, cap) -> EntitySnapshot:
    return EntitySnapshot(slug=slug, name=slug.upper(), market_cap=cap)


class TestPeriods:
    @pytest.mark.parametrize(
        "month,expected",
        [(1, "2025-Q1"), (3, "2025-Q1"), (4, "2025-Q2"), (9, "2025-Q3"), (12, "2025-Q4")],
    )
    def test_current_period(self, month, expected):
        assert current_period(datetime(2025, month, 10, tzinfo=timezone.utc)) == expected

    def test_next_period_rolls_year(self):
        assert next_period("2025-Q4") == "2026-Q1"
        assert next_period("2025-Q2") == "2025-Q3"

    def test_period_start(self):
        assert period_start("2025-Q3") == date(2025, 7, 1)

    @pytest.mark.parametrize("label", ["2025Q1", "2025-Q5", "abc", "2025-Q0"])
    def test_invalid_period(self, label):
        with pytest.raises(ValueError):
            parse_period(label)


class TestPerformSelection:
    @pytest.mark.asyncio
    async def test_picks_top_n_by_market_cap(self, selection_engine, store):
        snapshot = [_entity("a", 100), _entity("b", 50), _entity("c", 0)]

        result = await selection_engine.perform_selection(snapshot, n=2)

        assert result.success
        assert result.top == ["a", "b"]
        assert result.min_market_cap == 50
        assert result.max_market_cap == 100
        assert result.avg_market_cap == 75
        assert [c.slug for c in await store.collections.list_selected()] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_selects_exactly_n_with_one_active_period(
        self, store, market_provider, queue, clock, entity_factory
    ):
        engine = SelectionEngine(store, market_provider, queue, count=250, now=clock)

        result = await engine.perform_selection(entity_factory(300))

        assert result.selected == 250
        assert result.warnings == []
        assert await store.collections.count(selected_only=True) == 250
        periods = await store.periods.history()
        assert [p.status for p in periods] == ["active"]
        selected = await store.collections.list_selected()
        assert [c.market_cap_rank for c in selected] == list(range(1, 251))

    @pytest.mark.asyncio
    async def test_ties_keep_input_order(self, selection_engine, store):
        snapshot = [_entity("x", 10), _entity("first", 5), _entity("second", 5), _entity("third", 5)]

        result = await selection_engine.perform_selection(snapshot, n=3)

        assert result.top == ["x", "first", "second"]
        assert not await store.collections.is_selected("third")

    @pytest.mark.asyncio
    async def test_invalid_and_duplicate_entries_skipped(self, selection_engine):
        snapshot = [
            _entity("a", "not a number"),
            _entity("b", None),
            _entity("c", -5),
            _entity("d", "42.5"),
            _entity("d", 1000),
            _entity("e", float("nan")),
        ]

        result = await selection_engine.perform_selection(snapshot, n=3)

        assert result.top == ["d"]
        assert result.max_market_cap == 42.5
        assert result.warnings

    @pytest.mark.asyncio
    async def test_fewer_than_n_warns(self, selection_engine):
        result = await selection_engine.perform_selection([_entity("a", 1), _entity("b", 2)], n=5)

        assert result.success
        assert result.selected == 2
        assert "Only 2" in result.warnings[0]

    @pytest.mark.asyncio
    async def test_no_valid_entities_keeps_prior_selection(self, selection_engine, store):
        await selection_engine.perform_selection([_entity("a", 100)], n=1)

        with pytest.raises(SelectionDataError):
            await selection_engine.perform_selection([_entity("b", 0), _entity("c", None)], n=1)

        assert [c.slug for c in await store.collections.list_selected()] == ["a"]
        assert (await store.periods.get_active()).period == "2025-Q1"

    @pytest.mark.asyncio
    async def test_zero_size_is_rejected_not_defaulted(self, selection_engine, store):
        await selection_engine.perform_selection([_entity("a", 100)], n=1)

        with pytest.raises(ValueError):
            await selection_engine.perform_selection([_entity("b", 50), _entity("c", 40)], n=0)

        assert [c.slug for c in await store.collections.list_selected()] == ["a"]


class TestSelectionRuns:
    @pytest.mark.asyncio
    async def test_needs_selection_when_none_active(self, selection_engine):
        check = await selection_engine.needs_new_selection()
        assert check.needed
        assert check.current_period == "2025-Q1"
        assert check.active_period is None

    @pytest.mark.asyncio
    async def test_needs_selection_when_period_stale(self, selection_engine, store, clock):
        await store.periods.commit_selection(
            "2024-Q4", date(2024, 10, 1), "market_cap_usd", [{"slug": "a", "market_cap": 1.0}],
            now=clock(),
        )
        check = await selection_engine.needs_new_selection()
        assert check.needed
        assert check.active_period == "2024-Q4"

    @pytest.mark.asyncio
    async def test_no_selection_needed_when_current(self, selection_engine):
        await selection_engine.run_quarterly_selection()
        check = await selection_engine.needs_new_selection()
        assert not check.needed
        assert check.active_period == "2025-Q1"

    @pytest.mark.asyncio
    async def test_quarterly_run_logs_completed(self, selection_engine, store, market_provider):
        result = await selection_engine.run_quarterly_selection()

        assert result.success
        assert result.selected == 3
        assert result.snapshot_size == 5
        assert market_provider.calls == 1
        log = await store.sync_logs.get(result.log_id)
        assert log.sync_type == "quarterly_selection"
        assert log.status == "completed"
        assert log.processed == 5
        assert log.inserted == 3

    @pytest.mark.asyncio
    async def test_quarterly_run_reports_fetch_failure(self, selection_engine, store, market_provider):
        market_provider.error = TransientFetchError("upstream down")

        result = await selection_engine.run_quarterly_selection()

        assert not result.success
        assert result.error == "upstream down"
        log = await store.sync_logs.get(result.log_id)
        assert log.status == "failed"
        assert log.error_message == "upstream down"
        assert await store.periods.get_active() is None

    @pytest.mark.asyncio
    async def test_active_selection_info(self, selection_engine):
        await selection_engine.force_selection_update()

        info = await selection_engine.get_active_selection_info()

        assert info["active_period"] == "2025-Q1"
        assert info["active_count"] == 3
        assert info["is_current_period"] is True
        assert info["next_period"] == "2025-Q2"
        assert info["next_selection_date"] == "2025-04-01"
        assert info["days_until_next"] == 76

        history = await selection_engine.get_selection_history()
        assert history[0]["period"] == "2025-Q1"
        assert history[0]["total_selected"] == 3
