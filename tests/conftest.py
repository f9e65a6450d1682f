"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from floorsync.core.data_helpers import day_start_ts, utc_date
from floorsync.core.rate_limiter import RequestQueue
from floorsync.database.connection import Database
from floorsync.jobs.cleanup import CleanupJob
from floorsync.repositories.store import Store
from floorsync.services.data_providers.base import EntitySnapshot, RawPricePoint
from floorsync.services.selection import SelectionEngine
from floorsync.services.sync import SyncEngine, SyncOptions


NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# FAKES
# =============================================================================


class Clock:
    """Controllable replacement for utc_now."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep that returns immediately and records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_point(day: date, floor: float | None, **extra) -> RawPricePoint:
    return RawPricePoint(
        timestamp=day_start_ts(day) + 3600,
        floor_native=floor,
        floor_usd=None if floor is None else floor * 3000,
        volume_native=extra.get("volume_native", 10.0),
        volume_usd=extra.get("volume_usd", 30000.0),
        sales_count=extra.get("sales_count", 5),
    )


class FakeMarketCapProvider:
    """Returns a fixed snapshot, or raises a configured error."""

    def __init__(self, entities: list[EntitySnapshot] | None = None, error: Exception | None = None):
        self.entities = entities or []
        self.error = error
        self.calls = 0

    async def fetch_all_entities(self) -> list[EntitySnapshot]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.entities)


class FakePriceProvider:
    """
    Scripted price-history provider.

    ``scripts[slug]`` is a list of responses consumed one per call; each is
    either a list of RawPricePoint or an exception to raise. The last
    response repeats. Slugs without a script get one point dated on the
    ``end_ts`` day with ``default_floor``.
    """

    def __init__(self, scripts: dict[str, list] | None = None, default_floor: float = 1.0):
        self.scripts = scripts or {}
        self.default_floor = default_floor
        self.calls: list[tuple[str, str, int, int]] = []

    def calls_for(self, slug: str) -> int:
        return sum(1 for call in self.calls if call[0] == slug)

    async def fetch_price_history(
        self, slug: str, granularity: str, start_ts: int, end_ts: int
    ) -> list[RawPricePoint]:
        self.calls.append((slug, granularity, start_ts, end_ts))
        script = self.scripts.get(slug)
        if not script:
            return [make_point(utc_date(end_ts), self.default_floor)]

        response = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(response, Exception):
            raise response
        return list(response)


def make_entities(count: int, start_cap: float = 1_000_000.0) -> list[EntitySnapshot]:
    """``count`` entities with strictly decreasing market caps."""
    return [
        EntitySnapshot(
            slug=f"collection-{i:03d}",
            name=f"Collection {i}",
            rank=i + 1,
            market_cap=start_cap - i * 1000,
            total_supply=10_000,
            owners=5_000,
        )
        for i in range(count)
    ]


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """Fresh SQLite database per test."""
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'floorsync.db'}")
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def store(db: Database) -> Store:
    return Store(db)


@pytest.fixture
def queue(sleep: RecordingSleep) -> RequestQueue:
    return RequestQueue(
        name="test", min_spacing=0, max_queue_size=0, max_requests_per_window=0, sleep=sleep
    )


@pytest.fixture
def market_provider() -> FakeMarketCapProvider:
    return FakeMarketCapProvider(make_entities(5))


@pytest.fixture
def price_provider() -> FakePriceProvider:
    return FakePriceProvider()


@pytest.fixture
def selection_engine(store, market_provider, queue, clock) -> SelectionEngine:
    return SelectionEngine(store, market_provider, queue, count=3, now=clock)


@pytest.fixture
def sync_options() -> SyncOptions:
    return SyncOptions(batch_size=2, batch_delay=2.0, max_retries=3, retry_base_delay=2.0)


@pytest.fixture
def sync_engine(store, selection_engine, price_provider, queue, sync_options, clock, sleep) -> SyncEngine:
    return SyncEngine(
        store,
        selection_engine,
        price_provider,
        queue,
        options=sync_options,
        now=clock,
        sleep=sleep,
    )


@pytest.fixture
def cleanup_job(store, clock) -> CleanupJob:
    return CleanupJob(store, retention_days=365, sync_log_retention_days=30, now=clock)


@pytest.fixture
def point_factory() -> Callable[..., RawPricePoint]:
    return make_point


@pytest.fixture
def entity_factory() -> Callable[..., list[EntitySnapshot]]:
    return make_entities
