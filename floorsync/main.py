"""Composition root: builds every component once and exposes the read and control APIs."""

from __future__ import annotations

import asyncio
import signal
from datetime import date, timedelta
from typing import Any, Sequence

from floorsync.core.config import Settings, get_settings
from floorsync.core.data_helpers import utc_now
from floorsync.core.logging import get_logger, setup_logging
from floorsync.core.rate_limiter import RequestQueue
from floorsync.database.connection import Database
from floorsync.jobs.cleanup import CleanupJob
from floorsync.jobs.notifications import NotificationDispatcher
from floorsync.jobs.scheduler import SchedulerConfig, SyncScheduler
from floorsync.repositories.store import Store
from floorsync.services.data_providers.nft_price_floor import NFTPriceFloorClient
from floorsync.services.prices import summarize_price_frame
from floorsync.services.selection import SelectionEngine
from floorsync.services.sync import SyncEngine, SyncOptions, sync_log_to_dict


logger = get_logger("main")

# Comparison windows in days; unknown labels fall back to 30d
TIMEFRAME_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1Y": 365}


def price_record_to_dict(record) -> dict[str, Any]:
    return {
        "slug": record.collection_slug,
        "date": record.date.isoformat(),
        "timestamp": record.timestamp,
        "floor_eth": record.floor_eth,
        "floor_usd": record.floor_usd,
        "volume_eth": record.volume_eth,
        "volume_usd": record.volume_usd,
        "sales_count": record.sales_count,
    }


def collection_to_dict(collection) -> dict[str, Any]:
    return {
        "slug": collection.slug,
        "name": collection.name,
        "market_cap": collection.market_cap,
        "market_cap_rank": collection.market_cap_rank,
        "total_supply": collection.total_supply,
        "owners": collection.owners,
        "selection_period": collection.selection_period,
    }


class Application:
    """Wired set of components sharing one Store and one request queue."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        queue: RequestQueue,
        provider: NFTPriceFloorClient,
        selection: SelectionEngine,
        sync: SyncEngine,
        cleanup: CleanupJob,
        scheduler: SyncScheduler,
    ):
        self.settings = settings
        self.store = store
        self.queue = queue
        self.provider = provider
        self.selection = selection
        self.sync = sync
        self.cleanup = cleanup
        self.scheduler = scheduler

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def startup(self, start_scheduler: bool = True) -> None:
        logger.info(f"Starting {self.settings.app_name} v{self.settings.app_version}")
        logger.info(f"Environment: {self.settings.environment}")
        await self.store.init_schema()
        if start_scheduler:
            await self.scheduler.start()

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        await self.scheduler.stop()
        await self.queue.close()
        await self.provider.aclose()
        await self.store.close()
        logger.info("Shutdown complete")

    async def __aenter__(self) -> "Application":
        await self.startup(start_scheduler=False)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # =========================================================================
    # READ API
    # =========================================================================

    async def get_price_history(
        self,
        slug: str,
        start: date | None = None,
        end: date | None = None,
    ) -> list[dict[str, Any]]:
        records = await self.store.prices.get_range(slug, start, end)
        return [price_record_to_dict(r) for r in records]

    async def get_current_selection(self) -> list[dict[str, Any]]:
        collections = await self.selection.get_current_selection()
        return [collection_to_dict(c) for c in collections]

    async def get_stats(self) -> dict[str, Any]:
        return {
            "database": await self.store.get_stats(),
            "selection": await self.selection.get_active_selection_info(),
            "scheduler": self.scheduler.get_status(),
            "queue": self.queue.status(),
        }

    async def get_recent_sync_logs(self, limit: int = 10) -> list[dict[str, Any]]:
        logs = await self.store.sync_logs.recent(limit)
        return [sync_log_to_dict(log) for log in logs]

    async def get_collections_comparison(
        self,
        slugs: Sequence[str],
        timeframe: str = "30d",
        end: date | None = None,
    ) -> dict[str, Any]:
        """Price history for several collections over a shared window."""
        end = end or utc_now().date()
        start = end - timedelta(days=TIMEFRAME_DAYS.get(timeframe, 30))
        grouped = await self.store.prices.get_for_slugs(slugs, start, end)
        return {
            "timeframe": timeframe,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "results": {
                slug: [price_record_to_dict(r) for r in records]
                for slug, records in grouped.items()
            },
            "missing": [slug for slug, records in grouped.items() if not records],
        }

    async def get_price_summary(
        self,
        slug: str,
        start: date | None = None,
        end: date | None = None,
    ) -> dict[str, Any] | None:
        df = await self.store.prices.get_as_dataframe(slug, start, end)
        if df is None:
            return None
        return {"slug": slug, **summarize_price_frame(df)}

    # =========================================================================
    # CONTROL API
    # =========================================================================

    async def run_manual_sync(self) -> dict[str, Any]:
        return await self.scheduler.run_manual_sync()

    async def run_manual_cleanup(self) -> dict[str, Any]:
        return await self.scheduler.run_manual_cleanup()

    async def force_selection_update(self) -> dict[str, Any]:
        result = await self.selection.force_selection_update()
        return result.to_dict()

    async def force_sync(self, slugs: Sequence[str], days_back: int = 1) -> list[dict[str, Any]]:
        results = await self.sync.force_sync(slugs, days_back=days_back)
        return [r.to_dict() for r in results]


def build_application(
    settings: Settings | None = None,
    provider: NFTPriceFloorClient | None = None,
) -> Application:
    """Construct Database -> Store -> queue -> provider -> engines -> scheduler."""
    settings = settings or get_settings()

    db = Database(
        settings.database_url,
        pool_min_size=settings.db_pool_min_size,
        pool_max_size=settings.db_pool_max_size,
        echo=settings.db_echo,
    )
    store = Store(db)
    queue = RequestQueue(
        name="nftpricefloor",
        min_spacing=settings.rate_limit_min_spacing_ms / 1000,
        max_queue_size=settings.rate_limit_max_queue_size,
        max_requests_per_window=settings.rate_limit_max_requests_per_window,
        window_seconds=settings.rate_limit_window_seconds,
    )
    provider = provider or NFTPriceFloorClient.from_settings(
        settings, on_response_headers=queue.update_from_headers
    )

    selection = SelectionEngine(
        store,
        provider,
        queue,
        count=settings.selection_count,
        criteria=settings.selection_criteria,
        fetch_timeout=settings.external_api_timeout,
    )
    sync = SyncEngine(
        store,
        selection,
        provider,
        queue,
        options=SyncOptions.from_settings(settings),
    )
    cleanup = CleanupJob(
        store,
        retention_days=settings.retention_days,
        sync_log_retention_days=settings.sync_log_retention_days,
    )
    scheduler = SyncScheduler(
        sync,
        cleanup,
        store,
        notifier=NotificationDispatcher.from_webhook_url(settings.notification_webhook_url),
        config=SchedulerConfig.from_settings(settings),
    )
    return Application(
        settings=settings,
        store=store,
        queue=queue,
        provider=provider,
        selection=selection,
        sync=sync,
        cleanup=cleanup,
        scheduler=scheduler,
    )


async def serve(settings: Settings | None = None) -> None:
    """Run the scheduler until SIGINT or SIGTERM."""
    settings = settings or get_settings()
    setup_logging(settings)
    app = build_application(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await app.startup()
    try:
        await stop_event.wait()
    finally:
        await app.shutdown()
