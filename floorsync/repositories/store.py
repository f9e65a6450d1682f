"""Store facade over the per-table repositories.

Usage:
    store = Store(Database(settings.database_url))
    await store.init_schema()

    selected = await store.collections.list_selected()
    stats = await store.get_stats()
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url

from floorsync.core.logging import get_logger
from floorsync.database.connection import Database
from floorsync.repositories.collections_orm import CollectionRepository
from floorsync.repositories.price_history_orm import PriceHistoryRepository
from floorsync.repositories.selection_periods_orm import SelectionPeriodRepository
from floorsync.repositories.sync_log_orm import SyncLogRepository


logger = get_logger("repositories.store")


class Store:
    """Durable storage for collections, prices, selection periods and sync logs."""

    def __init__(self, db: Database):
        self.db = db
        self.collections = CollectionRepository(db)
        self.prices = PriceHistoryRepository(db)
        self.periods = SelectionPeriodRepository(db)
        self.sync_logs = SyncLogRepository(db)

    async def init_schema(self) -> None:
        await self.db.create_all()
        logger.info("Database schema ready")

    async def close(self) -> None:
        await self.db.dispose()

    async def storage_size_mb(self) -> float | None:
        """On-disk size of the database in MB, None when unknown."""
        if self.db.is_sqlite:
            database = make_url(self.db.url).database
            if not database or database == ":memory:":
                return None
            path = Path(database)
            if not path.exists():
                return None
            size = path.stat().st_size
            wal = path.with_name(path.name + "-wal")
            if wal.exists():
                size += wal.stat().st_size
            return round(size / 1024 / 1024, 2)

        async with self.db.session() as session:
            result = await session.execute(
                text("SELECT pg_database_size(current_database())")
            )
            return round(result.scalar_one() / 1024 / 1024, 2)

    async def get_stats(self) -> dict[str, Any]:
        """Row counts, stored date range and storage size."""
        earliest, latest = await self.prices.date_range()
        active = await self.periods.get_active()
        return {
            "total_collections": await self.collections.count(),
            "selected_collections": await self.collections.count(selected_only=True),
            "total_price_records": await self.prices.count(),
            "earliest_date": earliest.isoformat() if earliest else None,
            "latest_date": latest.isoformat() if latest else None,
            "active_period": active.period if active else None,
            "database_size_mb": await self.storage_size_mb(),
        }

    async def compact(self) -> None:
        """Reclaim space after retention deletes."""
        if self.db.is_sqlite:
            await self.db.execute_autocommit("VACUUM")
        else:
            await self.db.execute_autocommit("VACUUM ANALYZE")
        logger.info("Database compacted")
