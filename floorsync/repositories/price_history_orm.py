"""Price history repository using SQLAlchemy ORM.

Repository for the daily floor-price time series.

Usage:
    prices = PriceHistoryRepository(db)

    rows = await prices.get_range("azuki", start_date, end_date)
    await prices.bulk_upsert(records)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Any

import pandas as pd
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from floorsync.core.logging import get_logger
from floorsync.database.connection import Database
from floorsync.database.orm import Collection, PriceRecord


logger = get_logger("repositories.price_history_orm")

VALUE_FIELDS = ("timestamp", "floor_eth", "floor_usd", "volume_eth", "volume_usd", "sales_count")


def _is_valid_floor(value: Any) -> bool:
    return value is not None and value > 0


class PriceHistoryRepository:
    """Daily price rows, unique per (collection_slug, date)."""

    def __init__(self, db: Database):
        self.db = db

    async def get_range(
        self,
        slug: str,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int = 1000,
    ) -> Sequence[PriceRecord]:
        """Get price history for a collection within date range.

        Args:
            slug: Collection slug
            start_date: Start date (inclusive), unbounded if None
            end_date: End date (inclusive), unbounded if None
            limit: Maximum rows returned

        Returns:
            Sequence of PriceRecord objects ordered by date ascending
        """
        stmt = select(PriceRecord).where(PriceRecord.collection_slug == slug)
        if start_date is not None:
            stmt = stmt.where(PriceRecord.date >= start_date)
        if end_date is not None:
            stmt = stmt.where(PriceRecord.date <= end_date)

        async with self.db.session() as session:
            result = await session.execute(
                stmt.order_by(PriceRecord.date.asc()).limit(limit)
            )
            return result.scalars().all()

    async def get_latest(self, slug: str) -> PriceRecord | None:
        """Get the most recent price record for a collection."""
        async with self.db.session() as session:
            result = await session.execute(
                select(PriceRecord)
                .where(PriceRecord.collection_slug == slug)
                .order_by(PriceRecord.date.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def has_valid_record(self, slug: str, day: date) -> bool:
        """Check whether a positive floor is already stored for ``day``."""
        async with self.db.session() as session:
            result = await session.execute(
                select(PriceRecord.id)
                .where(
                    PriceRecord.collection_slug == slug,
                    PriceRecord.date == day,
                    PriceRecord.floor_eth > 0,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def get_for_slugs(
        self,
        slugs: Sequence[str],
        start_date: date,
        end_date: date,
    ) -> dict[str, list[PriceRecord]]:
        """Get price history for several collections, grouped by slug."""
        grouped: dict[str, list[PriceRecord]] = {slug: [] for slug in slugs}
        if not slugs:
            return grouped

        async with self.db.session() as session:
            result = await session.execute(
                select(PriceRecord)
                .where(
                    PriceRecord.collection_slug.in_(list(slugs)),
                    PriceRecord.date >= start_date,
                    PriceRecord.date <= end_date,
                )
                .order_by(PriceRecord.collection_slug.asc(), PriceRecord.date.asc())
            )
            for record in result.scalars().all():
                grouped[record.collection_slug].append(record)
        return grouped

    async def get_as_dataframe(
        self,
        slug: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> pd.DataFrame | None:
        """Get price history as a pandas DataFrame.

        Returns:
            DataFrame indexed by date (DatetimeIndex), or None if no data
        """
        records = await self.get_range(slug, start_date, end_date, limit=100_000)
        if not records:
            return None

        df = pd.DataFrame(
            [
                {
                    "date": r.date,
                    "floor_eth": r.floor_eth,
                    "floor_usd": r.floor_usd,
                    "volume_eth": r.volume_eth,
                    "volume_usd": r.volume_usd,
                    "sales_count": r.sales_count,
                }
                for r in records
            ]
        )
        df.set_index("date", inplace=True)
        df.index = pd.to_datetime(df.index)
        return df

    async def count(self, slug: str | None = None) -> int:
        async with self.db.session() as session:
            stmt = select(func.count(PriceRecord.id))
            if slug is not None:
                stmt = stmt.where(PriceRecord.collection_slug == slug)
            result = await session.execute(stmt)
            return result.scalar_one()

    async def date_range(self) -> tuple[date | None, date | None]:
        """Earliest and latest stored dates."""
        async with self.db.session() as session:
            result = await session.execute(
                select(func.min(PriceRecord.date), func.max(PriceRecord.date))
            )
            earliest, latest = result.one()
            return earliest, latest

    async def bulk_upsert(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Insert or overwrite price rows on (collection_slug, date).

        Rows without a positive ``floor_eth`` are never stored. Unknown
        collection slugs get a placeholder collection row first. Each row
        runs in its own SAVEPOINT; a failing row is logged and skipped.

        Args:
            records: Mappings with collection_slug, date and VALUE_FIELDS

        Returns:
            Number of rows written
        """
        records = list(records)
        if not records:
            return 0

        count = 0
        rejected = 0
        failed = 0
        async with self.db.session() as session:
            slugs = list(dict.fromkeys(r["collection_slug"] for r in records))
            for slug in slugs:
                await session.execute(
                    self.db.insert(Collection)
                    .values(slug=slug, name=slug, is_selected=False)
                    .on_conflict_do_nothing(index_elements=["slug"])
                )

            for record in records:
                if not _is_valid_floor(record.get("floor_eth")):
                    rejected += 1
                    continue

                values = {field: record.get(field) for field in VALUE_FIELDS}
                stmt = self.db.insert(PriceRecord).values(
                    collection_slug=record["collection_slug"],
                    date=record["date"],
                    **values,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["collection_slug", "date"],
                    set_={
                        **{field: stmt.excluded[field] for field in VALUE_FIELDS},
                        "updated_at": func.now(),
                    },
                )
                try:
                    async with session.begin_nested():
                        await session.execute(stmt)
                    count += 1
                except SQLAlchemyError as e:
                    failed += 1
                    logger.error(
                        f"Failed to upsert price for {record['collection_slug']} "
                        f"on {record['date']}: {e}"
                    )

            await session.commit()

        if rejected:
            logger.warning(f"Rejected {rejected} price rows without a positive floor")
        if failed:
            logger.warning(f"Skipped {failed} price rows that failed to write")
        logger.debug(f"Saved {count} price records")
        return count

    async def delete_older_than(self, cutoff: date) -> int:
        """Delete price history dated before ``cutoff``.

        Returns:
            Number of deleted rows
        """
        async with self.db.session() as session:
            result = await session.execute(
                delete(PriceRecord).where(PriceRecord.date < cutoff)
            )
            await session.commit()
            return result.rowcount
