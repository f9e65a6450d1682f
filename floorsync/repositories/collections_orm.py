"""Collections repository using SQLAlchemy ORM.

Usage:
    collections = CollectionRepository(db)

    selected = await collections.list_selected()
    await collections.upsert_many([{"slug": "azuki", "name": "Azuki", ...}])
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from floorsync.core.logging import get_logger
from floorsync.database.connection import Database
from floorsync.database.orm import Collection


logger = get_logger("repositories.collections_orm")

# Columns refreshed from the upstream snapshot. Selection state is not among them.
METADATA_FIELDS = ("name", "rank", "image", "total_supply", "owners", "market_cap")


class CollectionRepository:
    """Collection rows: metadata refresh and selected-set queries."""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, slug: str) -> Collection | None:
        async with self.db.session() as session:
            return await session.get(Collection, slug)

    async def list_selected(self) -> Sequence[Collection]:
        """Currently selected collections ordered by market_cap_rank."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Collection)
                .where(Collection.is_selected.is_(True))
                .order_by(Collection.market_cap_rank.asc(), Collection.slug.asc())
            )
            return result.scalars().all()

    async def is_selected(self, slug: str) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                select(Collection.is_selected).where(Collection.slug == slug)
            )
            return bool(result.scalar_one_or_none())

    async def count(self, selected_only: bool = False) -> int:
        async with self.db.session() as session:
            stmt = select(func.count()).select_from(Collection)
            if selected_only:
                stmt = stmt.where(Collection.is_selected.is_(True))
            result = await session.execute(stmt)
            return result.scalar_one()

    async def upsert_many(self, rows: Iterable[Mapping[str, Any]]) -> int:
        """Insert or refresh collection metadata.

        New slugs are inserted unselected. Existing rows get their metadata
        columns overwritten; ``is_selected`` and ranking within the selection
        are left alone. Each row runs in its own SAVEPOINT so one bad row
        does not abort the rest.

        Args:
            rows: Mappings with ``slug`` and any of METADATA_FIELDS

        Returns:
            Number of rows written
        """
        rows = list(rows)
        if not rows:
            return 0

        count = 0
        failed = 0
        async with self.db.session() as session:
            for row in rows:
                slug = row.get("slug")
                if not slug:
                    failed += 1
                    continue

                values = {field: row.get(field) for field in METADATA_FIELDS}
                values["name"] = values["name"] or slug

                stmt = self.db.insert(Collection).values(slug=slug, is_selected=False, **values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["slug"],
                    set_={
                        **{field: stmt.excluded[field] for field in METADATA_FIELDS},
                        "updated_at": func.now(),
                    },
                )
                try:
                    async with session.begin_nested():
                        await session.execute(stmt)
                    count += 1
                except SQLAlchemyError as e:
                    failed += 1
                    logger.warning(f"Skipped collection {slug}: {e}")

            await session.commit()

        if failed:
            logger.warning(f"Collection upsert skipped {failed} of {len(rows)} rows")
        logger.debug(f"Upserted {count} collections")
        return count
