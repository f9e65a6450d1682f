"""Selection period repository using SQLAlchemy ORM.

Usage:
    periods = SelectionPeriodRepository(db)

    active = await periods.get_active()
    counts = await periods.commit_selection("2025-Q3", today, "market_cap_usd", rows)
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from floorsync.core.data_helpers import utc_now
from floorsync.core.exceptions import StoreError
from floorsync.core.logging import get_logger
from floorsync.database.connection import Database
from floorsync.database.orm import Collection, SelectionPeriod
from floorsync.repositories.collections_orm import METADATA_FIELDS


logger = get_logger("repositories.selection_periods_orm")


class SelectionPeriodRepository:
    """Quarterly selection periods and the atomic selection commit."""

    def __init__(self, db: Database):
        self.db = db

    async def get_active(self) -> SelectionPeriod | None:
        async with self.db.session() as session:
            result = await session.execute(
                select(SelectionPeriod)
                .where(SelectionPeriod.status == "active")
                .order_by(SelectionPeriod.selection_date.desc(), SelectionPeriod.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def history(self, limit: int = 10) -> Sequence[SelectionPeriod]:
        """Recent periods, newest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(SelectionPeriod)
                .order_by(SelectionPeriod.selection_date.desc(), SelectionPeriod.id.desc())
                .limit(limit)
            )
            return result.scalars().all()

    async def commit_selection(
        self,
        period: str,
        selection_date: date,
        criteria: str,
        selected: Sequence[Mapping[str, Any]],
        now: datetime | None = None,
    ) -> dict[str, int]:
        """Replace the active selection in one transaction.

        Expires every other active period, clears ``is_selected`` on all
        collections, writes ``period`` as the active period (updating it in
        place if it already exists) and upserts each selected collection
        with its 1-based ``market_cap_rank``.

        Args:
            period: Period label (YYYY-Qn)
            selection_date: Date the selection was made
            criteria: Ranking criteria label
            selected: Collection rows in rank order (slug plus METADATA_FIELDS)

        Returns:
            {"inserted": new collections, "updated": existing collections}

        Raises:
            StoreError: If the transaction fails; nothing is changed
        """
        selected_at = now or utc_now()
        caps = [row["market_cap"] for row in selected]
        slugs = [row["slug"] for row in selected]

        try:
            async with self.db.session() as session:
                existing_result = await session.execute(
                    select(Collection.slug).where(Collection.slug.in_(slugs))
                )
                existing = set(existing_result.scalars().all())

                await session.execute(
                    update(SelectionPeriod)
                    .where(
                        SelectionPeriod.status == "active",
                        SelectionPeriod.period != period,
                    )
                    .values(status="expired")
                )
                await session.execute(
                    update(Collection)
                    .where(Collection.is_selected.is_(True))
                    .values(is_selected=False, market_cap_rank=None)
                )

                period_values = {
                    "selection_date": selection_date,
                    "total_selected": len(selected),
                    "criteria": criteria,
                    "min_market_cap": min(caps) if caps else None,
                    "max_market_cap": max(caps) if caps else None,
                    "avg_market_cap": sum(caps) / len(caps) if caps else None,
                    "status": "active",
                }
                period_stmt = self.db.insert(SelectionPeriod).values(
                    period=period, **period_values
                )
                await session.execute(
                    period_stmt.on_conflict_do_update(
                        index_elements=["period"], set_=period_values
                    )
                )

                for index, row in enumerate(selected):
                    values = {field: row.get(field) for field in METADATA_FIELDS}
                    values["name"] = values["name"] or row["slug"]
                    selection_values = {
                        "is_selected": True,
                        "market_cap_rank": index + 1,
                        "selection_period": period,
                        "selected_at": selected_at,
                    }
                    stmt = self.db.insert(Collection).values(
                        slug=row["slug"], **values, **selection_values
                    )
                    await session.execute(
                        stmt.on_conflict_do_update(
                            index_elements=["slug"],
                            set_={
                                **{field: stmt.excluded[field] for field in METADATA_FIELDS},
                                **selection_values,
                                "updated_at": func.now(),
                            },
                        )
                    )

                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Selection commit for {period} failed: {e}")
            raise StoreError(
                f"Failed to commit selection for {period}",
                details={"period": period, "error": str(e)},
            ) from e

        inserted = len(set(slugs) - existing)
        logger.info(
            f"Committed selection {period}: {len(selected)} collections "
            f"({inserted} new, {len(selected) - inserted} updated)"
        )
        return {"inserted": inserted, "updated": len(selected) - inserted}
