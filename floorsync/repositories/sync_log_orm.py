"""Sync log repository using SQLAlchemy ORM.

Audit trail of every run. A run opens one ``started`` row and closes it
exactly once with its final status and counters.

Usage:
    logs = SyncLogRepository(db)

    log_id = await logs.start("daily")
    await logs.complete(log_id, "completed", processed=250, inserted=240)
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import delete, select

from floorsync.core.data_helpers import as_utc, utc_now
from floorsync.core.logging import get_logger
from floorsync.database.connection import Database
from floorsync.database.orm import SyncLog


logger = get_logger("repositories.sync_log_orm")

SYNC_TYPES = ("daily", "weekly_cleanup", "quarterly_selection", "collection", "backfill")
FINAL_STATUSES = ("completed", "failed")


class SyncLogRepository:
    """Start, finalize and query SyncLog rows."""

    def __init__(self, db: Database):
        self.db = db

    async def start(
        self,
        sync_type: str,
        target_slug: str | None = None,
        now: datetime | None = None,
    ) -> int:
        """Open a ``started`` row.

        Returns:
            Id of the new row
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync type: {sync_type}")

        async with self.db.session() as session:
            log = SyncLog(
                sync_type=sync_type,
                target_slug=target_slug,
                status="started",
                started_at=now or utc_now(),
            )
            session.add(log)
            await session.commit()
            return log.id

    async def complete(
        self,
        log_id: int,
        status: str,
        *,
        processed: int = 0,
        inserted: int = 0,
        updated: int = 0,
        skipped: int = 0,
        errors: int = 0,
        error: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Finalize a started row.

        Returns:
            True if the row was closed, False if it was missing or already closed
        """
        if status not in FINAL_STATUSES:
            raise ValueError(f"Final status must be one of {FINAL_STATUSES}")

        finished = now or utc_now()
        async with self.db.session() as session:
            log = await session.get(SyncLog, log_id)
            if log is None or log.status != "started":
                return False

            log.status = status
            log.processed = processed
            log.inserted = inserted
            log.updated = updated
            log.skipped = skipped
            log.errors = errors
            log.error_message = error[:1000] if error else None
            log.completed_at = finished
            log.duration_seconds = max(
                0.0, (finished - as_utc(log.started_at)).total_seconds()
            )
            await session.commit()
            return True

    async def get(self, log_id: int) -> SyncLog | None:
        async with self.db.session() as session:
            return await session.get(SyncLog, log_id)

    async def recent(self, limit: int = 10) -> Sequence[SyncLog]:
        """Most recent rows, newest first."""
        async with self.db.session() as session:
            result = await session.execute(
                select(SyncLog)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .limit(limit)
            )
            return result.scalars().all()

    async def last_with_status(
        self, status: str, sync_type: str | None = None
    ) -> SyncLog | None:
        async with self.db.session() as session:
            stmt = select(SyncLog).where(SyncLog.status == status)
            if sync_type is not None:
                stmt = stmt.where(SyncLog.sync_type == sync_type)
            result = await session.execute(
                stmt.order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()

    async def find_running(
        self,
        sync_type: str,
        within: timedelta,
        now: datetime | None = None,
    ) -> SyncLog | None:
        """Most recent ``started`` row of this type begun inside the window."""
        cutoff = (now or utc_now()) - within
        async with self.db.session() as session:
            result = await session.execute(
                select(SyncLog)
                .where(
                    SyncLog.sync_type == sync_type,
                    SyncLog.status == "started",
                    SyncLog.started_at >= cutoff,
                )
                .order_by(SyncLog.started_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Purge rows started before ``cutoff``.

        Returns:
            Number of deleted rows
        """
        async with self.db.session() as session:
            result = await session.execute(
                delete(SyncLog).where(SyncLog.started_at < cutoff)
            )
            await session.commit()
            return result.rowcount
