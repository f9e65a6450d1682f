"""Weekly retention cleanup.

Prunes price history past the retention window, purges old sync logs and
compacts storage. Recorded as a ``weekly_cleanup`` SyncLog row.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from floorsync.core.data_helpers import utc_now
from floorsync.core.logging import get_logger, run_id_var
from floorsync.repositories.store import Store


logger = get_logger("jobs.cleanup")


@dataclass
class CleanupResult:
    success: bool
    price_records_deleted: int = 0
    sync_logs_deleted: int = 0
    compacted: bool = False
    duration_seconds: float = 0.0
    log_id: int | None = None
    error: str | None = None

    @property
    def counts(self) -> dict[str, Any]:
        return {
            "price_records_deleted": self.price_records_deleted,
            "sync_logs_deleted": self.sync_logs_deleted,
            "compacted": self.compacted,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            **self.counts,
            "duration_seconds": round(self.duration_seconds, 2),
            "log_id": self.log_id,
            "error": self.error,
        }


class CleanupJob:
    """Retention and compaction for the Store."""

    def __init__(
        self,
        store: Store,
        retention_days: int = 365,
        sync_log_retention_days: int = 30,
        now: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.retention_days = retention_days
        self.sync_log_retention_days = sync_log_retention_days
        self.now = now

    async def run(self) -> CleanupResult:
        started = time.monotonic()
        now = self.now()
        log_id = await self.store.sync_logs.start("weekly_cleanup", now=now)
        token = run_id_var.set(log_id)
        result = CleanupResult(success=True, log_id=log_id)

        try:
            price_cutoff = now.date() - timedelta(days=self.retention_days)
            result.price_records_deleted = await self.store.prices.delete_older_than(price_cutoff)
            logger.info(
                f"Deleted {result.price_records_deleted} price records before {price_cutoff}"
            )

            log_cutoff = now - timedelta(days=self.sync_log_retention_days)
            result.sync_logs_deleted = await self.store.sync_logs.delete_older_than(log_cutoff)
            logger.info(f"Deleted {result.sync_logs_deleted} sync logs before {log_cutoff:%Y-%m-%d}")

            try:
                await self.store.compact()
                result.compacted = True
            except Exception as e:
                logger.warning(f"Storage compaction failed: {e}")
        except Exception as e:
            logger.exception("Weekly cleanup failed")
            result.success = False
            result.error = str(e)
        finally:
            run_id_var.reset(token)

        result.duration_seconds = time.monotonic() - started
        await self.store.sync_logs.complete(
            log_id,
            "completed" if result.success else "failed",
            processed=result.price_records_deleted + result.sync_logs_deleted,
            error=result.error,
            now=self.now(),
        )
        return result
