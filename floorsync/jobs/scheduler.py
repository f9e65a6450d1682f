"""Job scheduler using APScheduler with async support."""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from floorsync.core.config import ScheduleSpec, Settings, parse_schedule
from floorsync.core.data_helpers import utc_now
from floorsync.core.exceptions import JobError
from floorsync.core.logging import get_logger
from floorsync.jobs.cleanup import CleanupJob
from floorsync.jobs.notifications import NotificationDispatcher, build_notification
from floorsync.jobs.registry import JobRegistry
from floorsync.repositories.store import Store
from floorsync.services.sync import SyncEngine


logger = get_logger("jobs.scheduler")

DAILY_SYNC = "daily_sync"
WEEKLY_CLEANUP = "weekly_cleanup"
BOOTSTRAP_SYNC = "bootstrap_sync"


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = True
    timezone: str = "UTC"
    daily_sync: ScheduleSpec = ScheduleSpec(hour=2, minute=0)
    weekly_cleanup: ScheduleSpec = ScheduleSpec(hour=3, minute=0, weekday=0)
    overlap_window_minutes: int = 60
    bootstrap_min_price_records: int = 100
    bootstrap_delay_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            enabled=settings.scheduler_enabled,
            timezone=settings.scheduler_timezone,
            daily_sync=settings.daily_sync_schedule,
            weekly_cleanup=settings.weekly_cleanup_schedule,
            overlap_window_minutes=settings.overlap_window_minutes,
            bootstrap_min_price_records=settings.bootstrap_min_price_records,
            bootstrap_delay_seconds=settings.bootstrap_delay_seconds,
        )


def _cron_trigger(spec: ScheduleSpec, timezone: str) -> CronTrigger:
    if spec.weekday is None:
        return CronTrigger(hour=spec.hour, minute=spec.minute, timezone=timezone)
    return CronTrigger(
        day_of_week=spec.day_of_week,
        hour=spec.hour,
        minute=spec.minute,
        timezone=timezone,
    )


class SyncScheduler:
    """Fires the daily sync and weekly cleanup, one run at a time."""

    def __init__(
        self,
        sync_engine: SyncEngine,
        cleanup_job: CleanupJob,
        store: Store,
        notifier: NotificationDispatcher | None = None,
        config: SchedulerConfig | None = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.sync_engine = sync_engine
        self.cleanup_job = cleanup_job
        self.store = store
        self.notifier = notifier or NotificationDispatcher()
        self.config = config or SchedulerConfig()
        self.now = now
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._active: set[str] = set()

        self.registry = JobRegistry()
        self.registry.register(DAILY_SYNC, self.run_daily_sync)
        self.registry.register(WEEKLY_CLEANUP, self.run_weekly_cleanup)

    @property
    def running(self) -> bool:
        return self._running

    def _build_scheduler(self) -> AsyncIOScheduler:
        return AsyncIOScheduler(
            timezone=self.config.timezone,
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,  # Only one instance per job at a time
                "misfire_grace_time": 60 * 5,  # 5 minutes grace period
            },
        )

    async def start(self) -> None:
        """Register the cron triggers and start firing. Idempotent."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        if not self.config.enabled:
            logger.info("Scheduler disabled via SCHEDULER_ENABLED=false")
            return

        self._scheduler = self._build_scheduler()
        self._scheduler.add_job(
            self.run_daily_sync,
            trigger=_cron_trigger(self.config.daily_sync, self.config.timezone),
            id=DAILY_SYNC,
            name="Daily price-history sync",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.run_weekly_cleanup,
            trigger=_cron_trigger(self.config.weekly_cleanup, self.config.timezone),
            id=WEEKLY_CLEANUP,
            name="Weekly retention cleanup",
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info(
            f"Job scheduler started (daily {self.config.daily_sync.to_cron()}, "
            f"cleanup {self.config.weekly_cleanup.to_cron()}, {self.config.timezone})"
        )

        await self._schedule_bootstrap_if_needed()

    async def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        self._running = False
        logger.info("Job scheduler stopped")

    async def _schedule_bootstrap_if_needed(self) -> bool:
        """Queue a one-off sync shortly after start when the store is nearly empty."""
        try:
            count = await self.store.prices.count()
        except Exception as e:
            logger.warning(f"Error checking for initial sync: {e}")
            return False

        if count >= self.config.bootstrap_min_price_records:
            return False

        run_at = self.now() + timedelta(seconds=self.config.bootstrap_delay_seconds)
        self._scheduler.add_job(
            self.run_daily_sync,
            trigger=DateTrigger(run_date=run_at),
            id=BOOTSTRAP_SYNC,
            name="Initial sync",
            replace_existing=True,
        )
        logger.info(f"Store has {count} price records, initial sync scheduled for {run_at:%H:%M:%S}")
        return True

    # =========================================================================
    # JOB EXECUTION
    # =========================================================================

    async def _notify(self, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.send(payload)
        except Exception:
            logger.exception("Notification dispatch failed")

    async def run_daily_sync(self) -> dict[str, Any]:
        """Run the daily sync unless one is already running."""
        if DAILY_SYNC in self._active:
            logger.info("Daily sync skipped, already running in this process")
            return {"skipped": True, "reason": "already running"}

        self._active.add(DAILY_SYNC)
        started = time.monotonic()
        try:
            running = await self.store.sync_logs.find_running(
                "daily",
                within=timedelta(minutes=self.config.overlap_window_minutes),
                now=self.now(),
            )
            if running is not None:
                logger.info(f"Daily sync skipped, run {running.id} started at {running.started_at}")
                return {"skipped": True, "reason": f"run {running.id} in progress"}

            summary = await self.sync_engine.daily_sync()
            duration = time.monotonic() - started
            if summary.success:
                await self._notify(
                    build_notification(DAILY_SYNC, "success", duration, counts=summary.counts)
                )
            else:
                await self._notify(
                    build_notification(DAILY_SYNC, "failure", duration, error=summary.error)
                )
            return summary.to_dict()
        except Exception as e:
            duration = time.monotonic() - started
            error = JobError(f"Job {DAILY_SYNC} crashed: {e}", details={"job": DAILY_SYNC})
            logger.exception(error.message)
            await self._notify(
                build_notification(DAILY_SYNC, "crash", duration, error=error.message)
            )
            return {"success": False, **error.to_dict()}
        finally:
            self._active.discard(DAILY_SYNC)

    async def run_weekly_cleanup(self) -> dict[str, Any]:
        """Run retention cleanup unless one is already running."""
        if WEEKLY_CLEANUP in self._active:
            logger.info("Weekly cleanup skipped, already running in this process")
            return {"skipped": True, "reason": "already running"}

        self._active.add(WEEKLY_CLEANUP)
        started = time.monotonic()
        try:
            result = await self.cleanup_job.run()
            duration = time.monotonic() - started
            if result.success:
                await self._notify(
                    build_notification(WEEKLY_CLEANUP, "success", duration, counts=result.counts)
                )
            else:
                await self._notify(
                    build_notification(WEEKLY_CLEANUP, "failure", duration, error=result.error)
                )
            return result.to_dict()
        except Exception as e:
            duration = time.monotonic() - started
            error = JobError(f"Job {WEEKLY_CLEANUP} crashed: {e}", details={"job": WEEKLY_CLEANUP})
            logger.exception(error.message)
            await self._notify(
                build_notification(WEEKLY_CLEANUP, "crash", duration, error=error.message)
            )
            return {"success": False, **error.to_dict()}
        finally:
            self._active.discard(WEEKLY_CLEANUP)

    async def run_job_now(self, name: str) -> dict[str, Any]:
        """Manually trigger a registered job."""
        job_func = self.registry.get(name)
        if job_func is None:
            raise JobError(f"Unknown job: {name}", details={"known": self.registry.names()})
        return await job_func()

    async def run_manual_sync(self) -> dict[str, Any]:
        return await self.run_job_now(DAILY_SYNC)

    async def run_manual_cleanup(self) -> dict[str, Any]:
        return await self.run_job_now(WEEKLY_CLEANUP)

    # =========================================================================
    # STATUS & CONFIGURATION
    # =========================================================================

    def get_next_run_time(self, name: str) -> Optional[datetime]:
        """Get next scheduled run time for a job."""
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(name)
        if job:
            return job.next_run_time
        return None

    def get_status(self) -> dict[str, Any]:
        jobs = []
        if self._scheduler is not None:
            for job in self._scheduler.get_jobs():
                jobs.append(
                    {
                        "id": job.id,
                        "name": job.name,
                        "next_run_time": job.next_run_time.isoformat()
                        if job.next_run_time
                        else None,
                    }
                )
        return {
            "running": self._running,
            "enabled": self.config.enabled,
            "timezone": self.config.timezone,
            "schedule": {
                DAILY_SYNC: self.config.daily_sync.to_cron(),
                WEEKLY_CLEANUP: self.config.weekly_cleanup.to_cron(),
            },
            "in_progress": sorted(self._active),
            "jobs": jobs,
        }

    async def update_config(self, **changes: Any) -> SchedulerConfig:
        """Apply config changes, restarting the scheduler if it was running.

        Schedule fields accept either a ScheduleSpec or a cron string.
        """
        for key in ("daily_sync", "weekly_cleanup"):
            if isinstance(changes.get(key), str):
                changes[key] = parse_schedule(changes[key])

        was_running = self._running
        await self.stop()
        self.config = dataclasses.replace(self.config, **changes)
        logger.info(f"Scheduler config updated: {sorted(changes)}")
        if was_running:
            await self.start()
        return self.config

    async def set_enabled(self, enabled: bool) -> None:
        self.config = dataclasses.replace(self.config, enabled=enabled)
        if enabled and not self._running:
            await self.start()
        elif not enabled and self._running:
            await self.stop()
