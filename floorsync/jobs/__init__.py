"""Scheduled jobs: daily sync, weekly cleanup and their notifications."""

from .cleanup import CleanupJob, CleanupResult
from .notifications import LogNotifier, NotificationDispatcher, WebhookNotifier
from .registry import JobRegistry
from .scheduler import SchedulerConfig, SyncScheduler


__all__ = [
    "CleanupJob",
    "CleanupResult",
    "JobRegistry",
    "LogNotifier",
    "NotificationDispatcher",
    "SchedulerConfig",
    "SyncScheduler",
    "WebhookNotifier",
]
