"""Core infrastructure: settings, logging, exceptions, request queue."""

from .config import ScheduleSpec, Settings, get_settings, parse_schedule
from .exceptions import (
    AppException,
    FatalFetchError,
    FetchError,
    JobError,
    NoValidDataError,
    QueueClearedError,
    QueueFullError,
    SelectionDataError,
    StoreError,
    TransientFetchError,
    ValidationError,
)
from .logging import get_logger, setup_logging
from .rate_limiter import Priority, RequestQueue


__all__ = [
    "AppException",
    "FatalFetchError",
    "FetchError",
    "JobError",
    "NoValidDataError",
    "Priority",
    "QueueClearedError",
    "QueueFullError",
    "RequestQueue",
    "ScheduleSpec",
    "SelectionDataError",
    "Settings",
    "StoreError",
    "TransientFetchError",
    "ValidationError",
    "get_logger",
    "get_settings",
    "parse_schedule",
    "setup_logging",
]
