"""Job registry for mapping job names to functions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from floorsync.core.logging import get_logger


logger = get_logger("jobs.registry")

JobFunc = Callable[[], Awaitable[Any]]


class JobRegistry:
    """Name -> async job function, owned by one scheduler."""

    def __init__(self):
        self._jobs: dict[str, JobFunc] = {}

    def register(self, name: str, func: JobFunc) -> None:
        """Register a job function."""
        self._jobs[name] = func
        logger.debug(f"Registered job: {name}")

    def get(self, name: str) -> JobFunc | None:
        """Get a job function by name."""
        return self._jobs.get(name)

    def all(self) -> dict[str, JobFunc]:
        """Get all registered jobs."""
        return self._jobs.copy()

    def names(self) -> list[str]:
        """List all job names."""
        return list(self._jobs.keys())
