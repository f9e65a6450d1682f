"""Serialized request queue for upstream API calls."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import re
import time
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, TypeVar

from floorsync.core.data_helpers import safe_int
from floorsync.core.exceptions import QueueClearedError, QueueFullError
from floorsync.core.logging import get_logger


logger = get_logger("core.rate_limiter")

T = TypeVar("T")

# x-ratelimit-<kind>-<limit|remaining|reset>
_RATELIMIT_HEADER = re.compile(r"^x-ratelimit-(?P<kind>.+)-(?P<field>limit|remaining|reset)$")


class Priority(IntEnum):
    """Dispatch priority. Lower value is dispatched first."""

    HIGH = 0
    NORMAL = 1
    LOW = 2

    @classmethod
    def coerce(cls, value: "Priority | str") -> "Priority":
        if isinstance(value, Priority):
            return value
        try:
            return cls[value.upper()]
        except KeyError:
            raise ValueError(f"Unknown priority: {value!r}") from None


@dataclass(order=True)
class _QueuedRequest:
    priority: int
    sequence: int
    func: Callable[[], Awaitable[Any]] = field(compare=False)
    future: asyncio.Future = field(compare=False)
    enqueued_at: float = field(compare=False, default_factory=time.monotonic)


@dataclass
class UpstreamQuota:
    """Last reported state of one upstream rate-limit bucket."""

    limit: int | None = None
    remaining: int | None = None
    reset_at: float | None = None

    def exhausted(self, now: float) -> bool:
        return (
            self.remaining is not None
            and self.remaining <= 0
            and self.reset_at is not None
            and now < self.reset_at
        )


class RequestQueue:
    """
    Single-worker request queue with fixed spacing between dispatches.

    Every upstream call goes through ``enqueue``. One worker drains the
    queue: it runs a task to completion, then sleeps ``min_spacing``
    seconds before dispatching the next, so the outbound call rate is
    capped no matter how many callers enqueue concurrently.

    On top of the spacing, at most ``max_requests_per_window`` tasks are
    dispatched in any ``window_seconds`` sliding window, and dispatch
    pauses while the upstream reports an exhausted quota (see
    ``update_from_headers``) until that quota resets.

    A task's exception is delivered to its own caller only. Dispatched
    tasks are never cancelled; a task enforces its own timeout.
    """

    def __init__(
        self,
        name: str = "upstream",
        min_spacing: float = 0.5,
        max_queue_size: int = 50,
        max_requests_per_window: int = 100,
        window_seconds: float = 60.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize request queue.

        Args:
            name: Identifier for logging
            min_spacing: Seconds to wait after each dispatched task
            max_queue_size: Pending request limit (0 = unbounded)
            max_requests_per_window: Dispatch budget per window (0 = unlimited)
            window_seconds: Length of the sliding budget window
            sleep: Awaitable sleep used between dispatches
            clock: Monotonic clock in seconds
        """
        self.name = name
        self.min_spacing = min_spacing
        self.max_queue_size = max_queue_size
        self.max_requests_per_window = max_requests_per_window
        self.window_seconds = window_seconds
        self._sleep = sleep
        self._clock = clock
        self._heap: list[_QueuedRequest] = []
        self._sequence = itertools.count()
        self._worker: asyncio.Task | None = None
        self._dispatched = 0
        self._failed = 0
        self._throttled = 0
        self._last_dispatch: float | None = None
        self._history: deque[float] = deque()
        self._quotas: dict[str, UpstreamQuota] = {}

    @property
    def pending(self) -> int:
        return len(self._heap)

    @property
    def is_draining(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # =========================================================================
    # BUDGET
    # =========================================================================

    def _prune_history(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()

    def time_until_next_request(self) -> float:
        """Seconds until the window budget and upstream quotas allow a dispatch."""
        now = self._clock()
        self._prune_history(now)
        wait = 0.0

        if self.max_requests_per_window and len(self._history) >= self.max_requests_per_window:
            wait = max(wait, self._history[0] + self.window_seconds - now)

        for quota in self._quotas.values():
            if quota.exhausted(now):
                wait = max(wait, quota.reset_at - now)

        return wait

    def can_make_request(self) -> bool:
        return self.time_until_next_request() <= 0

    def update_from_headers(self, headers: Mapping[str, str]) -> None:
        """
        Track upstream quotas from ``x-ratelimit-<kind>-{limit,remaining,reset}``.

        ``reset`` is seconds until the bucket refills. An exhausted bucket
        without a reset hint is assumed to refill after one window.
        """
        now = self._clock()
        touched: set[str] = set()

        for key, value in headers.items():
            match = _RATELIMIT_HEADER.match(key.lower())
            if not match:
                continue
            number = safe_int(value)
            if number is None:
                continue
            kind, name = match.group("kind"), match.group("field")
            quota = self._quotas.setdefault(kind, UpstreamQuota())
            if name == "limit":
                quota.limit = number
            elif name == "remaining":
                quota.remaining = number
            else:
                quota.reset_at = now + number
            touched.add(kind)

        for kind in touched:
            quota = self._quotas[kind]
            if quota.remaining is not None and quota.remaining <= 0:
                if quota.reset_at is None or quota.reset_at <= now:
                    quota.reset_at = now + self.window_seconds
                logger.warning(
                    f"Upstream {kind} quota exhausted on {self.name}, "
                    f"pausing {quota.reset_at - now:.0f}s"
                )

    # =========================================================================
    # QUEUE
    # =========================================================================

    async def enqueue(
        self,
        func: Callable[[], Awaitable[T]],
        priority: Priority | str = Priority.NORMAL,
    ) -> T:
        """
        Queue an async callable and wait for its result.

        Args:
            func: Zero-argument coroutine function to execute
            priority: high, normal or low

        Returns:
            Whatever ``func`` returns

        Raises:
            QueueFullError: If max_queue_size pending requests are waiting
            Exception: Whatever ``func`` raises
        """
        prio = Priority.coerce(priority)

        if self.max_queue_size and len(self._heap) >= self.max_queue_size:
            raise QueueFullError(
                details={"queue": self.name, "pending": len(self._heap)}
            )

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        heapq.heappush(
            self._heap,
            _QueuedRequest(
                priority=int(prio),
                sequence=next(self._sequence),
                func=func,
                future=future,
            ),
        )
        logger.debug(
            f"Request queued on {self.name} ({prio.name.lower()}), pending={len(self._heap)}"
        )

        if not self.is_draining:
            self._worker = asyncio.create_task(self._drain(), name=f"{self.name}-drain")

        return await future

    async def _drain(self) -> None:
        """Dispatch queued requests one at a time until the queue is empty."""
        while self._heap:
            wait = self.time_until_next_request()
            if wait > 0:
                self._throttled += 1
                logger.info(f"Request budget exhausted on {self.name}, waiting {wait:.1f}s")
                await self._sleep(wait)
                continue

            item = heapq.heappop(self._heap)
            if item.future.done():
                # Caller gave up while waiting
                continue

            self._dispatched += 1
            self._last_dispatch = self._clock()
            self._history.append(self._last_dispatch)
            try:
                result = await item.func()
            except Exception as e:
                self._failed += 1
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                if not item.future.done():
                    item.future.set_result(result)

            if self.min_spacing > 0:
                await self._sleep(self.min_spacing)

    def clear(self) -> int:
        """
        Reject every request that has not been dispatched yet.

        Returns:
            Number of requests rejected
        """
        cleared = 0
        while self._heap:
            item = heapq.heappop(self._heap)
            if not item.future.done():
                item.future.set_exception(QueueClearedError())
                cleared += 1
        if cleared:
            logger.warning(f"Request queue {self.name} cleared ({cleared} pending)")
        return cleared

    async def close(self) -> None:
        """Reject pending requests and wait for the in-flight one to finish."""
        self.clear()
        if self._worker is not None and not self._worker.done():
            await self._worker
        self._worker = None

    def status(self) -> dict:
        """Get current queue status."""
        now = self._clock()
        self._prune_history(now)
        return {
            "name": self.name,
            "pending": len(self._heap),
            "dispatched": self._dispatched,
            "failed": self._failed,
            "throttled": self._throttled,
            "min_spacing_seconds": self.min_spacing,
            "max_queue_size": self.max_queue_size,
            "draining": self.is_draining,
            "window": {
                "max_requests": self.max_requests_per_window,
                "window_seconds": self.window_seconds,
                "used": len(self._history),
            },
            "time_until_next_request": round(self.time_until_next_request(), 3),
            "upstream": {
                kind: {
                    "limit": quota.limit,
                    "remaining": quota.remaining,
                    "reset_in": (
                        max(0.0, round(quota.reset_at - now, 3))
                        if quota.reset_at is not None
                        else None
                    ),
                }
                for kind, quota in sorted(self._quotas.items())
            },
            "last_dispatch_age": (
                now - self._last_dispatch if self._last_dispatch is not None else None
            ),
        }
