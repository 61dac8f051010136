"""
Token-aware rate limiter for model calls.

One instance per consumer identity (moderator, participant personas) so one
consumer cannot starve the other. Three budgets refill in full at fixed
windows: requests/minute, tokens/minute, requests/day. Pending calls wait in
a priority queue (lower value first, FIFO within a priority) and are executed
one at a time, spaced by a minimum interval to stay under provider burst
policing.
"""
import asyncio
import enum
import heapq
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from a2mp.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

MINUTE_SECONDS = 60.0
DAY_SECONDS = 86_400.0
LOW_DAILY_QUOTA = 20


class Priority(enum.IntEnum):
    REPORT = 0
    PERSONA = 1
    TURN = 2
    CONCLUSION = 3


class LimiterIdentity(str, enum.Enum):
    MODERATOR = "moderator"
    PARTICIPANT = "participant"


@dataclass(frozen=True)
class RateLimits:
    requests_per_minute: int = 15
    tokens_per_minute: int = 1_000_000
    requests_per_day: int = 1500


@dataclass(order=True)
class _QueuedCall:
    priority: int
    sequence: int
    operation: Callable[[], Awaitable[Any]] = field(compare=False)
    estimated_tokens: int = field(compare=False)
    future: asyncio.Future = field(compare=False)


class RateLimiter:
    def __init__(
        self,
        identity: LimiterIdentity,
        limits: Optional[RateLimits] = None,
        min_interval: float = 4.0,
        minute_window: float = MINUTE_SECONDS,
        day_window: float = DAY_SECONDS,
        refill_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.identity = LimiterIdentity(identity)
        self.limits = limits or RateLimits()
        self.min_interval = min_interval
        self.minute_window = minute_window
        self.day_window = day_window
        self.refill_interval = refill_interval or min(10.0, minute_window / 4)
        self._clock = clock

        self._requests_available = self.limits.requests_per_minute
        self._tokens_available = self.limits.tokens_per_minute
        self._daily_available = self.limits.requests_per_day
        self._minute_started = clock()
        self._day_started = clock()
        self._last_call_at: Optional[float] = None

        self._queue: list[_QueuedCall] = []
        self._sequence = itertools.count()
        self._wakeup = asyncio.Event()
        self._worker: Optional[asyncio.Task] = None
        self._refill_task: Optional[asyncio.Task] = None

        self.daily_exhausted = False
        self.total_requests = 0
        self.total_estimated_tokens = 0
        self.total_actual_tokens = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def schedule(
        self,
        operation: Callable[[], Awaitable[T]],
        estimated_tokens: int,
        priority: int = Priority.TURN,
    ) -> T:
        """Queue `operation`; resolves with its result once admitted and executed."""
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(
            self._queue,
            _QueuedCall(int(priority), next(self._sequence), operation, max(0, int(estimated_tokens)), future),
        )
        self._ensure_tasks()
        self._wakeup.set()
        return await future

    def reconcile(self, estimated_tokens: int, actual_tokens: int) -> None:
        """Correct the token budget by the gap between estimate and reported usage."""
        difference = actual_tokens - estimated_tokens
        self._tokens_available -= difference
        self.total_actual_tokens += actual_tokens

        if estimated_tokens and abs(difference) > estimated_tokens * 0.2:
            logger.warning(
                f"[RateLimiter:{self.identity.value}] Token estimate off by {difference} "
                f"(estimated: {estimated_tokens}, actual: {actual_tokens})"
            )
        self._wakeup.set()

    def status(self) -> dict:
        self._refill()
        accuracy = None
        if self.total_actual_tokens > 0:
            accuracy = round(self.total_estimated_tokens / self.total_actual_tokens * 100, 1)
        return {
            "identity": self.identity.value,
            "queue": {
                "length": len(self._queue),
                "processing": self._worker is not None and not self._worker.done(),
            },
            "buckets": {
                "requests": f"{self._requests_available}/{self.limits.requests_per_minute}",
                "tokens": f"{self._tokens_available}/{self.limits.tokens_per_minute}",
                "daily_requests": f"{self._daily_available}/{self.limits.requests_per_day}",
            },
            "usage": {
                "total_requests": self.total_requests,
                "total_estimated_tokens": self.total_estimated_tokens,
                "total_actual_tokens": self.total_actual_tokens,
                "estimate_accuracy_pct": accuracy,
            },
            "daily_exhausted": self.daily_exhausted,
        }

    async def aclose(self) -> None:
        """Stop background tasks and cancel anything still waiting."""
        for task in (self._worker, self._refill_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._worker = None
        self._refill_task = None
        while self._queue:
            entry = heapq.heappop(self._queue)
            if not entry.future.done():
                entry.future.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_tasks(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._process_queue())
        if self._refill_task is None or self._refill_task.done():
            self._refill_task = asyncio.create_task(self._refill_loop())

    def _token_need(self, estimated_tokens: int) -> int:
        # A call larger than the whole minute budget is admitted on a full bucket
        return min(estimated_tokens, self.limits.tokens_per_minute)

    def _has_capacity(self, estimated_tokens: int) -> bool:
        return (
            self._requests_available >= 1
            and self._tokens_available >= self._token_need(estimated_tokens)
            and self._daily_available >= 1
        )

    def _reserve(self, estimated_tokens: int) -> None:
        self._requests_available -= 1
        self._tokens_available -= estimated_tokens
        self._daily_available -= 1
        self.total_requests += 1
        self.total_estimated_tokens += estimated_tokens

    def _refill(self) -> bool:
        now = self._clock()
        refilled = False

        elapsed = now - self._minute_started
        if elapsed >= self.minute_window:
            self._requests_available = self.limits.requests_per_minute
            self._tokens_available = self.limits.tokens_per_minute
            self._minute_started += (elapsed // self.minute_window) * self.minute_window
            refilled = True

        elapsed = now - self._day_started
        if elapsed >= self.day_window:
            self._daily_available = self.limits.requests_per_day
            self._day_started += (elapsed // self.day_window) * self.day_window
            if self.daily_exhausted:
                logger.info(f"[RateLimiter:{self.identity.value}] Daily bucket refilled")
            self.daily_exhausted = False
            refilled = True

        return refilled

    async def _refill_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refill_interval)
            if self._refill():
                self._wakeup.set()

    async def _wait(self, timeout: float) -> None:
        """Sleep until `timeout` elapses or capacity/queue changes."""
        self._wakeup.clear()
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            pass

    async def _wait_for_capacity(self, estimated_tokens: int) -> None:
        now = self._clock()
        until_minute = self.minute_window - (now - self._minute_started)
        until_day = self.day_window - (now - self._day_started)

        wait_time = min(1.0, until_minute)
        if self._requests_available < 1 or self._tokens_available < self._token_need(estimated_tokens):
            wait_time = max(wait_time, until_minute)

        if self._daily_available < 1:
            wait_time = max(wait_time, until_day)
            if not self.daily_exhausted:
                logger.error(
                    f"[RateLimiter:{self.identity.value}] DAILY QUOTA EXHAUSTED - "
                    f"no more calls for {until_day:.0f}s"
                )
            self.daily_exhausted = True
        elif self._daily_available <= LOW_DAILY_QUOTA:
            logger.warning(
                f"[RateLimiter:{self.identity.value}] LOW DAILY QUOTA: "
                f"only {self._daily_available} requests remaining"
            )

        logger.info(
            f"[RateLimiter:{self.identity.value}] Waiting {wait_time:.2f}s for capacity. "
            f"Requests: {self._requests_available}/{self.limits.requests_per_minute}, "
            f"Tokens: {self._tokens_available}/{self.limits.tokens_per_minute}, "
            f"Daily: {self._daily_available}/{self.limits.requests_per_day}"
        )
        await self._wait(wait_time)

    async def _process_queue(self) -> None:
        while self._queue:
            self._refill()
            entry = self._queue[0]

            if entry.future.done():
                # Caller went away while queued
                heapq.heappop(self._queue)
                continue

            if self._last_call_at is not None:
                since_last = self._clock() - self._last_call_at
                if since_last < self.min_interval:
                    wait_time = self.min_interval - since_last
                    logger.debug(
                        f"[RateLimiter:{self.identity.value}] Spacing calls: waiting {wait_time:.2f}s"
                    )
                    await asyncio.sleep(wait_time)
                    continue

            if not self._has_capacity(entry.estimated_tokens):
                await self._wait_for_capacity(entry.estimated_tokens)
                continue

            heapq.heappop(self._queue)
            self._reserve(entry.estimated_tokens)
            self._last_call_at = self._clock()

            try:
                result = await entry.operation()
            except Exception as e:
                if not entry.future.done():
                    entry.future.set_exception(e)
            else:
                if not entry.future.done():
                    entry.future.set_result(result)

        self._worker = None
