"""Admission control for command executions.

At most ``max_concurrency`` jobs run at once; the rest wait in submission
order and are admitted one by one as running jobs finish.
"""

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar

from models import LimiterCounts, TestExecutionConfig
from utils import create_contextual_logger

DEFAULT_MAX_CONCURRENCY = 5

T = TypeVar("T")

logger = create_contextual_logger(__name__, service="concurrency_limiter")


def _positive_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def resolve_max_concurrency(
    local_value: Optional[str],
    execution_config: Optional[TestExecutionConfig] = None,
    default: int = DEFAULT_MAX_CONCURRENCY,
) -> int:
    """Pick the concurrency limit: local setting, then server config, then the default."""
    if local_value is not None and str(local_value).strip():
        parsed = _positive_int(local_value)
        if parsed is not None:
            logger.info("Using local maxConcurrency", max_concurrency=parsed)
            return parsed
        logger.warning(
            "Invalid local maxConcurrency, ignoring it",
            value=local_value,
        )

    server_value = execution_config.max_concurrency if execution_config else None
    if server_value is not None:
        parsed = _positive_int(server_value)
        if parsed is not None:
            logger.info("Using server maxConcurrency", max_concurrency=parsed)
            return parsed
        logger.warning("Invalid server maxConcurrency, ignoring it", value=server_value)

    logger.info("Using default maxConcurrency", max_concurrency=default)
    return default


class ConcurrencyLimiter:
    """FIFO admission gate for zero-argument coroutine factories.

    All bookkeeping happens between awaits on a single event loop, so the
    counters need no lock even though many jobs complete concurrently.
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be a positive integer")
        self.max_concurrency = max_concurrency
        self._waiters: Deque["asyncio.Future[None]"] = deque()
        self._running = 0
        self._done = 0

    def counts(self) -> LimiterCounts:
        return LimiterCounts(
            queued=sum(1 for waiter in self._waiters if not waiter.done()),
            running=self._running,
            done=self._done,
        )

    async def schedule(self, job: Callable[[], Awaitable[T]]) -> T:
        """Run ``job`` once a slot is free and return its result."""
        await self._acquire()
        try:
            return await job()
        finally:
            self._release(completed=True)

    async def _acquire(self) -> None:
        if self._running < self.max_concurrency and not self._waiters:
            self._running += 1
            return

        waiter: "asyncio.Future[None]" = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over just before the cancellation landed.
                self._release(completed=False)
            else:
                self._remove_waiter(waiter)
            raise

    def _release(self, completed: bool) -> None:
        self._running -= 1
        if completed:
            self._done += 1
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._running += 1
                waiter.set_result(None)
                return

    def _remove_waiter(self, waiter: "asyncio.Future[None]") -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass
