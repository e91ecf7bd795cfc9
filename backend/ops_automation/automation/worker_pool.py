"""Bounded worker pool for action dispatches."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class ActionTimeout(Exception):
    """Raised when an action exceeds the per-action timeout."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"Timeout after {seconds}s")


class WorkerPool:
    """Runs coroutines with controlled parallelism and a per-call timeout.

    Every submitted call is tracked until it finishes so shutdown can
    drain in-flight work.

    Attributes:
        max_workers: Maximum number of concurrent calls
        timeout: Timeout in seconds for each call
    """

    def __init__(self, max_workers: int = 8, timeout: float = 30.0):
        self.max_workers = max_workers
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_workers)
        self._in_flight: set[asyncio.Task] = set()

    async def run(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``func()`` under the semaphore and timeout and await the result.

        Raises:
            ActionTimeout: If the call exceeded the timeout
        """
        task = asyncio.ensure_future(self._guarded(func))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return await asyncio.shield(task)

    async def _guarded(self, func: Callable[[], Awaitable[Any]]) -> Any:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(func(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise ActionTimeout(self.timeout) from None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self, grace: float) -> bool:
        """Wait up to ``grace`` seconds for in-flight calls.

        Returns:
            True if everything finished, False if calls were cancelled
        """
        pending = set(self._in_flight)
        if not pending:
            return True
        done, still_pending = await asyncio.wait(pending, timeout=grace)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning(f"Cancelled {len(still_pending)} action(s) still running after {grace}s")
            await asyncio.gather(*still_pending, return_exceptions=True)
        return not still_pending
