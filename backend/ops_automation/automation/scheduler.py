"""
Interval scheduler for time-driven automation rules.

A timer task puts a tick on a queue every interval; a consumer task runs
each tick as its own tracked task, so a slow tick never delays the timer.
"""

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from ops_automation.automation.dispatcher import DispatchOutcome, Dispatcher, utcnow

logger = logging.getLogger(__name__)


class SchedulerState(str, Enum):
    IDLE = "idle"
    TICKING = "ticking"
    STOPPED = "stopped"


class Scheduler:
    """Owns the tick timer and feeds ticks to the dispatcher."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.clock = clock

        self.state = SchedulerState.STOPPED
        self.last_tick_at: Optional[datetime] = None
        self.ticks_completed = 0

        self._queue: Optional[asyncio.Queue] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._tick_tasks: set[asyncio.Task] = set()
        self._active_ticks = 0

    @property
    def running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    async def start(self) -> None:
        """Start the timer and the tick consumer."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._queue = asyncio.Queue()
        self.state = SchedulerState.IDLE
        self._timer_task = asyncio.create_task(self._timer_loop())
        self._consumer_task = asyncio.create_task(self._consume_loop())
        logger.info(f"Scheduler started (interval {self.interval_seconds}s)")

    async def _timer_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self._queue.put(self.clock())

    async def _consume_loop(self) -> None:
        while True:
            now = await self._queue.get()
            task = asyncio.create_task(self._run_tick(now))
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            self._queue.task_done()

    def trigger(self, now: Optional[datetime] = None) -> None:
        """Queue an extra tick without waiting for it."""
        if not self.running:
            raise RuntimeError("Scheduler is not running")
        self._queue.put_nowait(now or self.clock())

    async def tick(self, now: Optional[datetime] = None) -> list[DispatchOutcome]:
        """Run one evaluation pass and wait for it."""
        return await self._run_tick(now or self.clock())

    async def _run_tick(self, now: datetime) -> list[DispatchOutcome]:
        self._active_ticks += 1
        if self.state != SchedulerState.STOPPED:
            self.state = SchedulerState.TICKING
        started = time.monotonic()
        outcomes: list[DispatchOutcome] = []
        try:
            outcomes = await self.dispatcher.handle_tick(now)
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}", exc_info=True)
        finally:
            self._active_ticks -= 1
            if self._active_ticks == 0 and self.state == SchedulerState.TICKING:
                self.state = SchedulerState.IDLE
            self.last_tick_at = now
            self.ticks_completed += 1

        logger.info(
            f"Tick at {now.isoformat()} dispatched {len(outcomes)} match(es) "
            f"in {time.monotonic() - started:.2f}s"
        )
        return outcomes

    async def stop(self, grace: float = 10.0) -> None:
        """Stop the timer and drain in-flight ticks and dispatches."""
        self.state = SchedulerState.STOPPED
        for task in (self._timer_task, self._consumer_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._timer_task, self._consumer_task) if t is not None),
            return_exceptions=True,
        )
        self._timer_task = None
        self._consumer_task = None

        deadline = time.monotonic() + grace
        ticks = [t for t in self._tick_tasks if not t.done()]
        if ticks:
            done, pending = await asyncio.wait(ticks, timeout=grace)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(f"Cancelled {len(pending)} tick(s) still running after {grace}s")
                await asyncio.gather(*pending, return_exceptions=True)

        await self.dispatcher.shutdown(max(0.0, deadline - time.monotonic()))
        logger.info("Scheduler stopped")

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_tick_at": self.last_tick_at,
            "ticks_completed": self.ticks_completed,
            "active_ticks": self._active_ticks,
            "pending_delayed": self.dispatcher.pending_delayed,
            "in_flight_actions": self.dispatcher.in_flight,
        }
