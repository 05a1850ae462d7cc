"""
Clock and periodic scheduling primitives.

Everything that needs "now" or has to sleep takes a Clock so tests can
swap in a fake one and step time deterministically.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class Clock:
    """Wall clock, monotonic clock and awaitable sleep."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)


class PeriodicTask:
    """
    Runs an async callback every `interval_seconds` until stopped.

    Exceptions raised by the callback are logged and the schedule keeps
    going; one bad tick must not take the loop down.
    """

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval_seconds: float,
        clock: Optional[Clock] = None,
        run_immediately: bool = False,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0 (got {interval_seconds})")
        self.name = name
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._callback = callback
        self._clock = clock or Clock()
        self._task: Optional[asyncio.Task] = None
        self._active = False
        self._in_tick = False
        self._run_id = 0
        self.ticks = 0
        self.failures = 0

    @property
    def is_active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Schedule the loop on the running event loop. No-op if already active."""
        if self._active:
            logger.debug(f"{self.name}: already running")
            return
        self._active = True
        self._run_id += 1
        self._task = asyncio.get_running_loop().create_task(self._run(self._run_id), name=self.name)
        logger.info(f"{self.name}: started (every {self.interval_seconds:.1f}s)")

    def stop(self) -> None:
        """
        Flip the active flag and cancel the pending timer.

        A tick that is already running is left to finish; the loop exits
        once it returns. Only the sleep between ticks is cancelled.
        """
        if not self._active and self._task is None:
            return
        self._active = False
        if self._task is not None and not self._task.done() and not self._in_tick:
            self._task.cancel()
        logger.info(f"{self.name}: stopped after {self.ticks} ticks")

    async def wait_stopped(self) -> None:
        """Wait for the loop task to finish, including any tick in flight."""
        task, self._task = self._task, None
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run_once(self) -> None:
        """Run a single tick now, with the same error isolation as the loop."""
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            logger.error(f"{self.name}: tick failed: {exc}", exc_info=True)
        finally:
            self.ticks += 1

    def _current(self, run_id: int) -> bool:
        return self._active and run_id == self._run_id

    async def _run(self, run_id: int) -> None:
        first = True
        while self._current(run_id):
            if not (first and self.run_immediately):
                await self._clock.sleep(self.interval_seconds)
            first = False
            if not self._current(run_id):
                break
            self._in_tick = True
            try:
                await self.run_once()
            finally:
                self._in_tick = False
