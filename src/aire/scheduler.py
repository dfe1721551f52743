"""
Periodic background tasks
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs a coroutine function every ``interval`` seconds

    A failing tick is logged and the loop carries on with the next one.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ):
        if interval <= 0:
            raise ValueError(f"Interval for task '{name}' must be positive")
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self.ticks = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.debug(f"Started periodic task '{self.name}' every {self.interval}s")

    async def _wait(self) -> bool:
        """Sleep one interval; True once stop has been requested"""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        if not self.run_immediately and await self._wait():
            return
        while not self._stopping.is_set():
            await self.run_once()
            if await self._wait():
                return

    async def run_once(self) -> None:
        self.ticks += 1
        try:
            await self.func()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception(f"Periodic task '{self.name}' failed")

    async def stop(self) -> None:
        """Stop scheduling ticks; a tick already running is allowed to finish"""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.debug(f"Stopped periodic task '{self.name}'")
