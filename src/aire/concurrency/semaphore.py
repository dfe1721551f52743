"""
Async semaphores bounding concurrent remediation and probe work
"""

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class SemaphoreStats:
    """Statistics for semaphore usage"""

    name: str
    capacity: int
    in_use: int
    total_acquisitions: int
    total_timeouts: int
    average_hold_time: float
    max_hold_time: float

    @property
    def utilization(self) -> float:
        """Current utilization as percentage"""
        if self.capacity == 0:
            return 100.0
        return (self.in_use / self.capacity) * 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capacity": self.capacity,
            "in_use": self.in_use,
            "utilization_percent": self.utilization,
            "total_acquisitions": self.total_acquisitions,
            "total_timeouts": self.total_timeouts,
            "average_hold_time": self.average_hold_time,
            "max_hold_time": self.max_hold_time,
        }


class AsyncSemaphore:
    """
    asyncio.Semaphore with acquisition timeouts and hold-time statistics

    Waiters are served FIFO, so playbooks start in the order they were
    requested.
    """

    def __init__(self, value: int, name: str = "unnamed"):
        if value < 0:
            raise ValueError("Semaphore value must be non-negative")

        self.name = name
        self.capacity = value
        self._semaphore = asyncio.Semaphore(value)

        self._in_use = 0
        self._total_acquisitions = 0
        self._total_timeouts = 0
        self._hold_times: deque[float] = deque(maxlen=1000)
        self._max_hold_time = 0.0

    @asynccontextmanager
    async def acquire(self, timeout: Optional[float] = None):
        """
        Acquire semaphore with optional timeout

        Raises:
            asyncio.TimeoutError: If timeout is exceeded
        """
        try:
            if timeout is not None:
                await asyncio.wait_for(self._semaphore.acquire(), timeout=timeout)
            else:
                await self._semaphore.acquire()
        except asyncio.TimeoutError:
            self._total_timeouts += 1
            logger.warning(
                f"Semaphore '{self.name}' acquisition timeout after {timeout}s"
            )
            raise

        acquired_at = time.monotonic()
        self._in_use += 1
        self._total_acquisitions += 1
        try:
            yield
        finally:
            hold_time = time.monotonic() - acquired_at
            self._hold_times.append(hold_time)
            self._max_hold_time = max(self._max_hold_time, hold_time)
            self._in_use -= 1
            self._semaphore.release()

    def locked(self) -> bool:
        """Check if semaphore is at capacity"""
        return self._semaphore.locked()

    def get_stats(self) -> SemaphoreStats:
        avg_hold_time = (
            sum(self._hold_times) / len(self._hold_times) if self._hold_times else 0.0
        )
        return SemaphoreStats(
            name=self.name,
            capacity=self.capacity,
            in_use=self._in_use,
            total_acquisitions=self._total_acquisitions,
            total_timeouts=self._total_timeouts,
            average_hold_time=avg_hold_time,
            max_hold_time=self._max_hold_time,
        )


class SemaphoreManager:
    """Named semaphores owned by one engine instance"""

    def __init__(self, default_capacities: Optional[dict[str, int]] = None):
        self._semaphores: dict[str, AsyncSemaphore] = {}
        self._default_capacities = {
            "playbooks": 5,
            "verification_probes": 10,
        }
        if default_capacities:
            self._default_capacities.update(default_capacities)

    def get_semaphore(
        self, name: str, capacity: Optional[int] = None
    ) -> AsyncSemaphore:
        """Get or create a named semaphore"""
        if name not in self._semaphores:
            if capacity is None:
                capacity = self._default_capacities.get(name, 10)

            self._semaphores[name] = AsyncSemaphore(capacity, name)
            logger.info(f"Created semaphore '{name}' with capacity {capacity}")

        return self._semaphores[name]

    def list_semaphores(self) -> dict[str, SemaphoreStats]:
        return {
            name: semaphore.get_stats() for name, semaphore in self._semaphores.items()
        }
