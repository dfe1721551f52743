"""
Per-key rate limiting for notification channels and response actions

Both limiters check and reserve in one step under a lock, so two concurrent
callers can never both observe a key as under its limit.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..models import RateLimitPolicy, utcnow

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600
BURST_WINDOW_SECONDS = 300


@dataclass
class ChannelWindow:
    """Counters for one channel endpoint"""

    hour_bucket: int
    hour_count: int = 0
    burst_bucket: int = 0
    burst_count: int = 0


class ChannelRateLimiter:
    """
    Calendar-hour plus 5-minute burst limiter keyed by channel endpoint

    The hourly counter resets when the wall-clock hour rolls over, the burst
    counter when the wall-clock 5-minute window rolls over.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._windows: dict[str, ChannelWindow] = {}
        self._lock = threading.Lock()

    def try_acquire(self, key: str, policy: RateLimitPolicy) -> Optional[str]:
        """
        Reserve one delivery slot for a key

        Returns:
            None when the slot was reserved, otherwise the exhausted limit
            (``"hourly"`` or ``"burst"``)
        """
        epoch = self._clock().timestamp()
        hour_bucket = int(epoch // HOUR_SECONDS)
        burst_bucket = int(epoch // BURST_WINDOW_SECONDS)

        with self._lock:
            window = self._windows.get(key)
            if window is None or window.hour_bucket != hour_bucket:
                window = ChannelWindow(hour_bucket=hour_bucket, burst_bucket=burst_bucket)
                self._windows[key] = window
            if window.burst_bucket != burst_bucket:
                window.burst_bucket = burst_bucket
                window.burst_count = 0

            if window.hour_count >= policy.max_per_hour:
                return "hourly"
            if window.burst_count >= policy.burst_limit:
                return "burst"

            window.hour_count += 1
            window.burst_count += 1
            return None

    def usage(self, key: str) -> dict[str, int]:
        with self._lock:
            window = self._windows.get(key)
            if window is None:
                return {"hour_count": 0, "burst_count": 0}
            return {"hour_count": window.hour_count, "burst_count": window.burst_count}

    def prune(self) -> int:
        """Drop windows from previous hours"""
        current = int(self._clock().timestamp() // HOUR_SECONDS)
        with self._lock:
            stale = [k for k, w in self._windows.items() if w.hour_bucket != current]
            for key in stale:
                del self._windows[key]
        return len(stale)


class ActionRateLimiter:
    """
    Trailing-hour execution cap plus cooldown, keyed by action id

    A reservation is recorded as an execution at acquire time; skipped
    actions never reach this limiter and therefore never count.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._executions: dict[str, deque[datetime]] = {}
        # Kept separately so cooldowns longer than the hourly window survive pruning
        self._last: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def try_acquire(
        self, action_id: str, max_per_hour: int, cooldown_minutes: float
    ) -> Optional[str]:
        """
        Reserve one execution of an action

        Returns:
            None when reserved, otherwise ``"rate_limited"`` or ``"cooldown"``
        """
        now = self._clock()
        horizon = now - timedelta(hours=1)

        with self._lock:
            history = self._executions.setdefault(action_id, deque())
            while history and history[0] <= horizon:
                history.popleft()

            if len(history) >= max_per_hour:
                return "rate_limited"
            last = self._last.get(action_id)
            if last is not None and now < last + timedelta(minutes=cooldown_minutes):
                return "cooldown"

            history.append(now)
            self._last[action_id] = now
            return None

    def record(self, action_id: str, when: Optional[datetime] = None) -> None:
        """Record an execution that happened outside try_acquire (e.g. seeded history)"""
        when = when or self._clock()
        with self._lock:
            history = self._executions.setdefault(action_id, deque())
            history.append(when)
            last = self._last.get(action_id)
            if last is None or when > last:
                self._last[action_id] = when

    def executions_in_last_hour(self, action_id: str) -> int:
        horizon = self._clock() - timedelta(hours=1)
        with self._lock:
            return sum(1 for t in self._executions.get(action_id, ()) if t > horizon)

    def last_execution(self, action_id: str) -> Optional[datetime]:
        with self._lock:
            return self._last.get(action_id)

    def prune(self, retention: timedelta = timedelta(hours=24)) -> int:
        """Drop hourly history outside the window and cooldown marks older than retention"""
        now = self._clock()
        horizon = now - timedelta(hours=1)
        removed = 0
        with self._lock:
            for action_id in list(self._executions):
                history = self._executions[action_id]
                while history and history[0] <= horizon:
                    history.popleft()
                    removed += 1
                if not history:
                    del self._executions[action_id]
            for action_id, last in list(self._last.items()):
                if last < now - retention:
                    del self._last[action_id]
        return removed

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {action_id: len(h) for action_id, h in self._executions.items()}
