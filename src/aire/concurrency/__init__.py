"""
Concurrency control for aire

Semaphores bounding concurrent playbook execution and atomic per-key rate
limiters for notification channels and response actions.
"""

from .rate_limiter import ActionRateLimiter, ChannelRateLimiter
from .semaphore import AsyncSemaphore, SemaphoreManager, SemaphoreStats

__all__ = [
    "ActionRateLimiter",
    "AsyncSemaphore",
    "ChannelRateLimiter",
    "SemaphoreManager",
    "SemaphoreStats",
]
