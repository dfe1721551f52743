"""
Persistence for aire

History and audit storage for alerts, notifications, incidents, action
executions and snapshots.
"""

from .base import RecordKind, StoreBackend
from .manager import HistoryStore
from .memory import MemoryStore
from .redis_store import RedisStore

__all__ = [
    "HistoryStore",
    "MemoryStore",
    "RecordKind",
    "RedisStore",
    "StoreBackend",
]
