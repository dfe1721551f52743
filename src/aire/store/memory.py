"""
In-memory store implementation

Bounded per-kind history for development, tests and single-process use.
"""

import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Optional

from .base import RecordKind, StoreBackend


class MemoryStore(StoreBackend):
    """
    Thread-safe in-memory store

    Each kind holds at most ``max_records`` entries; the oldest entry is
    evicted first.
    """

    def __init__(self, max_records: int = 10000):
        self.max_records = max_records
        self._records: dict[RecordKind, OrderedDict[str, tuple[datetime, dict[str, Any]]]] = {
            kind: OrderedDict() for kind in RecordKind
        }
        self._lock = threading.RLock()
        self._stats = {"appends": 0, "updates": 0, "evictions": 0, "purged": 0}

    async def append(
        self,
        kind: RecordKind,
        record_id: str,
        record: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        with self._lock:
            table = self._records[kind]
            if record_id in table:
                # Replacing keeps the original index time
                timestamp = table[record_id][0]
            table[record_id] = (timestamp, dict(record))

            while len(table) > self.max_records:
                table.popitem(last=False)
                self._stats["evictions"] += 1

            self._stats["appends"] += 1

    async def update(
        self, kind: RecordKind, record_id: str, fields: dict[str, Any]
    ) -> bool:
        with self._lock:
            entry = self._records[kind].get(record_id)
            if entry is None:
                return False
            entry[1].update(fields)
            self._stats["updates"] += 1
            return True

    async def get(self, kind: RecordKind, record_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            entry = self._records[kind].get(record_id)
            return dict(entry[1]) if entry else None

    async def query(
        self,
        kind: RecordKind,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            entries = sorted(self._records[kind].values(), key=lambda e: e[0])
        if since is not None:
            entries = [e for e in entries if e[0] >= since]
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return [dict(record) for _, record in entries]

    async def purge(self, kind: RecordKind, before: datetime) -> int:
        with self._lock:
            table = self._records[kind]
            stale = [rid for rid, (ts, _) in table.items() if ts < before]
            for record_id in stale:
                del table[record_id]
            self._stats["purged"] += len(stale)
        return len(stale)

    async def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._stats,
                "counts": {kind.value: len(t) for kind, t in self._records.items()},
                "max_records": self.max_records,
            }
