"""
History store facade

Best-effort persistence used by the alert and incident services. Writes
never raise: failures are logged, counted and mirrored to an optional
fallback backend, and in-memory service state stays authoritative.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from ..models import ActionExecution, Alert, AlertNotification, Incident, Snapshot, new_id
from .base import RecordKind, StoreBackend
from .memory import MemoryStore
from .redis_store import RedisStore

if TYPE_CHECKING:
    from ..config import StorageConfig
    from ..observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Best-effort persistence facade over a primary and optional fallback backend
    """

    def __init__(
        self,
        primary: StoreBackend,
        fallback: Optional[StoreBackend] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self.metrics = metrics
        self.stats = {"writes": 0, "write_errors": 0, "read_errors": 0, "fallback_uses": 0}

    @classmethod
    def from_config(
        cls,
        config: "StorageConfig",
        metrics: Optional["MetricsCollector"] = None,
    ) -> "HistoryStore":
        """Build the configured backend; Redis gets an in-memory fallback"""
        if config.backend == "redis":
            primary: StoreBackend = RedisStore(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                key_prefix=config.key_prefix,
                max_records=config.max_records_per_kind,
            )
            fallback: Optional[StoreBackend] = MemoryStore(config.max_records_per_kind)
        else:
            primary = MemoryStore(config.max_records_per_kind)
            fallback = None
        return cls(primary, fallback, metrics)

    def _record_error(self, kind: RecordKind, operation: str, error: Exception) -> None:
        self.stats["write_errors"] += 1
        logger.error(f"Store {operation} failed for {kind.value}: {error}")
        if self.metrics:
            self.metrics.record_store_error(kind.value, operation)

    async def _append(
        self,
        kind: RecordKind,
        record_id: str,
        record: dict[str, Any],
        timestamp: datetime,
    ) -> bool:
        self.stats["writes"] += 1
        try:
            await self.primary.append(kind, record_id, record, timestamp)
            return True
        except Exception as e:
            self._record_error(kind, "append", e)

        if self.fallback:
            try:
                await self.fallback.append(kind, record_id, record, timestamp)
                self.stats["fallback_uses"] += 1
            except Exception as e:
                logger.error(f"Fallback store append failed for {kind.value}: {e}")
        return False

    async def save_alert(self, alert: Alert) -> bool:
        return await self._append(RecordKind.ALERT, alert.id, alert.to_dict(), alert.timestamp)

    async def update(self, kind: RecordKind, record_id: str, fields: dict[str, Any]) -> bool:
        """Merge fields into a stored record; False when it is missing or the write failed"""
        self.stats["writes"] += 1
        try:
            return await self.primary.update(kind, record_id, fields)
        except Exception as e:
            self._record_error(kind, "update", e)

        if self.fallback:
            try:
                updated = await self.fallback.update(kind, record_id, fields)
                self.stats["fallback_uses"] += 1
                return updated
            except Exception as e:
                logger.error(f"Fallback store update failed for {kind.value}: {e}")
        return False

    async def mark_alert_resolved(self, alert: Alert) -> bool:
        """Record the resolution fields on a stored alert, appending it when absent"""
        record = alert.to_dict()
        fields = {key: record[key] for key in ("resolved", "resolved_at", "updated_at", "metadata")}
        if await self.update(RecordKind.ALERT, alert.id, fields):
            return True
        return await self.save_alert(alert)

    async def save_notification(self, notification: AlertNotification) -> bool:
        return await self._append(
            RecordKind.NOTIFICATION,
            notification.id,
            notification.to_dict(),
            notification.created_at,
        )

    async def save_incident(self, incident: Incident) -> bool:
        return await self._append(
            RecordKind.INCIDENT, incident.id, incident.to_dict(), incident.created_at
        )

    async def save_execution(self, execution: ActionExecution) -> bool:
        return await self._append(
            RecordKind.ACTION_EXECUTION,
            execution.id,
            execution.to_dict(),
            execution.start_time,
        )

    async def save_snapshot(self, snapshot: Snapshot) -> bool:
        return await self._append(
            RecordKind.SNAPSHOT, new_id("snap"), snapshot.to_dict(), snapshot.timestamp
        )

    async def query(
        self,
        kind: RecordKind,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Read history for reporting; unreadable stores yield an empty list"""
        try:
            return await self.primary.query(kind, since=since, limit=limit)
        except Exception as e:
            self.stats["read_errors"] += 1
            logger.error(f"Store query failed for {kind.value}: {e}")

        if self.fallback:
            try:
                return await self.fallback.query(kind, since=since, limit=limit)
            except Exception as e:
                logger.error(f"Fallback store query failed for {kind.value}: {e}")
        return []

    async def get(self, kind: RecordKind, record_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self.primary.get(kind, record_id)
        except Exception as e:
            self.stats["read_errors"] += 1
            logger.error(f"Store get failed for {kind.value}/{record_id}: {e}")
            return None

    async def purge(self, kind: RecordKind, before: datetime) -> int:
        total = 0
        for backend in filter(None, (self.primary, self.fallback)):
            try:
                total += await backend.purge(kind, before)
            except Exception as e:
                self._record_error(kind, "purge", e)
        return total

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "manager_stats": self.stats.copy(),
            "primary_backend": type(self.primary).__name__,
        }
        try:
            stats["primary_stats"] = await self.primary.get_stats()
            if self.fallback:
                stats["fallback_backend"] = type(self.fallback).__name__
                stats["fallback_stats"] = await self.fallback.get_stats()
        except Exception as e:
            logger.error(f"Error getting store stats: {e}")
            stats["error"] = str(e)
        return stats

    async def close(self) -> None:
        for backend in filter(None, (self.primary, self.fallback)):
            try:
                await backend.close()
            except Exception as e:
                logger.warning(f"Error closing {type(backend).__name__}: {e}")
