"""
Alert lifecycle manager

Owns the active-alert table: deduplicates candidates by fingerprint,
resolves and escalates alerts, and hands new or resolved alerts to the
notification dispatcher and the incident manager. Persistence is
best-effort; the in-memory table is authoritative.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from .models import (
    Alert,
    AlertRule,
    HealthStatus,
    NotificationConfig,
    ResolutionType,
    Severity,
    severity_rank,
    utcnow,
)
from .notifications.dispatcher import NotificationDispatcher
from .observability.tracer import trace_operation
from .rules import rule_targets
from .store.base import RecordKind
from .store.manager import HistoryStore

if TYPE_CHECKING:
    from .incidents.manager import IncidentManager
    from .observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

INCIDENT_SEVERITIES = ("high", "critical")


class AlertManager:
    """
    Active-alert table keyed by fingerprint

    Resolved alerts stay in the id index until the retention cleanup drops
    them from memory; the store keeps their history.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        store: Optional[HistoryStore] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dispatcher = dispatcher
        self.store = store
        self.metrics = metrics
        self.incidents: Optional["IncidentManager"] = None
        self._clock = clock

        self._active: dict[str, Alert] = {}
        self._alerts: dict[str, Alert] = {}
        self._rule_targets: dict[str, list[NotificationConfig]] = {}
        self._lock = asyncio.Lock()

    def attach_incident_manager(self, incidents: "IncidentManager") -> None:
        self.incidents = incidents

    def set_rules(self, rules: Iterable[AlertRule]) -> None:
        """Index per-rule delivery targets (rule-level webhook/slack/email actions)"""
        self._rule_targets = {rule.id: rule_targets(rule) for rule in rules}

    async def process(self, candidate: Alert) -> Alert:
        """
        Insert a new alert or update the active alert sharing its fingerprint

        A candidate flagged as resolved resolves the matching active alert.
        Repeated candidates for an unresolved fingerprint only refresh the
        observed value, never create a second alert or notification.
        """
        if candidate.resolved:
            existing = self._active.get(candidate.fingerprint)
            if existing is not None:
                await self.resolve(existing.id)
                return self._alerts[existing.id].model_copy(deep=True)
            return candidate

        with trace_operation(
            "alerts.process",
            {"alert.fingerprint": candidate.fingerprint, "alert.severity": candidate.severity},
        ) as span:
            async with self._lock:
                existing = self._active.get(candidate.fingerprint)
                if existing is not None:
                    existing.current_value = candidate.current_value
                    existing.message = candidate.message or existing.message
                    existing.updated_at = self._clock()
                    alert, is_new = existing, False
                else:
                    alert = candidate.model_copy(deep=True)
                    self._active[alert.fingerprint] = alert
                    self._alerts[alert.id] = alert
                    is_new = True
                snapshot = alert.model_copy(deep=True)
            span.set_attribute("alert.new", is_new)

        await self._persist(snapshot)
        if not is_new:
            logger.debug(f"Alert {snapshot.id} updated (value={snapshot.current_value})")
            return snapshot

        logger.warning(
            f"Alert triggered: {snapshot.title} [{snapshot.severity}] id={snapshot.id}"
        )
        if self.metrics:
            self.metrics.record_alert_triggered(
                snapshot.type, snapshot.severity, snapshot.rule_id or "manual"
            )
            self.metrics.set_active_alerts(len(self._active))

        extra = self._rule_targets.get(snapshot.rule_id or "", [])
        await self.dispatcher.enqueue(snapshot, kind="alert", extra_configs=extra)

        if self.incidents is not None and snapshot.severity in INCIDENT_SEVERITIES:
            await self.incidents.on_alert(snapshot)
        return snapshot

    async def resolve(
        self,
        alert_id: str,
        resolution_type: ResolutionType = "automatic",
        reason: Optional[str] = None,
    ) -> bool:
        """
        Mark an alert resolved

        Returns:
            False when the alert is unknown or already resolved
        """
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return False
            now = self._clock()
            alert.resolved = True
            alert.resolved_at = now
            alert.updated_at = now
            if reason:
                alert.metadata["resolution_reason"] = reason
            alert.metadata["resolution_type"] = resolution_type
            if self._active.get(alert.fingerprint) is alert:
                del self._active[alert.fingerprint]
            snapshot = alert.model_copy(deep=True)

        logger.info(f"Alert resolved: {snapshot.title} id={snapshot.id} ({resolution_type})")
        if self.store:
            await self.store.mark_alert_resolved(snapshot)
        if self.metrics:
            self.metrics.record_alert_resolved(
                snapshot.type, snapshot.severity, resolution_type
            )
            self.metrics.set_active_alerts(len(self._active))

        await self.dispatcher.enqueue(snapshot, kind="resolution")
        if self.incidents is not None:
            await self.incidents.on_alert_resolved(snapshot)
        return True

    async def resolve_fingerprint(self, fingerprint: str) -> bool:
        alert = self._active.get(fingerprint)
        if alert is None:
            return False
        return await self.resolve(alert.id)

    async def escalate_severity(self, alert_id: str, severity: Severity) -> Optional[Alert]:
        """
        Raise an active alert's severity in place

        Lowering is ignored. No new-alert notifications are sent.
        """
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.resolved:
                return None
            if severity_rank(severity) <= severity_rank(alert.severity):
                return None
            previous = alert.severity
            alert.severity = severity
            alert.updated_at = self._clock()
            alert.metadata.setdefault("escalated_from", []).append(previous)
            snapshot = alert.model_copy(deep=True)

        logger.warning(f"Alert {alert_id} escalated {previous} -> {severity}")
        await self._persist(snapshot)
        if self.metrics:
            self.metrics.record_alert_escalated(snapshot.rule_id or "manual", previous, severity)
        return snapshot

    async def _persist(self, alert: Alert) -> None:
        if self.store:
            await self.store.save_alert(alert)

    def get_active_alerts(self) -> list[Alert]:
        """Consistent copies of every unresolved alert"""
        return [a.model_copy(deep=True) for a in self._active.values()]

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        alert = self._alerts.get(alert_id)
        return alert.model_copy(deep=True) if alert else None

    def system_status(self) -> HealthStatus:
        """unhealthy on any critical alert, degraded on any high or medium alert"""
        severities = {a.severity for a in self._active.values()}
        if "critical" in severities:
            return "unhealthy"
        if severities & {"high", "medium"}:
            return "degraded"
        return "healthy"

    def get_system_status(self) -> dict[str, Any]:
        active = self.get_active_alerts()
        return {
            "status": self.system_status(),
            "active_alerts": len(active),
            "critical_alerts": sum(1 for a in active if a.severity == "critical"),
            "alerts": [a.to_payload() for a in active],
            "timestamp": self._clock().isoformat(),
        }

    async def get_alert_stats(self) -> dict[str, Any]:
        """Alert counts and mean resolution time over the last 24 hours"""
        now = self._clock()
        since = now - timedelta(hours=24)
        if self.store:
            records = [
                Alert.from_dict(r) for r in await self.store.query(RecordKind.ALERT, since=since)
            ]
        else:
            records = [a for a in self._alerts.values() if a.timestamp >= since]

        by_severity: dict[str, int] = {}
        by_type: dict[str, int] = {}
        for alert in records:
            by_severity[alert.severity] = by_severity.get(alert.severity, 0) + 1
            by_type[alert.type] = by_type.get(alert.type, 0) + 1

        resolved = [a for a in records if a.resolved and a.resolved_at is not None]
        avg_resolution = (
            sum((a.resolved_at - a.timestamp).total_seconds() for a in resolved) / len(resolved)
            / 60
            if resolved
            else 0.0
        )
        return {
            "total_active": len(self._active),
            "total_24h": len(records),
            "resolved_24h": len(resolved),
            "by_severity": by_severity,
            "by_type": by_type,
            "avg_resolution_minutes": round(avg_resolution, 2),
        }

    async def cleanup(self, retention: timedelta) -> int:
        """Drop resolved alerts older than the retention window from memory"""
        cutoff = self._clock() - retention
        async with self._lock:
            stale = [
                aid
                for aid, a in self._alerts.items()
                if a.resolved and a.resolved_at is not None and a.resolved_at < cutoff
            ]
            for aid in stale:
                del self._alerts[aid]
        if stale:
            logger.info(f"Dropped {len(stale)} resolved alerts from memory")
        return len(stale)
