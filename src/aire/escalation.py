"""
Escalation checker

Scans active alerts against escalation rules on a fixed interval. Each rule
acts at most once per alert, and an alert moves at most one severity step
per pass, so repeated passes over unchanged state are no-ops.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from .alerts import AlertManager
from .models import Alert, EscalationRule, next_severity, utcnow
from .notifications.dispatcher import NotificationDispatcher
from .observability.tracer import trace_operation

if TYPE_CHECKING:
    from .incidents.manager import IncidentManager

logger = logging.getLogger(__name__)


class EscalationChecker:
    def __init__(
        self,
        rules: Iterable[EscalationRule],
        alerts: AlertManager,
        dispatcher: NotificationDispatcher,
        incidents: Optional["IncidentManager"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rules = list(rules)
        self.alerts = alerts
        self.dispatcher = dispatcher
        self.incidents = incidents
        self._clock = clock
        # (alert_id, rule_id) pairs that have already acted
        self._applied: set[tuple[str, str]] = set()

    def update_rules(self, rules: Iterable[EscalationRule]) -> None:
        self.rules = list(rules)

    def has_escalated(self, alert_id: str, rule_id: str) -> bool:
        return (alert_id, rule_id) in self._applied

    async def check(self) -> list[str]:
        """
        Run one escalation pass

        Returns:
            Ids of alerts escalated in this pass
        """
        now = self._clock()
        escalated = []

        with trace_operation("escalation.check") as span:
            for alert in self.alerts.get_active_alerts():
                age_minutes = (now - alert.timestamp).total_seconds() / 60
                for rule in self.rules:
                    if self.has_escalated(alert.id, rule.id):
                        continue
                    if not rule.matches(alert, age_minutes):
                        continue
                    await self._apply(rule, alert, age_minutes)
                    escalated.append(alert.id)
                    # One step per alert per pass
                    break
            span.set_attribute("escalation.count", len(escalated))

        active_ids = {a.id for a in self.alerts.get_active_alerts()}
        self._applied = {pair for pair in self._applied if pair[0] in active_ids}
        return escalated

    async def _apply(self, rule: EscalationRule, alert: Alert, age_minutes: float) -> None:
        self._applied.add((alert.id, rule.id))
        logger.warning(
            f"Escalating alert {alert.id} via rule {rule.id} "
            f"(unresolved {age_minutes:.1f} min, severity {alert.severity})"
        )

        current = alert
        if rule.actions.increase_severity:
            raised = await self.alerts.escalate_severity(alert.id, next_severity(alert.severity))
            if raised is not None:
                current = raised

        if rule.actions.escalate_to:
            await self.dispatcher.enqueue(
                current, kind="escalation", channels=rule.actions.escalate_to
            )

        if (
            rule.actions.create_incident
            and current.severity == "critical"
            and self.incidents is not None
        ):
            await self.incidents.open_incident(current, trigger="escalation")
