"""
Rule engine

Evaluates threshold rules against snapshots. The engine only returns
trigger intents; creating, persisting and notifying alerts belongs to the
caller.
"""

import logging
import operator
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .models import (
    Alert,
    AlertRule,
    NotificationConfig,
    Snapshot,
    TriggerIntent,
    utcnow,
)

logger = logging.getLogger(__name__)

COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
}


def rule_fingerprint(rule_id: str) -> str:
    """Dedup key shared by every alert a rule produces"""
    return f"rule:{rule_id}"


def condition_holds(rule: AlertRule, value: float) -> bool:
    return COMPARATORS[rule.condition](value, rule.threshold)


class RuleEngine:
    """
    Stateless evaluation plus per-rule cooldown tracking

    Cooldown runs from the rule's own last firing and is independent of
    whether the resulting alert is still active.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._last_fired: dict[str, datetime] = {}

    def evaluate(
        self, snapshot: Snapshot, rules: Iterable[AlertRule]
    ) -> list[TriggerIntent]:
        """Return one intent per enabled rule that breaches and is out of cooldown"""
        now = self._clock()
        intents = []

        for rule in rules:
            if not rule.enabled:
                continue

            value = snapshot.get_metric(rule.metric)
            if value is None:
                logger.debug(f"Rule {rule.id}: metric {rule.metric} unavailable")
                continue
            if not condition_holds(rule, value):
                continue
            if self.in_cooldown(rule, now):
                logger.debug(f"Rule {rule.id} breached but still in cooldown")
                continue

            self._last_fired[rule.id] = now
            intents.append(
                TriggerIntent(
                    rule_id=rule.id,
                    value=value,
                    severity=rule.severity,
                    threshold=rule.threshold,
                    timestamp=now,
                )
            )
            if rule.actions.log:
                logger.warning(
                    f"Rule {rule.id} triggered: {rule.metric}={value} "
                    f"{rule.condition} {rule.threshold} ({rule.severity})"
                )

        return intents

    def cleared(self, snapshot: Snapshot, rules: Iterable[AlertRule]) -> list[str]:
        """Ids of rules whose metric is readable and whose condition no longer holds"""
        result = []
        for rule in rules:
            value = snapshot.get_metric(rule.metric)
            if value is not None and not condition_holds(rule, value):
                result.append(rule.id)
        return result

    def in_cooldown(self, rule: AlertRule, now: Optional[datetime] = None) -> bool:
        last = self._last_fired.get(rule.id)
        if last is None:
            return False
        now = now or self._clock()
        return now - last < timedelta(minutes=rule.cooldown_minutes)

    def last_fired(self, rule_id: str) -> Optional[datetime]:
        return self._last_fired.get(rule_id)

    def forget(self, keep: Iterable[str]) -> None:
        """Drop cooldown state for rules no longer configured"""
        keep = set(keep)
        for rule_id in list(self._last_fired):
            if rule_id not in keep:
                del self._last_fired[rule_id]


def build_alert(rule: AlertRule, intent: TriggerIntent) -> Alert:
    """Candidate alert for a rule firing"""
    title = f"{rule.name or rule.id} Alert"
    return Alert(
        fingerprint=rule_fingerprint(rule.id),
        type=rule.type,
        severity=intent.severity,
        title=title,
        message=(
            f"{rule.name or rule.id}: {rule.metric} is {intent.value:g} "
            f"({rule.condition} {rule.threshold:g})"
        ),
        threshold=intent.threshold,
        current_value=intent.value,
        timestamp=intent.timestamp,
        metadata={"rule_id": rule.id, "rule_name": rule.name, "metric": rule.metric},
    )


def rule_targets(rule: AlertRule) -> list[NotificationConfig]:
    """Ad-hoc delivery targets declared on the rule itself"""
    targets = []
    if rule.actions.webhook:
        targets.append(
            NotificationConfig(
                channel="webhook",
                endpoint=rule.actions.webhook,
                name=f"{rule.id}-webhook",
                severity_filter=["low", "medium", "high", "critical"],
            )
        )
    if rule.actions.slack:
        targets.append(
            NotificationConfig(
                channel="slack",
                endpoint=rule.actions.slack,
                name=f"{rule.id}-slack",
                severity_filter=["low", "medium", "high", "critical"],
            )
        )
    for address in rule.actions.email:
        targets.append(
            NotificationConfig(
                channel="email",
                endpoint=address,
                name=f"{rule.id}-email-{address}",
                severity_filter=["low", "medium", "high", "critical"],
            )
        )
    return targets
