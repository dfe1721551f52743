"""
Playbook matching and action applicability
"""

from typing import Iterable, Optional

from ..models import Alert, Playbook, ResponseAction


def matching_playbooks(playbooks: Iterable[Playbook], alert: Alert) -> list[Playbook]:
    """Enabled playbooks whose triggers match the alert, highest priority first"""
    matches = [p for p in playbooks if p.matches(alert)]
    # sorted() is stable, so configuration order breaks priority ties
    return sorted(matches, key=lambda p: p.priority_rank, reverse=True)


def select_playbook(playbooks: Iterable[Playbook], alert: Alert) -> Optional[Playbook]:
    matches = matching_playbooks(playbooks, alert)
    return matches[0] if matches else None


def action_applicable(
    action: ResponseAction, severity: str, category: Optional[str]
) -> bool:
    """Severity and category conditions; an unset condition always passes"""
    conditions = action.conditions
    if conditions.severity is not None and severity not in conditions.severity:
        return False
    if (
        conditions.category is not None
        and category is not None
        and category not in conditions.category
    ):
        return False
    return True
