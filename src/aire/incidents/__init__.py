"""
Incident management and automated remediation
"""

from .executor import ActionExecutor, expectation_met, render_body
from .manager import IncidentManager
from .playbooks import action_applicable, matching_playbooks, select_playbook

__all__ = [
    "ActionExecutor",
    "IncidentManager",
    "action_applicable",
    "expectation_met",
    "matching_playbooks",
    "render_body",
    "select_playbook",
]
