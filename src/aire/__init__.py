"""
aire - automated incident response engine

Turns sampled health measurements into alerts, routes them to notification
channels under rate control, escalates unresolved alerts, and opens and
resolves incidents while running guarded remediation playbooks.
"""

__version__ = "0.1.0"

# Core API exports
from .config import AireConfig
from .engine import ResponseEngine
from .models import Alert, Incident, Snapshot

__all__ = [
    "AireConfig",
    "Alert",
    "Incident",
    "ResponseEngine",
    "Snapshot",
    "__version__",
]
