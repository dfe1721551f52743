"""
Pytest configuration and shared fixtures for aire tests

Provides a controllable clock, snapshot and alert factories, mock
transports and pre-wired services.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from aire.alerts import AlertManager
from aire.concurrency import ActionRateLimiter, ChannelRateLimiter
from aire.config import IncidentSettings, NotificationSettings
from aire.incidents import ActionExecutor, IncidentManager
from aire.models import (
    ActionExecutionResult,
    Alert,
    NotificationConfig,
    Playbook,
    ResponseAction,
    Snapshot,
    VerificationResult,
)
from aire.notifications import NotificationDispatcher
from aire.store import HistoryStore, MemoryStore


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """Clock parked at the start of a 5-minute and hourly window"""
    return FakeClock(datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_snapshot(clock):
    """Factory building snapshots from section overrides"""

    def _make(**sections) -> Snapshot:
        data = {"timestamp": clock()}
        data.update(sections)
        return Snapshot.model_validate(data)

    return _make


@pytest.fixture
def make_alert(clock):
    """Factory for alerts created at the current fake time"""

    def _make(**fields) -> Alert:
        data = {
            "type": "cpu",
            "severity": "high",
            "title": "High CPU Usage Alert",
            "message": "cpu.usage is 85",
            "threshold": 80,
            "current_value": 85,
            "timestamp": clock(),
        }
        data.update(fields)
        return Alert(**data)

    return _make


@pytest.fixture
def store():
    return HistoryStore(MemoryStore(max_records=1000))


@pytest.fixture
def webhook_channel():
    return NotificationConfig(
        channel="webhook",
        endpoint="http://hooks.test/alerts",
        severity_filter=["medium", "high", "critical"],
        rate_limit={"max_per_hour": 100, "burst_limit": 10},
        retry={"max_attempts": 3, "backoff_seconds": [0]},
    )


@pytest.fixture
def slack_channel():
    return NotificationConfig(
        channel="slack",
        endpoint="http://slack.test/hook",
        severity_filter=["high", "critical"],
        send_resolutions=True,
        retry={"max_attempts": 1, "backoff_seconds": [0]},
    )


@pytest.fixture
def notification_settings():
    return NotificationSettings(delivery_timeout=1, inter_delivery_delay=0)


@pytest.fixture
def transports():
    """One mock transport per channel, all succeeding by default"""
    return {
        name: MagicMock(deliver=AsyncMock(return_value=True))
        for name in ("webhook", "slack", "email")
    }


@pytest.fixture
def dispatcher(webhook_channel, slack_channel, transports, notification_settings, store, clock):
    return NotificationDispatcher(
        [webhook_channel, slack_channel],
        transports,
        settings=notification_settings,
        store=store,
        rate_limiter=ChannelRateLimiter(clock),
        clock=clock,
    )


@pytest.fixture
def alert_manager(dispatcher, store, clock):
    return AlertManager(dispatcher, store=store, clock=clock)


@pytest.fixture
def executor():
    """ActionExecutor double whose actions and probes succeed"""
    mock = MagicMock(spec=ActionExecutor)
    mock.execute.return_value = ActionExecutionResult(success=True, output="ok")
    mock.verify.return_value = VerificationResult(success=True, details="healthy")
    return mock


@pytest.fixture
def response_actions():
    return [
        ResponseAction(
            id="clear-cache",
            type="clear_cache",
            automated=True,
            conditions={"severity": ["medium", "high", "critical"], "maxExecutionsPerHour": 5},
            implementation={"kind": "api_call", "url": "/api/admin/cache/clear"},
        ),
        ResponseAction(
            id="restart-service",
            type="restart_service",
            automated=True,
            conditions={
                "severity": ["high", "critical"],
                "category": ["system", "api"],
                "maxExecutionsPerHour": 3,
                "cooldownMinutes": 10,
            },
            implementation={"kind": "command", "command": "systemctl restart app"},
            rollback={"kind": "command", "command": "systemctl start app-previous"},
            verification={"health_check": "/api/health", "timeout_seconds": 5},
        ),
        ResponseAction(
            id="scale-up-resources",
            type="scale_up",
            automated=False,
            implementation={"kind": "command", "command": "kubectl scale deployment app --replicas=5"},
        ),
        ResponseAction(
            id="notify-team",
            type="notify",
            automated=True,
            conditions={"severity": ["high", "critical"], "maxExecutionsPerHour": 10},
            implementation={"kind": "api_call", "url": "/api/oncall/page", "body": {"id": "{{ incident_id }}"}},
        ),
    ]


@pytest.fixture
def playbooks():
    return [
        Playbook(
            id="system-resource-exhaustion",
            name="System Resource Exhaustion",
            category="system",
            triggers={"alerts": ["cpu", "memory", "disk"]},
            priority="P0",
            actions=["clear-cache", "restart-service", "scale-up-resources", "notify-team"],
            escalation={
                "timeout_minutes": 5,
                "escalate_to": ["infrastructure-team"],
                "notification_channels": ["slack"],
            },
        ),
        Playbook(
            id="generic-cpu",
            name="Generic CPU",
            category="performance",
            triggers={"alerts": ["cpu"]},
            priority="P2",
            actions=["clear-cache"],
        ),
    ]


@pytest.fixture
def incident_settings():
    return IncidentSettings(max_concurrent_playbooks=2)


@pytest.fixture
def incident_manager(
    playbooks, response_actions, executor, incident_settings, dispatcher, store, alert_manager, clock
):
    manager = IncidentManager(
        playbooks,
        response_actions,
        executor,
        settings=incident_settings,
        dispatcher=dispatcher,
        store=store,
        action_limiter=ActionRateLimiter(clock),
        clock=clock,
    )
    manager.attach_alert_manager(alert_manager)
    alert_manager.attach_incident_manager(manager)
    return manager


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for testing"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line(
        "markers", "integration: Integration tests across multiple components"
    )
