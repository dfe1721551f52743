"""
Integration tests for the response engine

Drives the wired services through sampling ticks and submitted alerts with
a fake clock, mocked sampler and transports, and an httpx mock transport
standing in for the remediation API.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from aire.config import AireConfig
from aire.engine import ResponseEngine
from aire.models import Alert
from aire.observability import MetricsCollector, TelemetryConfig
from aire.scheduler import PeriodicTask
from aire.store import HistoryStore, MemoryStore, RecordKind


@pytest.fixture
def engine_config():
    return AireConfig(
        notifications={"delivery_timeout": 1, "inter_delivery_delay": 0},
        rules=[
            {
                "id": "cpu-high",
                "name": "High CPU Usage",
                "type": "cpu",
                "metric": "cpu.usage",
                "condition": ">",
                "threshold": 80,
                "severity": "high",
                "cooldown_minutes": 5,
            }
        ],
        notification_channels=[
            {
                "channel": "webhook",
                "endpoint": "http://hooks.test/alerts",
                "severity_filter": ["medium", "high", "critical"],
                "rate_limit": {"max_per_hour": 100, "burst_limit": 10},
                "retry": {"max_attempts": 1, "backoff_seconds": [0]},
            }
        ],
        escalation_rules=[
            {
                "id": "high-30m",
                "conditions": {"severity": ["high"], "unresolved_minutes": 30},
                "actions": {"increase_severity": True, "create_incident": True},
            }
        ],
        response_actions=[
            {
                "id": "clear-cache",
                "type": "clear_cache",
                "automated": True,
                "conditions": {"maxExecutionsPerHour": 5},
                "implementation": {"kind": "api_call", "url": "/api/admin/cache/clear"},
            },
            {
                "id": "restart-service",
                "type": "restart_service",
                "automated": True,
                "conditions": {"severity": ["critical"], "maxExecutionsPerHour": 3},
                "implementation": {"kind": "api_call", "url": "/api/admin/restart"},
                "verification": {"health_check": "/api/health"},
            },
        ],
        playbooks=[
            {
                "id": "system-resource-exhaustion",
                "category": "system",
                "priority": "P0",
                "triggers": {"alerts": ["cpu", "memory"]},
                "actions": ["clear-cache", "restart-service"],
            }
        ],
    )


@pytest.fixture
def api_calls():
    return []


@pytest.fixture
def http_client(api_calls):
    def handler(request: httpx.Request) -> httpx.Response:
        api_calls.append(request.url.path)
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def sampler(make_snapshot):
    mock = MagicMock()
    mock.sample = AsyncMock(return_value=make_snapshot(cpu={"usage": 50}))
    mock.read_metric = AsyncMock(return_value=None)
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def engine(engine_config, sampler, transports, http_client, clock):
    return ResponseEngine(
        engine_config,
        store=HistoryStore(MemoryStore()),
        sampler=sampler,
        transports=transports,
        http_client=http_client,
        clock=clock,
    )


def _alert(clock, **fields) -> Alert:
    data = {"type": "cpu", "severity": "medium", "title": "CPU", "timestamp": clock()}
    data.update(fields)
    return Alert(**data)


class TestTick:
    """Test sampling passes"""

    @pytest.mark.asyncio
    async def test_repeated_breach_yields_one_alert_and_notification(
        self, engine, sampler, transports, make_snapshot, clock
    ):
        sampler.sample.return_value = make_snapshot(cpu={"usage": 85})

        await engine.tick()
        clock.advance(minutes=1)
        sampler.sample.return_value = make_snapshot(cpu={"usage": 85})
        await engine.tick()
        await engine.wait_idle()

        active = engine.alerts.get_active_alerts()
        assert len(active) == 1
        assert active[0].severity == "high"
        assert active[0].current_value == 85
        assert active[0].resolved is False
        assert transports["webhook"].deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_cleared_condition_resolves_alert(
        self, engine, sampler, make_snapshot, clock
    ):
        sampler.sample.return_value = make_snapshot(cpu={"usage": 90})
        await engine.tick()
        alert = engine.alerts.get_active_alerts()[0]

        clock.advance(minutes=1)
        sampler.sample.return_value = make_snapshot(cpu={"usage": 40})
        await engine.tick()
        await engine.wait_idle()

        assert engine.alerts.get_active_alerts() == []
        assert engine.alerts.get_alert(alert.id).resolved

    @pytest.mark.asyncio
    async def test_snapshots_are_recorded(self, engine, make_snapshot):
        await engine.tick()

        assert len(await engine.store.query(RecordKind.SNAPSHOT)) == 1

    @pytest.mark.asyncio
    async def test_metrics_are_updated(self, engine_config, sampler, transports, http_client, clock):
        metrics = MetricsCollector(TelemetryConfig())
        engine = ResponseEngine(
            engine_config,
            metrics=metrics,
            store=HistoryStore(MemoryStore()),
            sampler=sampler,
            transports=transports,
            http_client=http_client,
            clock=clock,
        )

        await engine.tick()

        assert "aire_system_cpu_usage_percent 50.0" in metrics.get_metrics_text()


class TestScenarios:
    """End-to-end alert, incident, rate limit and escalation flows"""

    @pytest.mark.asyncio
    async def test_critical_alert_runs_playbook_with_rate_limit(
        self, engine, api_calls, clock
    ):
        for minutes in (45, 30, 15):
            engine.incidents.action_limiter.record(
                "restart-service", clock() - timedelta(minutes=minutes)
            )

        await engine.submit_alert(_alert(clock, severity="critical"))
        await engine.wait_idle()

        incident = engine.incidents.get_active_incidents()[0]
        assert incident.status == "open"
        assert incident.playbook_id == "system-resource-exhaustion"
        history = engine.incidents.get_action_execution_history()
        assert [(e.action_id, e.status, e.skip_reason) for e in history] == [
            ("clear-cache", "completed", None),
            ("restart-service", "skipped", "rate_limited"),
        ]
        assert api_calls == ["/api/admin/cache/clear"]

    @pytest.mark.asyncio
    async def test_verified_action(self, engine, api_calls, clock):
        await engine.submit_alert(_alert(clock, severity="critical"))
        await engine.wait_idle()

        restart = engine.incidents.get_action_execution_history("restart-service")[0]
        assert restart.status == "completed"
        assert restart.result.verified is True
        assert api_calls == ["/api/admin/cache/clear", "/api/admin/restart", "/api/health"]
        probes = engine.semaphores.get_semaphore("verification_probes").get_stats()
        assert probes.total_acquisitions == 1
        assert probes.in_use == 0

    @pytest.mark.asyncio
    async def test_burst_of_alerts_hits_channel_limit(self, engine, transports, clock):
        for i in range(11):
            await engine.submit_alert(_alert(clock, type=f"queue-{i}"))
            clock.advance(seconds=15)
        await engine.wait_idle()

        statuses = [n.status for n in engine.dispatcher.get_notifications()]
        assert statuses.count("sent") == 10
        assert statuses[-1] == "rate_limited"
        assert transports["webhook"].deliver.await_count == 10

    @pytest.mark.asyncio
    async def test_escalation_to_incident(self, engine, clock):
        alert = await engine.submit_alert(_alert(clock, severity="high", type="queue"))

        clock.advance(minutes=31)
        await engine.escalation.check()
        clock.advance(minutes=1)
        await engine.escalation.check()
        await engine.wait_idle()

        assert engine.alerts.get_alert(alert.id).severity == "critical"
        incidents = engine.incidents.get_active_incidents()
        assert len(incidents) == 1
        assert incidents[0].alerts == [alert.id]


class TestOperations:
    """Test reload, cleanup, status and lifecycle"""

    @pytest.mark.asyncio
    async def test_reload_rules(self, engine, engine_config):
        updated = engine_config.model_copy(
            update={
                "rules": engine_config.rules[:0],
                "playbooks": engine_config.playbooks[:0],
            }
        )

        engine.reload_rules(updated)

        assert engine.config.rules == []
        assert engine.incidents.playbooks == []
        assert engine.config.notifications.delivery_timeout == 1

    @pytest.mark.asyncio
    async def test_cleanup(self, engine, clock):
        await engine.tick()
        alert = await engine.submit_alert(_alert(clock))
        await engine.alerts.resolve(alert.id)
        await engine.wait_idle()

        clock.advance(hours=25)
        removed = await engine.cleanup()

        assert removed["alerts"] == 1
        assert removed["notifications"] == 1
        assert removed["snapshots"] == 1
        assert set(removed) == {
            "alerts",
            "notifications",
            "incident_history",
            "rate_limit_keys",
            "snapshots",
        }

    @pytest.mark.asyncio
    async def test_status(self, engine, clock):
        await engine.submit_alert(_alert(clock, severity="medium"))
        await engine.wait_idle()

        status = await engine.get_status()

        assert status["status"] == "degraded"
        assert status["active_alerts"] == 1
        assert status["active_incidents"] == 0
        assert status["notifications"]["by_status"] == {"sent": 1}
        assert status["store"]["primary_backend"] == "MemoryStore"
        assert set(status["tasks"]) == {
            "sampler",
            "escalation",
            "incident-resolution",
            "notification-drain",
            "history-cleanup",
        }

    @pytest.mark.asyncio
    async def test_start_and_stop(self, engine, sampler):
        await engine.start()
        await asyncio.sleep(0.01)

        assert all(task.running for task in engine.tasks)
        assert sampler.sample.await_count >= 1

        await engine.stop()

        assert not any(task.running for task in engine.tasks)
        sampler.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_forever_until_shutdown(self, engine):
        runner = asyncio.create_task(engine.run_forever())
        await asyncio.sleep(0.01)

        engine.request_shutdown()
        await asyncio.wait_for(runner, timeout=1)

        assert not any(task.running for task in engine.tasks)


class TestPeriodicTask:
    """Test the periodic task runner"""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, AsyncMock())

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self):
        func = AsyncMock(side_effect=RuntimeError("boom"))
        task = PeriodicTask("flaky", 60, func)

        await task.run_once()
        await task.run_once()

        assert task.ticks == 2
        assert task.failures == 2

    @pytest.mark.asyncio
    async def test_runs_repeatedly_until_stopped(self):
        func = AsyncMock()
        task = PeriodicTask("fast", 0.01, func, run_immediately=True)

        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert func.await_count >= 2
        assert not task.running

    @pytest.mark.asyncio
    async def test_stop_lets_running_tick_finish(self):
        done = []

        async def slow_tick():
            await asyncio.sleep(0.2)
            done.append(True)

        task = PeriodicTask("slow", 10, slow_tick, run_immediately=True)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert done == [True]
        assert task.ticks == 1
        assert not task.running

    @pytest.mark.asyncio
    async def test_stop_interrupts_the_wait(self):
        func = AsyncMock()
        task = PeriodicTask("idle", 3600, func)

        task.start()
        await asyncio.wait_for(task.stop(), timeout=1)

        func.assert_not_awaited()
