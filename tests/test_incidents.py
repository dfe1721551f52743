"""
Test suite for incident management

Tests incident creation, playbook execution with action gating, rollback,
automatic resolution heuristics and manual operations.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from aire.incidents import action_applicable, matching_playbooks, select_playbook
from aire.models import ActionExecutionResult, Playbook, VerificationResult
from aire.store import RecordKind


def _actions(incident):
    return [entry.action for entry in incident.timeline]


class TestPlaybookSelection:
    """Test playbook matching"""

    def test_highest_priority_first(self, playbooks, make_alert):
        matches = matching_playbooks(playbooks, make_alert(severity="critical"))
        assert [p.id for p in matches] == ["system-resource-exhaustion", "generic-cpu"]

    def test_p0_requires_high_severity(self, playbooks, make_alert):
        assert select_playbook(playbooks, make_alert(severity="medium")).id == "generic-cpu"

    def test_rule_id_and_all_triggers(self, make_alert):
        by_rule = Playbook(id="by-rule", triggers={"alerts": ["cpu-high"]})
        catch_all = Playbook(id="all", triggers={"alerts": ["all"]}, priority="P4")
        alert = make_alert(type="custom", metadata={"rule_id": "cpu-high"})

        assert [p.id for p in matching_playbooks([catch_all, by_rule], alert)] == ["by-rule", "all"]

    def test_disabled_and_unmatched(self, make_alert):
        disabled = Playbook(id="off", triggers={"alerts": ["cpu"]}, enabled=False)
        assert select_playbook([disabled], make_alert()) is None

    def test_action_applicable(self, response_actions):
        restart = response_actions[1]
        assert action_applicable(restart, "critical", "system")
        assert not action_applicable(restart, "medium", "system")
        assert not action_applicable(restart, "critical", "database")
        assert action_applicable(restart, "critical", None)


class TestOpenIncident:
    """Test incident creation"""

    @pytest.mark.asyncio
    async def test_critical_alert_opens_incident_and_runs_playbook(
        self, incident_manager, alert_manager, executor, make_alert, clock
    ):
        alert = await alert_manager.process(make_alert(severity="critical"))
        await incident_manager.wait_idle()

        incidents = incident_manager.get_active_incidents()
        assert len(incidents) == 1
        incident = incidents[0]
        assert incident.status == "open"
        assert incident.alerts == [alert.id]
        assert incident.playbook_id == "system-resource-exhaustion"
        assert incident.category == "system"
        assert incident.title == f"Critical Alert: {alert.title}"
        assert _actions(incident)[:3] == ["incident_created", "playbook_selected", "playbook_started"]
        assert _actions(incident)[-1] == "playbook_completed"

        executed = [c.args[0] for c in executor.execute.await_args_list]
        assert [impl.kind for impl in executed] == ["api_call", "command", "api_call"]
        assert incident.response_started_at == clock()
        assert len(incident.response_actions) == 4

    @pytest.mark.asyncio
    async def test_one_incident_per_alert_chain(self, incident_manager, make_alert):
        alert = make_alert(severity="critical", fingerprint="rule:cpu-high")
        first = await incident_manager.open_incident(alert)
        second = await incident_manager.open_incident(
            make_alert(severity="critical", fingerprint="rule:cpu-high")
        )
        await incident_manager.wait_idle()

        assert first is not None
        assert second is None
        incident = incident_manager.get_incident(first.id)
        assert len(incident.alerts) == 2
        assert "alert_linked" in _actions(incident)

    @pytest.mark.asyncio
    async def test_no_playbook(self, incident_manager, executor, make_alert):
        incident = await incident_manager.open_incident(
            make_alert(severity="critical", type="queue")
        )
        await incident_manager.wait_idle()

        assert incident.playbook_id is None
        assert incident.category is None
        executor.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_high_alert_runs_playbook_without_incident(
        self, incident_manager, alert_manager, executor, make_alert
    ):
        alert = await alert_manager.process(make_alert(severity="high"))
        await incident_manager.wait_idle()

        assert incident_manager.get_active_incidents() == []
        history = incident_manager.get_action_execution_history()
        assert {e.alert_id for e in history} == {alert.id}
        assert all(e.incident_id is None for e in history)
        assert executor.execute.await_count == 3

    @pytest.mark.asyncio
    async def test_incident_is_persisted(self, incident_manager, store, make_alert):
        incident = await incident_manager.open_incident(make_alert(severity="critical"))
        await incident_manager.wait_idle()

        stored = await store.get(RecordKind.INCIDENT, incident.id)
        assert stored["status"] == "open"
        assert stored["timeline"][-1]["action"] == "playbook_completed"

    @pytest.mark.asyncio
    async def test_metrics(self, incident_manager, make_alert):
        metrics = MagicMock()
        incident_manager.metrics = metrics

        await incident_manager.open_incident(make_alert(severity="critical"), trigger="escalation")
        await incident_manager.wait_idle()

        metrics.record_incident_created.assert_called_once_with("critical", "system", "escalation")
        metrics.observe_response_time.assert_called_once()
        metrics.record_action_skipped.assert_called_once_with("scale_up", "manual_only")

    @pytest.mark.asyncio
    async def test_stopped_manager_does_not_launch(self, incident_manager, executor, make_alert):
        await incident_manager.stop()

        incident = await incident_manager.open_incident(make_alert(severity="critical"))
        await incident_manager.wait_idle()

        assert incident is not None
        executor.execute.assert_not_awaited()


class TestActionGating:
    """Test skip reasons and the action journal"""

    @pytest.mark.asyncio
    async def test_skip_reasons(self, incident_manager, playbooks, make_alert):
        playbook = playbooks[0].model_copy(
            update={"actions": ["missing", "scale-up-resources", "restart-service", "clear-cache"]}
        )
        executions = await incident_manager.execute_playbook(
            playbook, make_alert(severity="medium")
        )

        assert [(e.action_id, e.status, e.skip_reason) for e in executions] == [
            ("missing", "skipped", "unknown_action"),
            ("scale-up-resources", "skipped", "manual_only"),
            ("restart-service", "skipped", "not_applicable"),
            ("clear-cache", "completed", None),
        ]
        skipped = executions[0]
        assert skipped.attempts == 0
        assert skipped.end_time == skipped.start_time

    @pytest.mark.asyncio
    async def test_hourly_cap_rejects_fourth_execution(
        self, incident_manager, executor, playbooks, make_alert, clock
    ):
        """An action already run three times in the last hour is rejected, not executed"""
        for minutes in (50, 40, 30):
            incident_manager.action_limiter.record("restart-service", clock() - timedelta(minutes=minutes))

        incident = await incident_manager.open_incident(make_alert(severity="critical"))
        await incident_manager.wait_idle()

        restart = incident_manager.get_action_execution_history("restart-service")
        assert [(e.status, e.skip_reason) for e in restart] == [("skipped", "rate_limited")]
        commands = [c.args[0] for c in executor.execute.await_args_list if c.args[0].kind == "command"]
        assert commands == []
        timeline = incident_manager.get_incident(incident.id).timeline
        assert any(
            e.action == "action_skipped" and "rate_limited" in e.details for e in timeline
        )

    @pytest.mark.asyncio
    async def test_cooldown(self, incident_manager, playbooks, make_alert, clock):
        alert = make_alert(severity="critical")
        first = await incident_manager.execute_playbook(playbooks[0], alert)
        clock.advance(minutes=5)
        second = await incident_manager.execute_playbook(playbooks[0], alert)

        assert first[1].status == "completed"
        assert second[1].skip_reason == "cooldown"

    @pytest.mark.asyncio
    async def test_context_passed_to_executor(self, incident_manager, executor, make_alert):
        incident = await incident_manager.open_incident(make_alert(severity="critical"))
        await incident_manager.wait_idle()

        implementation, context = executor.execute.await_args_list[-1].args
        assert implementation.body == {"id": "{{ incident_id }}"}
        assert context["incident_id"] == incident.id
        assert context["action_id"] == "notify-team"
        assert context["severity"] == "critical"

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_failure(
        self, incident_manager, executor, playbooks, make_alert
    ):
        executor.execute.side_effect = RuntimeError("boom")

        executions = await incident_manager.execute_playbook(
            playbooks[1], make_alert(severity="high")
        )

        assert executions[0].status == "failed"
        assert executions[0].error == "boom"


class TestVerificationAndRollback:
    """Test post-action verification"""

    @pytest.mark.asyncio
    async def test_failed_verification_triggers_rollback(
        self, incident_manager, executor, response_actions, playbooks, make_alert
    ):
        executor.verify.return_value = VerificationResult(success=False, details="HTTP 503")
        executor.execute.side_effect = [
            ActionExecutionResult(success=True, output="restarted"),
            ActionExecutionResult(success=True, output="rolled back"),
        ]
        playbook = playbooks[0].model_copy(update={"actions": ["restart-service"]})

        execution, = await incident_manager.execute_playbook(playbook, make_alert(severity="critical"))

        assert execution.status == "completed"
        assert execution.result.verified is False
        assert execution.result.rolled_back is True
        assert execution.result.rollback_details == "rolled back"
        rollback_impl = executor.execute.await_args_list[1].args[0]
        assert rollback_impl == response_actions[1].rollback

    @pytest.mark.asyncio
    async def test_rollback_disabled(self, incident_manager, executor, playbooks, make_alert):
        incident_manager.settings.rollback_on_verification_failure = False
        executor.verify.return_value = VerificationResult(success=False)
        playbook = playbooks[0].model_copy(update={"actions": ["restart-service"]})

        execution, = await incident_manager.execute_playbook(playbook, make_alert(severity="critical"))

        assert execution.result.verified is False
        assert execution.result.rolled_back is None
        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_no_rollback_after_failed_action(
        self, incident_manager, executor, playbooks, make_alert
    ):
        executor.execute.return_value = ActionExecutionResult(success=False, error="exit 1")
        executor.verify.return_value = VerificationResult(success=False)
        playbook = playbooks[0].model_copy(update={"actions": ["restart-service"]})

        execution, = await incident_manager.execute_playbook(playbook, make_alert(severity="critical"))

        assert execution.status == "failed"
        assert execution.result.verified is False
        assert executor.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_raising_verification_does_not_halt_playbook(
        self, incident_manager, executor, playbooks, make_alert
    ):
        executor.verify.side_effect = httpx.InvalidURL("Invalid port: 'abc'")

        executions = await incident_manager.execute_playbook(
            playbooks[0], make_alert(severity="critical")
        )

        assert [(e.action_id, e.status) for e in executions] == [
            ("clear-cache", "completed"),
            ("restart-service", "completed"),
            ("scale-up-resources", "skipped"),
            ("notify-team", "completed"),
        ]
        restart = executions[1]
        assert restart.result.verified is False
        assert "Invalid port" in restart.result.verification_details
        assert restart.end_time is not None

    @pytest.mark.asyncio
    async def test_raising_rollback_is_recorded(
        self, incident_manager, executor, playbooks, make_alert
    ):
        executor.verify.return_value = VerificationResult(success=False, details="HTTP 503")
        executor.execute.side_effect = [
            ActionExecutionResult(success=True, output="restarted"),
            RuntimeError("rollback exploded"),
        ]
        playbook = playbooks[0].model_copy(update={"actions": ["restart-service"]})

        execution, = await incident_manager.execute_playbook(playbook, make_alert(severity="critical"))

        assert execution.status == "completed"
        assert execution.result.rolled_back is False
        assert execution.result.rollback_details == "rollback exploded"


class TestResolution:
    """Test automatic and manual resolution"""

    @pytest.mark.asyncio
    async def test_all_alerts_resolved(self, incident_manager, alert_manager, make_alert):
        alert = await alert_manager.process(make_alert(severity="critical"))
        await incident_manager.wait_idle()
        incident = incident_manager.get_active_incidents()[0]

        await alert_manager.resolve(alert.id)

        resolved = incident_manager.get_incident(incident.id)
        assert resolved.status == "resolved"
        assert resolved.resolution_type == "automatic"
        assert incident_manager.get_active_incidents() == []

    @pytest.mark.asyncio
    async def test_partial_resolution_keeps_incident(
        self, incident_manager, alert_manager, make_alert
    ):
        first = await alert_manager.process(make_alert(severity="critical", fingerprint="fp"))
        await incident_manager.wait_idle()
        incident = incident_manager.get_active_incidents()[0]
        second = await alert_manager.process(make_alert(severity="medium", type="memory"))
        linked = await incident_manager.open_incident(
            second.model_copy(update={"fingerprint": "fp"})
        )
        assert linked is None

        await alert_manager.resolve(first.id)

        assert incident_manager.get_incident(incident.id).status == "open"

    @pytest.mark.asyncio
    async def test_healthy_after_five_minutes(self, incident_manager, make_alert, clock):
        incident = await incident_manager.open_incident(make_alert(severity="critical", type="queue"))

        clock.advance(minutes=5)
        assert await incident_manager.check_resolutions() == []

        clock.advance(seconds=1)
        assert await incident_manager.check_resolutions() == [incident.id]
        resolved = incident_manager.get_incident(incident.id)
        assert resolved.resolution_reason == "System health restored"

    @pytest.mark.asyncio
    async def test_inactivity_while_unhealthy(
        self, incident_manager, alert_manager, make_alert, clock
    ):
        await alert_manager.process(make_alert(severity="critical"))
        await incident_manager.wait_idle()
        incident = incident_manager.get_active_incidents()[0]

        clock.advance(minutes=9)
        assert incident.id not in await incident_manager.check_resolutions()

        clock.advance(minutes=1)
        assert incident.id in await incident_manager.check_resolutions()
        assert "No response activity" in incident_manager.get_incident(incident.id).resolution_reason

    @pytest.mark.asyncio
    async def test_failing_incident_does_not_stop_the_pass(
        self, incident_manager, alert_manager, dispatcher, make_alert, clock
    ):
        await alert_manager.process(make_alert(severity="critical", type="cpu"))
        await alert_manager.process(make_alert(severity="critical", type="memory"))
        await incident_manager.wait_idle()
        await dispatcher.wait_idle()
        first, second = incident_manager.get_active_incidents()

        clock.advance(minutes=10)
        with patch.object(
            dispatcher, "enqueue", AsyncMock(side_effect=[RuntimeError("queue down"), []])
        ):
            assert await incident_manager.check_resolutions() == [second.id]
            assert incident_manager.get_incident(first.id).status == "open"

            assert await incident_manager.check_resolutions() == [first.id]

    @pytest.mark.asyncio
    async def test_manual_resolution(self, incident_manager, make_alert, clock):
        incident = await incident_manager.open_incident(make_alert(severity="critical", type="queue"))
        clock.advance(minutes=3)

        assert await incident_manager.manually_resolve_incident(incident.id, "fixed", user="alice")
        assert not await incident_manager.manually_resolve_incident(incident.id, "again")

        resolved = incident_manager.get_incident(incident.id)
        assert resolved.resolution_type == "manual"
        assert resolved.resolved_at == clock()
        assert resolved.timeline[-1].user == "alice"

    @pytest.mark.asyncio
    async def test_new_incident_after_resolution(self, incident_manager, make_alert):
        first = await incident_manager.open_incident(make_alert(severity="critical", fingerprint="fp", type="queue"))
        await incident_manager.resolve_incident(first.id)

        second = await incident_manager.open_incident(make_alert(severity="critical", fingerprint="fp", type="queue"))

        assert second is not None and second.id != first.id


class TestPlaybookEscalation:
    """Test playbook escalation timeouts"""

    @pytest.mark.asyncio
    async def test_escalates_once_after_timeout(
        self, incident_manager, alert_manager, dispatcher, make_alert, clock
    ):
        alert = await alert_manager.process(make_alert(severity="critical"))
        await incident_manager.wait_idle()
        incident = incident_manager.get_active_incidents()[0]

        clock.advance(minutes=4)
        await incident_manager.check_resolutions()
        assert not incident_manager.get_incident(incident.id).escalated

        clock.advance(minutes=1)
        await incident_manager.check_resolutions()
        clock.advance(seconds=30)
        await incident_manager.check_resolutions()
        await dispatcher.wait_idle()

        escalated = incident_manager.get_incident(incident.id)
        assert escalated.escalated
        assert "incident_escalated" in _actions(escalated)
        notices = [n for n in dispatcher.get_notifications(alert.id) if n.kind == "escalation"]
        assert [n.channel for n in notices] == ["slack"]
        assert notices[0].payload["metadata"]["incident_id"] == incident.id
        assert notices[0].payload["metadata"]["escalate_to"] == ["infrastructure-team"]


class TestManualOperations:
    """Test status changes, assignment, metrics and cleanup"""

    @pytest.mark.asyncio
    async def test_set_status_and_assign(self, incident_manager, make_alert):
        incident = await incident_manager.open_incident(make_alert(severity="critical", type="queue"))

        assert await incident_manager.set_status(incident.id, "investigating", user="bob")
        assert await incident_manager.assign(incident.id, "bob")
        current = incident_manager.get_incident(incident.id)
        assert current.status == "investigating"
        assert current.assignee == "bob"
        assert incident_manager.get_active_incidents()[0].id == incident.id

        assert await incident_manager.set_status(incident.id, "cancelled")
        assert incident_manager.get_active_incidents() == []
        assert not await incident_manager.assign(incident.id, "carol")

    @pytest.mark.asyncio
    async def test_set_status_resolved(self, incident_manager, make_alert):
        incident = await incident_manager.open_incident(make_alert(severity="critical", type="queue"))

        assert await incident_manager.set_status(incident.id, "resolved", user="bob")
        assert incident_manager.get_incident(incident.id).resolution_type == "manual"

    @pytest.mark.asyncio
    async def test_response_metrics(self, incident_manager, make_alert, clock):
        auto = await incident_manager.open_incident(make_alert(severity="critical", type="queue"))
        manual = await incident_manager.open_incident(make_alert(severity="critical", type="queue"))
        clock.advance(minutes=2)
        await incident_manager.resolve_incident(auto.id, "automatic", "healthy")
        clock.advance(minutes=2)
        await incident_manager.manually_resolve_incident(manual.id, "fixed")

        metrics = await incident_manager.get_response_metrics()

        assert metrics.total_incidents_24h == 2
        assert metrics.active_incidents == 0
        assert metrics.automated_resolutions == 1
        assert metrics.manual_resolutions == 1
        assert metrics.mttr == 180.0

    @pytest.mark.asyncio
    async def test_cleanup(self, incident_manager, make_alert, clock):
        incident = await incident_manager.open_incident(make_alert(severity="critical"))
        await incident_manager.wait_idle()
        await incident_manager.resolve_incident(incident.id)

        clock.advance(hours=25)
        removed = await incident_manager.cleanup()

        assert removed == 5
        assert incident_manager.get_incident(incident.id) is None
        assert incident_manager.get_action_execution_history() == []
