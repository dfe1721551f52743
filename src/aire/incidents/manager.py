"""
Incident manager

Opens incidents from critical alerts, selects and runs playbooks, gates
every response action through applicability checks and the per-action
rate limiter, and resolves incidents automatically or on request.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from ..concurrency.rate_limiter import ActionRateLimiter
from ..concurrency.semaphore import AsyncSemaphore
from ..config import IncidentSettings
from ..models import (
    ActionExecution,
    ActionExecutionResult,
    Alert,
    Incident,
    IncidentResponseMetrics,
    IncidentStatus,
    Playbook,
    ResolutionType,
    ResponseAction,
    SkipReason,
    VerificationResult,
    utcnow,
)
from ..notifications.dispatcher import NotificationDispatcher
from ..observability.tracer import trace_operation
from ..store.base import RecordKind
from ..store.manager import HistoryStore
from .executor import ActionExecutor
from .playbooks import action_applicable, select_playbook

if TYPE_CHECKING:
    from ..alerts import AlertManager
    from ..observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class IncidentManager:
    """
    Owns incidents and the remediation journal

    At most one active incident exists per alert fingerprint. Playbooks run
    as background tasks bounded by a semaphore; inside one playbook the
    actions run strictly in order.
    """

    def __init__(
        self,
        playbooks: Iterable[Playbook],
        actions: Iterable[ResponseAction],
        executor: ActionExecutor,
        settings: Optional[IncidentSettings] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        store: Optional[HistoryStore] = None,
        action_limiter: Optional[ActionRateLimiter] = None,
        semaphore: Optional[AsyncSemaphore] = None,
        probe_semaphore: Optional[AsyncSemaphore] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or IncidentSettings()
        self.executor = executor
        self.dispatcher = dispatcher
        self.store = store
        self.metrics = metrics
        self.alerts: Optional["AlertManager"] = None
        self._clock = clock
        self.action_limiter = action_limiter or ActionRateLimiter(clock)
        self._semaphore = semaphore or AsyncSemaphore(
            self.settings.max_concurrent_playbooks, "playbooks"
        )
        self._probe_semaphore = probe_semaphore or AsyncSemaphore(10, "verification_probes")

        self.playbooks: list[Playbook] = []
        self.actions: dict[str, ResponseAction] = {}
        self.reload(playbooks, actions)

        self._incidents: dict[str, Incident] = {}
        self._active: dict[str, Incident] = {}
        self._chains: dict[str, str] = {}
        self._executions: dict[str, list[ActionExecution]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._accepting = True

    def attach_alert_manager(self, alerts: "AlertManager") -> None:
        self.alerts = alerts

    def reload(self, playbooks: Iterable[Playbook], actions: Iterable[ResponseAction]) -> None:
        self.playbooks = list(playbooks)
        self.actions = {action.id: action for action in actions}

    def _playbook(self, playbook_id: Optional[str]) -> Optional[Playbook]:
        return next((p for p in self.playbooks if p.id == playbook_id), None)

    # ------------------------------------------------------------------
    # Alert hand-off
    # ------------------------------------------------------------------

    async def on_alert(self, alert: Alert) -> None:
        """Critical alerts open an incident; high alerts run a playbook directly"""
        if alert.severity == "critical":
            await self.open_incident(alert, trigger="alert")
            return

        playbook = select_playbook(self.playbooks, alert)
        if playbook is None:
            logger.debug(f"No matching playbook for alert {alert.id} ({alert.type})")
            return
        self._launch(playbook, alert, None)

    async def open_incident(self, alert: Alert, trigger: str = "alert") -> Optional[Incident]:
        """
        Open an incident for an alert chain

        Returns:
            The new incident, or None when an active incident already covers
            the alert's fingerprint (the alert is linked to it instead)
        """
        now = self._clock()
        playbook = select_playbook(self.playbooks, alert)

        async with self._lock:
            existing = self._active_for(alert)
            if existing is not None:
                if alert.id not in existing.alerts:
                    existing.alerts.append(alert.id)
                    existing.add_timeline(
                        "alert_linked", f"Alert {alert.id} joined the incident", timestamp=now
                    )
                linked = existing.model_copy(deep=True)
                incident = None
            else:
                incident = Incident(
                    title=f"Critical Alert: {alert.title}",
                    description=alert.message,
                    severity=alert.severity,
                    category=playbook.category if playbook else None,
                    alerts=[alert.id],
                    tags=[alert.type, "automated"],
                    created_at=now,
                    playbook_id=playbook.id if playbook else None,
                )
                incident.add_timeline(
                    "incident_created",
                    f"Incident created automatically from {alert.severity} alert ({trigger})",
                    timestamp=now,
                )
                if playbook:
                    incident.add_timeline(
                        "playbook_selected",
                        f"Playbook {playbook.id} ({playbook.priority}) selected",
                        timestamp=now,
                    )
                self._incidents[incident.id] = incident
                self._active[incident.id] = incident
                self._chains[alert.fingerprint] = incident.id

        if incident is None:
            logger.debug(f"Alert {alert.id} already covered by incident {linked.id}")
            await self._persist(linked)
            return None

        logger.warning(
            f"Incident {incident.id} opened from alert {alert.id} "
            f"({trigger}, playbook={incident.playbook_id})"
        )
        await self._persist(incident)
        if self.metrics:
            self.metrics.record_incident_created(
                incident.severity, incident.category or "unknown", trigger
            )
            self.metrics.set_active_incidents(len(self._active))

        if playbook:
            self._launch(playbook, alert, incident.id)
        return incident.model_copy(deep=True)

    def _active_for(self, alert: Alert) -> Optional[Incident]:
        incident_id = self._chains.get(alert.fingerprint)
        if incident_id and incident_id in self._active:
            return self._active[incident_id]
        return next((i for i in self._active.values() if alert.id in i.alerts), None)

    async def on_alert_resolved(self, alert: Alert) -> None:
        """Resolve every active incident whose contributing alerts have all resolved"""
        for incident in list(self._active.values()):
            if alert.id not in incident.alerts:
                continue
            if all(self._alert_resolved(aid) for aid in incident.alerts):
                await self.resolve_incident(
                    incident.id, "automatic", "All related alerts have been resolved"
                )

    def _alert_resolved(self, alert_id: str) -> bool:
        if self.alerts is None:
            return True
        alert = self.alerts.get_alert(alert_id)
        return alert is None or alert.resolved

    # ------------------------------------------------------------------
    # Playbook execution
    # ------------------------------------------------------------------

    def _launch(self, playbook: Playbook, alert: Alert, incident_id: Optional[str]) -> None:
        if not self._accepting:
            logger.warning(f"Incident manager stopped, not running playbook {playbook.id}")
            return
        task = asyncio.create_task(
            self._run_playbook(playbook, alert, incident_id),
            name=f"playbook-{playbook.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_playbook(
        self, playbook: Playbook, alert: Alert, incident_id: Optional[str]
    ) -> None:
        async with self._semaphore.acquire():
            try:
                await self.execute_playbook(playbook, alert, incident_id)
            except Exception:
                logger.exception(f"Playbook {playbook.id} failed for alert {alert.id}")

    async def execute_playbook(
        self, playbook: Playbook, alert: Alert, incident_id: Optional[str] = None
    ) -> list[ActionExecution]:
        """Run a playbook's actions in order; failures and skips do not stop it"""
        start = self._clock()
        incident = self._incidents.get(incident_id) if incident_id else None
        category = (incident.category if incident else None) or playbook.category

        logger.info(f"Executing playbook {playbook.id} for alert {alert.id}")
        if incident is not None:
            incident.response_started_at = incident.response_started_at or start
            incident.add_timeline(
                "playbook_started", f"Executing playbook {playbook.name or playbook.id}", timestamp=start
            )

        executions = []
        with trace_operation(
            "incident.playbook",
            {"playbook.id": playbook.id, "alert.id": alert.id, "incident.id": incident_id},
        ):
            for action_id in playbook.actions:
                execution = await self._run_action(action_id, playbook, alert, incident, category)
                executions.append(execution)
                if incident is not None:
                    self._record_on_incident(incident, execution)
                    await self._persist(incident)

        elapsed = (self._clock() - start).total_seconds()
        if self.metrics:
            self.metrics.observe_response_time(alert.severity, elapsed)
        if incident is not None:
            completed = sum(1 for e in executions if e.status == "completed")
            incident.add_timeline(
                "playbook_completed",
                f"{completed}/{len(executions)} actions completed",
                timestamp=self._clock(),
            )
            await self._persist(incident)
        logger.info(
            f"Playbook {playbook.id} finished for alert {alert.id} in {elapsed:.1f}s"
        )
        return executions

    def _record_on_incident(self, incident: Incident, execution: ActionExecution) -> None:
        incident.response_actions.append(execution.id)
        if execution.status == "skipped":
            incident.add_timeline(
                "action_skipped",
                f"{execution.action_id} skipped ({execution.skip_reason})",
                timestamp=execution.start_time,
            )
            return
        incident.last_action_at = execution.end_time or self._clock()
        details = f"{execution.action_id} {execution.status}"
        if execution.result and execution.result.verified is not None:
            details += f", verified={execution.result.verified}"
        if execution.result and execution.result.rolled_back is not None:
            details += f", rolled_back={execution.result.rolled_back}"
        incident.add_timeline("action_executed", details, timestamp=incident.last_action_at)

    async def _run_action(
        self,
        action_id: str,
        playbook: Playbook,
        alert: Alert,
        incident: Optional[Incident],
        category: Optional[str],
    ) -> ActionExecution:
        base = {
            "action_id": action_id,
            "alert_id": alert.id,
            "playbook_id": playbook.id,
            "incident_id": incident.id if incident else None,
            "start_time": self._clock(),
        }

        action = self.actions.get(action_id)
        if action is None:
            logger.warning(f"Action {action_id} in playbook {playbook.id} is not configured")
            return await self._skip(base, "unknown_action", None)
        if not action.automated:
            return await self._skip(base, "manual_only", action)
        if not action_applicable(action, alert.severity, category):
            return await self._skip(base, "not_applicable", action)

        refused = self.action_limiter.try_acquire(
            action.id,
            action.conditions.max_executions_per_hour,
            action.conditions.cooldown_minutes,
        )
        if refused:
            return await self._skip(base, refused, action)

        execution = ActionExecution(**base, status="running")
        self._journal(execution)
        await self._persist_execution(execution)

        context = {
            "incident_id": incident.id if incident else "",
            "incident_title": incident.title if incident else alert.title,
            "severity": alert.severity,
            "alert_id": alert.id,
            "alert_type": alert.type,
            "action_id": action.id,
            "playbook_id": playbook.id,
        }

        logger.info(f"Executing response action {action.id} (execution={execution.id})")
        with trace_operation(
            "incident.action", {"action.id": action.id, "action.type": action.type}
        ):
            try:
                result = await self.executor.execute(action.implementation, context)
            except Exception as e:
                logger.exception(f"Response action {action.id} raised")
                result = ActionExecutionResult(success=False, error=str(e))

            if action.verification is not None:
                await self._verify_and_rollback(action, result, context)

        execution.status = "completed" if result.success else "failed"
        execution.end_time = self._clock()
        execution.result = result
        execution.error = None if result.success else result.error
        await self._persist_execution(execution)

        if self.metrics:
            self.metrics.record_action_executed(action.type, result.success)
        log = logger.info if result.success else logger.error
        log(
            f"Response action {action.id} {execution.status} "
            f"(verified={result.verified}, error={result.error})"
        )
        return execution

    async def _verify_and_rollback(
        self, action: ResponseAction, result: ActionExecutionResult, context: dict[str, Any]
    ) -> None:
        """Record the post-condition and roll back a successful action whose check failed"""
        try:
            async with self._probe_semaphore.acquire():
                verification = await self.executor.verify(action.verification)
        except Exception as e:
            logger.exception(f"Verification of {action.id} raised")
            verification = VerificationResult(success=False, details=f"Verification error: {e}")
        result.verified = verification.success
        result.verification_details = verification.details

        if not (
            result.success
            and not verification.success
            and action.rollback is not None
            and self.settings.rollback_on_verification_failure
        ):
            return

        logger.warning(f"Verification failed for {action.id}, rolling back")
        try:
            rollback = await self.executor.execute(action.rollback, context)
        except Exception as e:
            logger.exception(f"Rollback of {action.id} raised")
            rollback = ActionExecutionResult(success=False, error=str(e))
        result.rolled_back = rollback.success
        result.rollback_details = rollback.output or rollback.error

    async def _skip(
        self, base: dict[str, Any], reason: SkipReason, action: Optional[ResponseAction]
    ) -> ActionExecution:
        execution = ActionExecution(
            **base, status="skipped", skip_reason=reason, attempts=0, end_time=base["start_time"]
        )
        self._journal(execution)
        await self._persist_execution(execution)
        if self.metrics:
            self.metrics.record_action_skipped(action.type if action else "unknown", reason)
        logger.info(f"Response action {base['action_id']} skipped: {reason}")
        return execution

    def _journal(self, execution: ActionExecution) -> None:
        self._executions.setdefault(execution.action_id, []).append(execution)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_incident(
        self,
        incident_id: str,
        resolution_type: ResolutionType = "manual",
        reason: str = "",
        user: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            incident = self._active.pop(incident_id, None)
            if incident is None:
                return False
            now = self._clock()
            incident.status = "resolved"
            incident.resolved_at = now
            incident.resolution_type = resolution_type
            incident.resolution_reason = reason
            incident.add_timeline("incident_resolved", reason, user=user, timestamp=now)
            self._drop_chains(incident_id)

        duration = (incident.resolved_at - incident.created_at).total_seconds()
        logger.info(
            f"Incident {incident_id} resolved ({resolution_type}) after {duration:.0f}s: {reason}"
        )
        await self._persist(incident)
        if self.metrics:
            self.metrics.record_incident_resolved(incident.severity, resolution_type, duration)
            self.metrics.set_active_incidents(len(self._active))
        return True

    async def manually_resolve_incident(
        self, incident_id: str, reason: str, user: Optional[str] = None
    ) -> bool:
        return await self.resolve_incident(incident_id, "manual", reason, user)

    def _drop_chains(self, incident_id: str) -> None:
        for fingerprint in [f for f, iid in self._chains.items() if iid == incident_id]:
            del self._chains[fingerprint]

    async def set_status(
        self, incident_id: str, status: IncidentStatus, user: Optional[str] = None
    ) -> bool:
        """Manual status change; ``resolved`` goes through manual resolution"""
        if status == "resolved":
            return await self.resolve_incident(incident_id, "manual", "Resolved manually", user)

        async with self._lock:
            incident = self._active.get(incident_id)
            if incident is None:
                return False
            previous = incident.status
            incident.status = status
            incident.add_timeline(
                "status_changed", f"{previous} -> {status}", user=user, timestamp=self._clock()
            )
            if status == "cancelled":
                del self._active[incident_id]
                self._drop_chains(incident_id)

        await self._persist(incident)
        if self.metrics:
            self.metrics.set_active_incidents(len(self._active))
        return True

    async def assign(self, incident_id: str, assignee: str, user: Optional[str] = None) -> bool:
        incident = self._active.get(incident_id)
        if incident is None:
            return False
        incident.assignee = assignee
        incident.add_timeline(
            "assigned", f"Assigned to {assignee}", user=user, timestamp=self._clock()
        )
        await self._persist(incident)
        return True

    async def check_resolutions(self) -> list[str]:
        """
        One pass of the automatic resolution heuristics

        An incident resolves when the system is healthy and the incident is
        older than the healthy window, or when no response action has run
        for the inactivity window. Playbook escalation timeouts are handled
        in the same pass.
        """
        now = self._clock()
        status = self.alerts.system_status() if self.alerts else "healthy"
        healthy_after = timedelta(minutes=self.settings.healthy_resolution_minutes)
        idle_after = timedelta(minutes=self.settings.inactivity_resolution_minutes)
        resolved = []

        for incident in list(self._active.values()):
            try:
                if await self._check_incident(incident, now, status, healthy_after, idle_after):
                    resolved.append(incident.id)
            except Exception:
                logger.exception(f"Resolution check failed for incident {incident.id}")
        return resolved

    async def _check_incident(
        self,
        incident: Incident,
        now: datetime,
        status: str,
        healthy_after: timedelta,
        idle_after: timedelta,
    ) -> bool:
        age = now - incident.created_at
        await self._check_playbook_escalation(incident, age)

        last_activity = (
            incident.last_action_at or incident.response_started_at or incident.created_at
        )
        reason = None
        if status == "healthy" and age > healthy_after:
            reason = "System health restored"
        elif now - last_activity >= idle_after:
            reason = (
                f"No response activity for "
                f"{self.settings.inactivity_resolution_minutes:g} minutes"
            )
        return bool(reason) and await self.resolve_incident(incident.id, "automatic", reason)

    async def _check_playbook_escalation(self, incident: Incident, age: timedelta) -> None:
        if incident.escalated or incident.playbook_id is None:
            return
        playbook = self._playbook(incident.playbook_id)
        if playbook is None:
            return
        if age < timedelta(minutes=playbook.escalation.timeout_minutes):
            return

        incident.escalated = True
        targets = ", ".join(playbook.escalation.escalate_to) or "on-call"
        incident.add_timeline(
            "incident_escalated",
            f"Open for {playbook.escalation.timeout_minutes:g} minutes, escalated to {targets}",
            timestamp=self._clock(),
        )
        logger.warning(f"Incident {incident.id} escalated to {targets}")
        await self._persist(incident)

        if self.dispatcher is None or not playbook.escalation.notification_channels:
            return
        alert = self.alerts.get_alert(incident.alerts[0]) if self.alerts and incident.alerts else None
        if alert is None:
            alert = Alert(
                fingerprint=f"incident:{incident.id}",
                type="incident",
                severity=incident.severity,
                title=incident.title,
                message=incident.description,
                timestamp=incident.created_at,
            )
        alert.metadata["incident_id"] = incident.id
        alert.metadata["escalate_to"] = playbook.escalation.escalate_to
        await self.dispatcher.enqueue(
            alert, kind="escalation", channels=playbook.escalation.notification_channels
        )

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def get_active_incidents(self) -> list[Incident]:
        return [i.model_copy(deep=True) for i in self._active.values()]

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        incident = self._incidents.get(incident_id)
        return incident.model_copy(deep=True) if incident else None

    def get_action_execution_history(
        self, action_id: Optional[str] = None
    ) -> list[ActionExecution]:
        if action_id is not None:
            return list(self._executions.get(action_id, []))
        history = [e for executions in self._executions.values() for e in executions]
        return sorted(history, key=lambda e: e.start_time)

    async def get_response_metrics(self) -> IncidentResponseMetrics:
        """Incident response figures over the last 24 hours"""
        now = self._clock()
        since = now - timedelta(hours=24)
        if self.store:
            records = [
                Incident.from_dict(r)
                for r in await self.store.query(RecordKind.INCIDENT, since=since)
            ]
        else:
            records = [i for i in self._incidents.values() if i.created_at >= since]

        resolved = [i for i in records if i.status == "resolved" and i.resolved_at]
        automated = sum(1 for i in resolved if i.resolution_type == "automatic")
        mttr = (
            sum((i.resolved_at - i.created_at).total_seconds() for i in resolved) / len(resolved)
            if resolved
            else 0.0
        )
        avg_response = (
            sum(
                (i.response_started_at - i.created_at).total_seconds()
                for i in records
                if i.response_started_at
            )
            / len(records)
            if records
            else 0.0
        )
        return IncidentResponseMetrics(
            timestamp=now,
            active_incidents=len(self._active),
            total_incidents_24h=len(records),
            avg_response_time=round(avg_response, 3),
            automated_resolutions=automated,
            manual_resolutions=len(resolved) - automated,
            mttr=round(mttr, 3),
        )

    async def cleanup(self, retention: Optional[timedelta] = None) -> int:
        """Drop execution history and closed incidents older than the retention window"""
        retention = retention or timedelta(hours=self.settings.history_retention_hours)
        cutoff = self._clock() - retention
        removed = 0

        for action_id in list(self._executions):
            recent = [e for e in self._executions[action_id] if e.start_time > cutoff]
            removed += len(self._executions[action_id]) - len(recent)
            if recent:
                self._executions[action_id] = recent
            else:
                del self._executions[action_id]

        async with self._lock:
            stale = [
                iid
                for iid, i in self._incidents.items()
                if iid not in self._active and (i.resolved_at or i.created_at) < cutoff
            ]
            for iid in stale:
                del self._incidents[iid]

        self.action_limiter.prune(retention)
        if removed or stale:
            logger.info(f"Cleaned up {removed} executions and {len(stale)} closed incidents")
        return removed + len(stale)

    async def _persist(self, incident: Incident) -> None:
        if self.store:
            await self.store.save_incident(incident)

    async def _persist_execution(self, execution: ActionExecution) -> None:
        if self.store:
            await self.store.save_execution(execution)

    async def wait_idle(self) -> None:
        """Wait for every running playbook to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Stop launching playbooks and let running ones finish"""
        self._accepting = False
        await self.wait_idle()
