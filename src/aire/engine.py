"""
Response engine - service wiring and lifecycle

Builds every service from an AireConfig, connects them by reference and
owns the periodic tasks. Nothing starts at import time; callers drive
``start()`` / ``stop()`` or ``run_forever()``.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from .alerts import AlertManager
from .concurrency import ActionRateLimiter, ChannelRateLimiter, SemaphoreManager
from .config import AireConfig
from .escalation import EscalationChecker
from .incidents import ActionExecutor, IncidentManager
from .models import Alert, Snapshot, utcnow
from .notifications import NotificationDispatcher, NotificationTransport, registry
from .observability.metrics import MetricsCollector
from .observability.tracer import trace_operation
from .rules import RuleEngine, build_alert, rule_fingerprint
from .sampler import MetricSampler
from .scheduler import PeriodicTask
from .store import HistoryStore, RecordKind

logger = logging.getLogger(__name__)


class ResponseEngine:
    """Sampler, rule engine, alerts, notifications, escalation and incidents"""

    def __init__(
        self,
        config: AireConfig,
        metrics: Optional[MetricsCollector] = None,
        store: Optional[HistoryStore] = None,
        sampler: Optional[MetricSampler] = None,
        transports: Optional[dict[str, NotificationTransport]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.metrics = metrics
        self._clock = clock
        self._http = http_client or httpx.AsyncClient(
            timeout=config.notifications.delivery_timeout
        )
        self._owns_http = http_client is None

        self.store = store or HistoryStore.from_config(config.storage, metrics)
        self.sampler = sampler or MetricSampler(config.sampler, http_client=self._http, clock=clock)
        self.rule_engine = RuleEngine(clock)
        self.semaphores = SemaphoreManager(
            {"playbooks": config.incident.max_concurrent_playbooks}
        )

        self.dispatcher = NotificationDispatcher(
            config.notification_channels,
            transports or registry.create_transports(config.notifications, self._http),
            settings=config.notifications,
            store=self.store,
            rate_limiter=ChannelRateLimiter(clock),
            metrics=metrics,
            clock=clock,
        )
        self.alerts = AlertManager(self.dispatcher, store=self.store, metrics=metrics, clock=clock)
        self.alerts.set_rules(config.rules)

        self.executor = ActionExecutor(
            http_client=self._http,
            api_base_url=config.incident.api_base_url,
            sampler=self.sampler,
        )
        self.incidents = IncidentManager(
            config.playbooks,
            config.response_actions,
            self.executor,
            settings=config.incident,
            dispatcher=self.dispatcher,
            store=self.store,
            action_limiter=ActionRateLimiter(clock),
            semaphore=self.semaphores.get_semaphore("playbooks"),
            probe_semaphore=self.semaphores.get_semaphore("verification_probes"),
            metrics=metrics,
            clock=clock,
        )
        self.alerts.attach_incident_manager(self.incidents)
        self.incidents.attach_alert_manager(self.alerts)

        self.escalation = EscalationChecker(
            config.escalation_rules, self.alerts, self.dispatcher, self.incidents, clock=clock
        )

        schedule = config.scheduler
        self.tasks = [
            PeriodicTask("sampler", config.sampler.interval_seconds, self.tick, run_immediately=True),
            PeriodicTask("escalation", schedule.escalation_interval, self.escalation.check),
            PeriodicTask(
                "incident-resolution", schedule.resolution_interval, self.incidents.check_resolutions
            ),
            PeriodicTask(
                "notification-drain",
                schedule.notification_drain_interval,
                self.dispatcher.drain_pending,
            ),
            PeriodicTask("history-cleanup", schedule.cleanup_interval, self.cleanup),
        ]
        self._started = False
        self._shutdown: Optional[asyncio.Event] = None

    @classmethod
    def from_config(
        cls, config: AireConfig, metrics: Optional[MetricsCollector] = None
    ) -> "ResponseEngine":
        return cls(config, metrics=metrics)

    async def tick(self) -> Snapshot:
        """
        One sampling pass

        Samples, records the snapshot, turns rule breaches into alerts and
        resolves alerts whose rule condition has cleared.
        """
        with trace_operation("engine.tick") as span:
            snapshot = await self.sampler.sample()
            if self.metrics:
                self.metrics.record_snapshot(snapshot)
            await self.store.save_snapshot(snapshot)

            rules = {rule.id: rule for rule in self.config.rules}
            intents = self.rule_engine.evaluate(snapshot, rules.values())
            for intent in intents:
                await self.alerts.process(build_alert(rules[intent.rule_id], intent))

            cleared = self.rule_engine.cleared(snapshot, rules.values())
            for rule_id in cleared:
                await self.alerts.resolve_fingerprint(rule_fingerprint(rule_id))

            span.set_attribute("tick.triggered", len(intents))
            span.set_attribute("tick.degraded", snapshot.degraded)
        return snapshot

    async def submit_alert(self, alert: Alert) -> Alert:
        """Feed an externally produced alert into the lifecycle manager"""
        if not alert.fingerprint:
            alert = alert.model_copy(update={"fingerprint": alert.id})
        return await self.alerts.process(alert)

    def reload_rules(self, config: AireConfig) -> None:
        """Swap in the static rule sets of another configuration"""
        self.config = self.config.model_copy(
            update={
                "rules": config.rules,
                "notification_channels": config.notification_channels,
                "escalation_rules": config.escalation_rules,
                "playbooks": config.playbooks,
                "response_actions": config.response_actions,
            }
        )
        self.rule_engine.forget(rule.id for rule in config.rules)
        self.alerts.set_rules(config.rules)
        self.dispatcher.update_channels(config.notification_channels)
        self.escalation.update_rules(config.escalation_rules)
        self.incidents.reload(config.playbooks, config.response_actions)
        logger.info(
            f"Reloaded {len(config.rules)} rules, {len(config.playbooks)} playbooks, "
            f"{len(config.response_actions)} response actions"
        )

    async def cleanup(self) -> dict[str, int]:
        """Drop in-memory history past the retention window and purge old snapshots"""
        retention = timedelta(hours=self.config.incident.history_retention_hours)
        removed = {
            "alerts": await self.alerts.cleanup(retention),
            "notifications": self.dispatcher.cleanup(retention),
            "incident_history": await self.incidents.cleanup(retention),
            "rate_limit_keys": self.dispatcher.rate_limiter.prune(),
            "snapshots": await self.store.purge(RecordKind.SNAPSHOT, self._clock() - retention),
        }
        logger.debug(f"History cleanup: {removed}")
        return removed

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for task in self.tasks:
            task.start()
        logger.info(
            f"Response engine started ({len(self.config.rules)} rules, "
            f"{len(self.config.playbooks)} playbooks)"
        )

    async def stop(self) -> None:
        """Stop scheduling ticks and let in-flight deliveries and actions finish"""
        if not self._started:
            await self._close_resources()
            return
        self._started = False
        for task in self.tasks:
            await task.stop()
        await self.incidents.stop()
        await self.dispatcher.stop()
        await self._close_resources()
        logger.info("Response engine stopped")

    async def _close_resources(self) -> None:
        await self.sampler.close()
        await self.executor.close()
        await self.store.close()
        if self._owns_http:
            await self._http.aclose()

    async def run_forever(self) -> None:
        self._shutdown = asyncio.Event()
        await self.start()
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        if self._shutdown is not None:
            self._shutdown.set()

    async def wait_idle(self) -> None:
        """Wait for running playbooks and queued notifications to settle"""
        await self.incidents.wait_idle()
        await self.dispatcher.wait_idle()

    async def get_status(self) -> dict[str, Any]:
        status = self.alerts.get_system_status()
        status.update(
            {
                "active_incidents": len(self.incidents.get_active_incidents()),
                "notifications": self.dispatcher.get_stats(),
                "actions": self.incidents.action_limiter.get_stats(),
                "store": await self.store.get_stats(),
                "tasks": {
                    t.name: {"running": t.running, "ticks": t.ticks, "failures": t.failures}
                    for t in self.tasks
                },
            }
        )
        return status
