"""
Prometheus metrics collection for aire

Labeled counters, histograms and gauges for alerts, notifications,
incidents, remediation actions and sampled system health.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    start_http_server,
)

from .config import TelemetryConfig

logger = logging.getLogger(__name__)


def duration_bucket(duration_seconds: float) -> str:
    """Coarse label bucket for incident durations"""
    if duration_seconds < 60:
        return "<1m"
    if duration_seconds < 300:
        return "<5m"
    if duration_seconds < 900:
        return "<15m"
    if duration_seconds < 1800:
        return "<30m"
    if duration_seconds < 3600:
        return "<1h"
    return ">=1h"


@dataclass
class MetricsCollector:
    """
    Central metrics sink for the response engine

    Every collector owns its own registry, so several engines (or tests) can
    coexist in one process.
    """

    config: TelemetryConfig
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)
    enabled: bool = field(default=False, init=False)

    # Alert lifecycle
    alerts_triggered_total: Counter = field(init=False)
    alerts_resolved_total: Counter = field(init=False)
    alerts_escalated_total: Counter = field(init=False)

    # Notifications
    notifications_sent_total: Counter = field(init=False)
    notifications_rate_limited_total: Counter = field(init=False)
    notification_delivery_duration: Histogram = field(init=False)

    # Incidents and remediation
    incidents_created_total: Counter = field(init=False)
    incidents_resolved_total: Counter = field(init=False)
    actions_executed_total: Counter = field(init=False)
    actions_skipped_total: Counter = field(init=False)
    incident_response_time: Histogram = field(init=False)

    # Persistence
    store_errors_total: Counter = field(init=False)

    # Sampled system health
    system_cpu_usage: Gauge = field(init=False)
    system_memory_usage: Gauge = field(init=False)
    system_load_average: Gauge = field(init=False)
    system_disk_usage: Gauge = field(init=False)
    event_loop_lag: Gauge = field(init=False)
    process_heap_usage: Gauge = field(init=False)
    database_connections: Gauge = field(init=False)
    database_response_time: Gauge = field(init=False)
    external_service_health: Gauge = field(init=False)
    active_alerts: Gauge = field(init=False)
    active_incidents: Gauge = field(init=False)
    system_info: Info = field(init=False)

    def __post_init__(self):
        """Initialize all metrics after dataclass creation"""
        if not self.config.enabled or not self.config.metrics.enabled:
            logger.info("Metrics collection is disabled")
            return

        self._initialize_metrics()
        self.enabled = True

        if self.config.should_start_metrics_server():
            self._start_metrics_server()

    def _initialize_metrics(self):
        """Initialize all Prometheus metrics"""
        labels = list(self.config.metrics.default_labels.keys())
        buckets = self.config.metrics.duration_buckets

        self.alerts_triggered_total = Counter(
            "aire_alerts_triggered_total",
            "Total number of alerts triggered",
            labelnames=["alert_type", "severity", "rule_id"] + labels,
            registry=self.registry,
        )
        self.alerts_resolved_total = Counter(
            "aire_alerts_resolved_total",
            "Total number of alerts resolved",
            labelnames=["alert_type", "severity", "resolution_type"] + labels,
            registry=self.registry,
        )
        self.alerts_escalated_total = Counter(
            "aire_alerts_escalated_total",
            "Total number of alert escalations",
            labelnames=["rule_id", "from_severity", "to_severity"] + labels,
            registry=self.registry,
        )

        self.notifications_sent_total = Counter(
            "aire_notifications_sent_total",
            "Total number of notification delivery attempts",
            labelnames=["channel", "success"] + labels,
            registry=self.registry,
        )
        self.notifications_rate_limited_total = Counter(
            "aire_notifications_rate_limited_total",
            "Total number of notifications rejected by rate limiting",
            labelnames=["channel"] + labels,
            registry=self.registry,
        )
        self.notification_delivery_duration = Histogram(
            "aire_notification_delivery_duration_seconds",
            "Time taken to deliver notifications",
            labelnames=["channel"] + labels,
            buckets=buckets,
            registry=self.registry,
        )

        self.incidents_created_total = Counter(
            "aire_incidents_created_total",
            "Total number of incidents created",
            labelnames=["severity", "category", "trigger"] + labels,
            registry=self.registry,
        )
        self.incidents_resolved_total = Counter(
            "aire_incidents_resolved_total",
            "Total number of incidents resolved",
            labelnames=["severity", "resolution_type", "duration_bucket"] + labels,
            registry=self.registry,
        )
        self.actions_executed_total = Counter(
            "aire_actions_executed_total",
            "Total number of automated response actions executed",
            labelnames=["action_type", "success"] + labels,
            registry=self.registry,
        )
        self.actions_skipped_total = Counter(
            "aire_actions_skipped_total",
            "Total number of response actions skipped by gating",
            labelnames=["action_type", "reason"] + labels,
            registry=self.registry,
        )
        self.incident_response_time = Histogram(
            "aire_incident_response_time_seconds",
            "Time from playbook start to completion",
            labelnames=["severity"] + labels,
            buckets=self.config.metrics.response_time_buckets,
            registry=self.registry,
        )

        self.store_errors_total = Counter(
            "aire_store_errors_total",
            "Total number of failed store writes",
            labelnames=["kind", "operation"] + labels,
            registry=self.registry,
        )

        self.system_cpu_usage = Gauge(
            "aire_system_cpu_usage_percent",
            "System CPU usage percentage",
            labelnames=labels,
            registry=self.registry,
        )
        self.system_memory_usage = Gauge(
            "aire_system_memory_usage_percent",
            "System memory usage percentage",
            labelnames=labels,
            registry=self.registry,
        )
        self.system_load_average = Gauge(
            "aire_system_load_average",
            "System load average",
            labelnames=["period"] + labels,
            registry=self.registry,
        )
        self.system_disk_usage = Gauge(
            "aire_system_disk_usage_percent",
            "System disk usage percentage",
            labelnames=labels,
            registry=self.registry,
        )
        self.event_loop_lag = Gauge(
            "aire_event_loop_lag_ms",
            "Event loop lag in milliseconds",
            labelnames=labels,
            registry=self.registry,
        )
        self.process_heap_usage = Gauge(
            "aire_process_heap_bytes",
            "Process memory usage in bytes",
            labelnames=["type"] + labels,
            registry=self.registry,
        )
        self.database_connections = Gauge(
            "aire_database_connections_active",
            "Active database connections",
            labelnames=labels,
            registry=self.registry,
        )
        self.database_response_time = Gauge(
            "aire_database_response_time_ms",
            "Database probe round-trip time in milliseconds",
            labelnames=labels,
            registry=self.registry,
        )
        self.external_service_health = Gauge(
            "aire_external_service_health",
            "External service health status (1=healthy, 0=unhealthy)",
            labelnames=["service"] + labels,
            registry=self.registry,
        )
        self.active_alerts = Gauge(
            "aire_active_alerts",
            "Number of currently active alerts",
            labelnames=labels,
            registry=self.registry,
        )
        self.active_incidents = Gauge(
            "aire_active_incidents",
            "Number of currently active incidents",
            labelnames=labels,
            registry=self.registry,
        )

        self.system_info = Info(
            "aire_system", "System information", registry=self.registry
        )
        self.system_info.info(
            {
                "version": self.config.tracing.service_version,
                "environment": self.config.environment,
            }
        )

        logger.info("Prometheus metrics initialized")

    def _start_metrics_server(self):
        """Start HTTP server for metrics endpoint"""
        try:
            start_http_server(port=self.config.metrics.port, registry=self.registry)
            logger.info(f"Metrics server started on port {self.config.metrics.port}")
        except Exception as e:
            logger.error(f"Failed to start metrics server: {e}")

    def _labels(self, **labels: str) -> dict[str, str]:
        return {**self.config.metrics.default_labels, **labels}

    def _child(self, metric, **labels: str):
        """Labeled child, or the metric itself when it has no label names"""
        merged = self._labels(**labels)
        return metric.labels(**merged) if merged else metric

    @contextmanager
    def time_delivery(self, channel: str):
        """Context manager to time a notification delivery"""
        start_time = time.time()
        try:
            yield
        finally:
            if self.enabled:
                self.notification_delivery_duration.labels(
                    **self._labels(channel=channel)
                ).observe(time.time() - start_time)

    # Alert tracking
    def record_alert_triggered(self, alert_type: str, severity: str, rule_id: str):
        if self.enabled:
            self.alerts_triggered_total.labels(
                **self._labels(alert_type=alert_type, severity=severity, rule_id=rule_id)
            ).inc()

    def record_alert_resolved(
        self, alert_type: str, severity: str, resolution_type: str = "automatic"
    ):
        if self.enabled:
            self.alerts_resolved_total.labels(
                **self._labels(
                    alert_type=alert_type,
                    severity=severity,
                    resolution_type=resolution_type,
                )
            ).inc()

    def record_alert_escalated(self, rule_id: str, from_severity: str, to_severity: str):
        if self.enabled:
            self.alerts_escalated_total.labels(
                **self._labels(
                    rule_id=rule_id,
                    from_severity=from_severity,
                    to_severity=to_severity,
                )
            ).inc()

    def set_active_alerts(self, count: int):
        if self.enabled:
            self._child(self.active_alerts).set(count)

    # Notification tracking
    def record_notification(self, channel: str, success: bool):
        if self.enabled:
            self.notifications_sent_total.labels(
                **self._labels(channel=channel, success=str(success).lower())
            ).inc()

    def record_notification_rate_limited(self, channel: str):
        if self.enabled:
            self.notifications_rate_limited_total.labels(
                **self._labels(channel=channel)
            ).inc()

    # Incident tracking
    def record_incident_created(self, severity: str, category: str, trigger: str):
        if self.enabled:
            self.incidents_created_total.labels(
                **self._labels(severity=severity, category=category, trigger=trigger)
            ).inc()

    def record_incident_resolved(
        self, severity: str, resolution_type: str, duration_seconds: float
    ):
        if self.enabled:
            self.incidents_resolved_total.labels(
                **self._labels(
                    severity=severity,
                    resolution_type=resolution_type,
                    duration_bucket=duration_bucket(duration_seconds),
                )
            ).inc()

    def set_active_incidents(self, count: int):
        if self.enabled:
            self._child(self.active_incidents).set(count)

    def record_action_executed(self, action_type: str, success: bool):
        if self.enabled:
            self.actions_executed_total.labels(
                **self._labels(action_type=action_type, success=str(success).lower())
            ).inc()

    def record_action_skipped(self, action_type: str, reason: str):
        if self.enabled:
            self.actions_skipped_total.labels(
                **self._labels(action_type=action_type, reason=reason)
            ).inc()

    def observe_response_time(self, severity: str, seconds: float):
        if self.enabled:
            self.incident_response_time.labels(
                **self._labels(severity=severity)
            ).observe(seconds)

    def record_store_error(self, kind: str, operation: str):
        if self.enabled:
            self.store_errors_total.labels(
                **self._labels(kind=kind, operation=operation)
            ).inc()

    def record_snapshot(self, snapshot) -> None:
        """Mirror a sampled snapshot into the system gauges"""
        if not self.enabled:
            return

        self._child(self.system_cpu_usage).set(snapshot.cpu.usage)
        self._child(self.system_memory_usage).set(snapshot.memory.usage_percent)
        for period, load in zip(("1m", "5m", "15m"), snapshot.cpu.load_average):
            self.system_load_average.labels(**self._labels(period=period)).set(load)
        self._child(self.system_disk_usage).set(snapshot.disk.usage_percent)
        self._child(self.event_loop_lag).set(snapshot.process.event_loop_lag)
        self.process_heap_usage.labels(**self._labels(type="used")).set(
            snapshot.process.heap_used
        )
        self.process_heap_usage.labels(**self._labels(type="total")).set(
            snapshot.process.heap_total
        )
        self.process_heap_usage.labels(**self._labels(type="rss")).set(
            snapshot.process.rss
        )
        self._child(self.database_connections).set(snapshot.database.active_connections)
        self._child(self.database_response_time).set(snapshot.database.response_time)
        for service in snapshot.external_services:
            self.external_service_health.labels(
                **self._labels(service=service.name)
            ).set(1 if service.status == "healthy" else 0)

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format"""
        return generate_latest(self.registry).decode("utf-8")


# Process-wide collector installed by initialize_observability
_metrics: Optional[MetricsCollector] = None


def initialize_metrics(config: TelemetryConfig) -> MetricsCollector:
    """Initialize the process-wide metrics collector"""
    global _metrics
    _metrics = MetricsCollector(config)
    return _metrics


def get_metrics() -> Optional[MetricsCollector]:
    """Get the process-wide metrics collector, if one was initialized"""
    return _metrics
