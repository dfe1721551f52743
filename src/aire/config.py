"""
Configuration management for aire

Provides pydantic-based configuration with environment variable support
and YAML file loading capabilities. Static rule sets (alert rules,
notification channels, escalation rules, playbooks, response actions) live
here too and default to a conservative built-in set.
"""

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .models import (
    AlertRule,
    EscalationRule,
    NotificationConfig,
    Playbook,
    ResponseAction,
)
from .observability.config import TelemetryConfig


class ExternalServiceConfig(BaseModel):
    """External dependency probed on every sampling tick"""

    name: str
    health_url: str
    timeout: float = Field(default=5.0, gt=0)


class SamplerConfig(BaseModel):
    """Metric sampler settings"""

    interval_seconds: float = Field(default=30.0, gt=0)
    disk_path: str = "/"
    database_probe_url: Optional[str] = None
    # Database round-trip thresholds in milliseconds
    database_healthy_ms: float = 100.0
    database_degraded_ms: float = 1000.0
    probe_timeout: float = Field(default=5.0, gt=0)
    external_services: list[ExternalServiceConfig] = Field(default_factory=list)


class SchedulerConfig(BaseModel):
    """Periodic task intervals (seconds)"""

    escalation_interval: float = Field(default=60.0, gt=0)
    resolution_interval: float = Field(default=30.0, gt=0)
    notification_drain_interval: float = Field(default=10.0, gt=0)
    cleanup_interval: float = Field(default=3600.0, gt=0)


class NotificationSettings(BaseModel):
    """Dispatcher-wide delivery settings"""

    delivery_timeout: float = Field(default=10.0, gt=0)
    inter_delivery_delay: float = Field(default=0.1, ge=0)
    smtp_host: str = "localhost"
    smtp_port: int = 25
    email_sender: str = "aire@localhost"


class IncidentSettings(BaseModel):
    """Incident manager and remediation settings"""

    healthy_resolution_minutes: float = 5.0
    inactivity_resolution_minutes: float = 10.0
    history_retention_hours: float = 24.0
    api_base_url: str = "http://localhost:3000"
    rollback_on_verification_failure: bool = True
    max_concurrent_playbooks: int = Field(default=5, gt=0)


class StorageConfig(BaseModel):
    """Persistence backend configuration"""

    backend: Literal["memory", "redis"] = "memory"
    max_records_per_kind: int = Field(default=10000, gt=0)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    key_prefix: str = "aire:"


def default_alert_rules() -> list[AlertRule]:
    return [
        AlertRule(
            id="cpu-high",
            name="High CPU Usage",
            type="cpu",
            metric="cpu.usage",
            condition=">",
            threshold=80,
            severity="high",
            cooldown_minutes=5,
        ),
        AlertRule(
            id="memory-high",
            name="High Memory Usage",
            type="memory",
            metric="memory.usage_percent",
            condition=">",
            threshold=85,
            severity="high",
            cooldown_minutes=5,
        ),
        AlertRule(
            id="database-slow",
            name="Slow Database Response",
            type="database",
            metric="database.response_time",
            condition=">",
            threshold=1000,
            severity="medium",
            cooldown_minutes=10,
        ),
    ]


def default_notification_channels() -> list[NotificationConfig]:
    return [
        NotificationConfig(
            channel="webhook",
            endpoint=os.getenv(
                "ALERT_WEBHOOK_URL", "http://localhost:3000/api/alerts/webhook"
            ),
            severity_filter=["medium", "high", "critical"],
            rate_limit={"max_per_hour": 100, "burst_limit": 10},
            retry={"max_attempts": 3, "backoff_seconds": [1, 5, 15]},
        )
    ]


def default_escalation_rules() -> list[EscalationRule]:
    return [
        EscalationRule(
            id="critical-escalation",
            name="Critical Alert Escalation",
            conditions={"severity": ["high", "critical"], "unresolved_minutes": 30},
            actions={
                "escalate_to": ["email", "slack"],
                "increase_severity": True,
                "create_incident": True,
            },
        )
    ]


def default_response_actions() -> list[ResponseAction]:
    return [
        ResponseAction(
            id="restart-service",
            type="restart_service",
            name="Restart Application Service",
            description="Restart the main application service to recover from errors",
            automated=True,
            conditions={
                "severity": ["high", "critical"],
                "category": ["system", "api"],
                "maxExecutionsPerHour": 3,
                "cooldownMinutes": 10,
            },
            implementation={"kind": "command", "command": "systemctl restart app"},
            verification={"health_check": "/api/health", "timeout_seconds": 60},
            risks=["Brief service interruption", "Active sessions may be lost"],
            estimated_impact={"disruption": "minimal", "duration": 30},
        ),
        ResponseAction(
            id="clear-cache",
            type="clear_cache",
            name="Clear Application Cache",
            description="Clear application caches to resolve cache-related issues",
            automated=True,
            conditions={
                "severity": ["medium", "high", "critical"],
                "category": ["performance", "api", "system", "database"],
                "maxExecutionsPerHour": 5,
                "cooldownMinutes": 5,
            },
            implementation={
                "kind": "api_call",
                "url": "/api/admin/cache/clear",
                "method": "POST",
                "headers": {"x-admin-key": os.getenv("ADMIN_API_KEY", "")},
            },
            verification={"metric": "memory.usage_percent", "expected_value": "<85"},
            risks=["Temporary performance degradation", "Increased database load"],
            estimated_impact={"disruption": "minimal", "duration": 60},
        ),
        ResponseAction(
            id="scale-up-resources",
            type="scale_up",
            name="Scale Up Resources",
            description="Increase application resources to handle load",
            automated=False,
            conditions={
                "severity": ["high", "critical"],
                "category": ["performance", "system"],
                "maxExecutionsPerHour": 2,
                "cooldownMinutes": 30,
            },
            implementation={
                "kind": "command",
                "command": "kubectl scale deployment app --replicas=5",
            },
            rollback={
                "kind": "command",
                "command": "kubectl scale deployment app --replicas=2",
            },
            verification={
                "metric": "cpu.usage",
                "expected_value": "<80",
                "timeout_seconds": 300,
            },
            risks=["Increased infrastructure costs", "Resource contention"],
            estimated_impact={"disruption": "none", "duration": 120},
        ),
        ResponseAction(
            id="notify-team",
            type="notify",
            name="Notify On-Call Team",
            description="Send notifications to the on-call engineering team",
            automated=True,
            conditions={
                "severity": ["high", "critical"],
                "maxExecutionsPerHour": 10,
                "cooldownMinutes": 1,
            },
            implementation={
                "kind": "api_call",
                "url": os.getenv("ONCALL_WEBHOOK_URL", "/api/oncall/page"),
                "method": "POST",
                "headers": {"Content-Type": "application/json"},
                "body": {
                    "event_action": "trigger",
                    "dedup_key": "{{ incident_id }}",
                    "payload": {
                        "summary": "{{ incident_title }}",
                        "severity": "{{ severity }}",
                        "source": "aire",
                    },
                },
            },
            verification={"timeout_seconds": 10},
            risks=["Alert fatigue if over-used"],
            estimated_impact={"disruption": "none", "duration": 5},
        ),
        ResponseAction(
            id="database-failover",
            type="failover",
            name="Database Failover",
            description="Switch to backup database instance",
            automated=False,
            conditions={
                "severity": ["critical"],
                "category": ["database"],
                "maxExecutionsPerHour": 1,
                "cooldownMinutes": 60,
            },
            implementation={"kind": "script", "path": "./scripts/database-failover.sh"},
            rollback={"kind": "script", "path": "./scripts/database-failback.sh"},
            verification={"health_check": "/api/health", "timeout_seconds": 120},
            risks=["Data inconsistency", "Service downtime during failover"],
            estimated_impact={"disruption": "high", "duration": 300},
        ),
    ]


def default_playbooks() -> list[Playbook]:
    return [
        Playbook(
            id="high-error-rate",
            name="High Error Rate Response",
            category="api",
            triggers={
                "alerts": ["error-rate-high", "service"],
                "conditions": ["error_rate > 5%", "duration > 5 minutes"],
            },
            priority="P1",
            actions=["clear-cache", "restart-service", "notify-team"],
            escalation={
                "timeout_minutes": 15,
                "escalate_to": ["engineering-manager"],
                "notification_channels": ["slack", "email"],
            },
            documentation={
                "description": "Response to sustained high error rates in API endpoints",
                "common_causes": [
                    "Database connection issues",
                    "Memory leaks",
                    "Cache corruption",
                    "External service failures",
                ],
            },
        ),
        Playbook(
            id="database-performance",
            name="Database Performance Degradation",
            category="database",
            triggers={
                "alerts": ["database"],
                "conditions": [
                    "avg_query_time > 1000ms",
                    "connection_pool_usage > 90%",
                ],
            },
            priority="P1",
            actions=["clear-cache", "notify-team"],
            escalation={
                "timeout_minutes": 10,
                "escalate_to": ["database-admin"],
                "notification_channels": ["slack"],
            },
            documentation={
                "description": "Response to database performance and connection problems"
            },
        ),
        Playbook(
            id="system-resource-exhaustion",
            name="System Resource Exhaustion",
            category="system",
            triggers={
                "alerts": ["cpu", "memory", "disk"],
                "conditions": ["cpu_usage > 90%", "memory_usage > 95%", "disk_usage > 90%"],
            },
            priority="P0",
            actions=["clear-cache", "scale-up-resources", "notify-team"],
            escalation={
                "timeout_minutes": 5,
                "escalate_to": ["infrastructure-team"],
                "notification_channels": ["slack", "webhook"],
            },
            documentation={
                "description": "Critical resource exhaustion requiring immediate attention"
            },
        ),
    ]


class AireConfig(BaseSettings):
    """Main aire configuration"""

    model_config = SettingsConfigDict(
        env_prefix="AIRE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    sampler: SamplerConfig = Field(default_factory=SamplerConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    incident: IncidentSettings = Field(default_factory=IncidentSettings)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    # Static rule sets
    rules: list[AlertRule] = Field(default_factory=default_alert_rules)
    notification_channels: list[NotificationConfig] = Field(
        default_factory=default_notification_channels
    )
    escalation_rules: list[EscalationRule] = Field(
        default_factory=default_escalation_rules
    )
    playbooks: list[Playbook] = Field(default_factory=default_playbooks)
    response_actions: list[ResponseAction] = Field(
        default_factory=default_response_actions
    )

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_references(self) -> "AireConfig":
        for label, items in (
            ("rule", self.rules),
            ("playbook", self.playbooks),
            ("response action", self.response_actions),
            ("escalation rule", self.escalation_rules),
        ):
            ids = [item.id for item in items]
            duplicates = {i for i in ids if ids.count(i) > 1}
            if duplicates:
                raise ValueError(f"Duplicate {label} ids: {sorted(duplicates)}")

        names = [c.name for c in self.notification_channels]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate notification channel names: {sorted(duplicates)}")
        return self

    @classmethod
    def load_from_file(cls, config_path: str = "aire.yml") -> "AireConfig":
        """Load configuration from YAML file with environment variable override"""
        config_file = Path(config_path)
        config_data: dict[str, Any] = {}

        if config_file.exists():
            try:
                with open(config_file, encoding="utf-8") as f:
                    config_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(
                    f"Invalid YAML in {config_file}: {e}"
                ) from e

        # Values from the file take precedence; env vars fill in the rest
        return cls(**config_data)

    def get_response_action(self, action_id: str) -> Optional[ResponseAction]:
        return next((a for a in self.response_actions if a.id == action_id), None)

    def get_notification_channel(self, name: str) -> Optional[NotificationConfig]:
        return next((c for c in self.notification_channels if c.name == name), None)


# Global configuration instance (CLI convenience; services take config explicitly)
_config: Optional[AireConfig] = None


def get_config() -> AireConfig:
    """Get the global configuration instance"""
    global _config
    if _config is None:
        _config = AireConfig.load_from_file()
    return _config


def set_config(config: AireConfig) -> None:
    """Set the global configuration instance"""
    global _config
    _config = config
