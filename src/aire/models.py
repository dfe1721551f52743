"""
Core data models for aire

Defines snapshots, rules, alerts, notifications, incidents, playbooks and
response actions using Pydantic for validation and serialization.
"""

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Severity = Literal["low", "medium", "high", "critical"]
SEVERITY_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")

HealthStatus = Literal["healthy", "degraded", "unhealthy"]
HEALTH_LEVELS: dict[str, int] = {"healthy": 0, "degraded": 1, "unhealthy": 2}

NotificationChannel = Literal["webhook", "slack", "email"]
NotificationStatus = Literal["pending", "sent", "failed", "rate_limited"]
NotificationKind = Literal["alert", "resolution", "escalation"]

IncidentStatus = Literal["open", "investigating", "resolved", "cancelled"]
IncidentCategory = Literal[
    "system", "database", "api", "security", "performance", "external"
]
IncidentPriority = Literal["P0", "P1", "P2", "P3", "P4"]
ResolutionType = Literal["automatic", "manual"]

ResponseActionType = Literal[
    "restart_service", "scale_up", "clear_cache", "failover", "notify", "investigate"
]
ExecutionStatus = Literal["running", "completed", "failed", "skipped"]
SkipReason = Literal[
    "manual_only", "not_applicable", "rate_limited", "cooldown", "unknown_action"
]

PRIORITY_ORDER: dict[str, int] = {"P0": 5, "P1": 4, "P2": 3, "P3": 2, "P4": 1}

_CONDITION_ALIASES = {
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "eq": "==",
}


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:12]
    return f"{prefix}_{token}" if prefix else token


def severity_rank(severity: str) -> int:
    return SEVERITY_LEVELS.index(severity)


def next_severity(severity: str) -> str:
    """One step up the severity scale; critical stays critical"""
    rank = severity_rank(severity)
    return SEVERITY_LEVELS[min(rank + 1, len(SEVERITY_LEVELS) - 1)]


class _Record(BaseModel):
    """Base model with dict helpers shared by all persisted records"""

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        return cls.model_validate(data)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class CpuMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    usage: float = 0.0
    load_average: tuple[float, float, float] = (0.0, 0.0, 0.0)
    cores: int = 1


class MemoryMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    used: int = 0
    free: int = 0
    usage_percent: float = 0.0


class DiskMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    usage_percent: float = 0.0
    available_gb: float = 0.0
    total_gb: float = 0.0


class ProcessMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    heap_used: int = 0
    heap_total: int = 0
    rss: int = 0
    cpu_usage: float = 0.0
    event_loop_lag: float = 0.0
    uptime: float = 0.0
    pid: int = 0


class DatabaseMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    active_connections: int = 0
    response_time: float = 0.0
    health_status: HealthStatus = "healthy"

    @property
    def health_level(self) -> int:
        return HEALTH_LEVELS[self.health_status]


class ExternalServiceHealth(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    status: HealthStatus = "healthy"
    response_time: Optional[float] = None
    last_check: datetime = Field(default_factory=utcnow)

    @property
    def health_level(self) -> int:
        return HEALTH_LEVELS[self.status]


class Snapshot(_Record):
    """Immutable point-in-time reading of system, process and dependency health"""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    cpu: CpuMetrics = Field(default_factory=CpuMetrics)
    memory: MemoryMetrics = Field(default_factory=MemoryMetrics)
    disk: DiskMetrics = Field(default_factory=DiskMetrics)
    process: ProcessMetrics = Field(default_factory=ProcessMetrics)
    database: DatabaseMetrics = Field(default_factory=DatabaseMetrics)
    external_services: tuple[ExternalServiceHealth, ...] = ()
    degraded: bool = False
    errors: tuple[str, ...] = ()

    def get_metric(self, path: str) -> Optional[float]:
        """
        Resolve a dotted metric path to a numeric value

        Supports nested sections (``cpu.usage``), derived properties
        (``database.health_level``) and named external services
        (``external_services.openrouter.response_time``). Returns None when the
        path is unknown or the value is not numeric.
        """
        parts = path.split(".")
        if not parts or not parts[0]:
            return None

        if parts[0] == "external_services":
            if len(parts) != 3:
                return None
            service = next(
                (s for s in self.external_services if s.name == parts[1]), None
            )
            if service is None:
                return None
            value: Any = getattr(service, parts[2], None)
        else:
            value = self
            for part in parts:
                if part.startswith("_") or not hasattr(value, part):
                    return None
                value = getattr(value, part)

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)


# ---------------------------------------------------------------------------
# Rules and alerts
# ---------------------------------------------------------------------------


class AlertRuleActions(BaseModel):
    log: bool = True
    webhook: Optional[str] = None
    email: list[str] = Field(default_factory=list)
    slack: Optional[str] = None


class AlertRule(_Record):
    """Threshold rule evaluated against every snapshot"""

    id: str
    name: str = ""
    type: str = "custom"
    metric: str
    condition: Literal[">", ">=", "<", "<=", "=="] = ">"
    threshold: float
    severity: Severity = "medium"
    enabled: bool = True
    cooldown_minutes: float = Field(default=5.0, ge=0)
    actions: AlertRuleActions = Field(default_factory=AlertRuleActions)

    @field_validator("condition", mode="before")
    @classmethod
    def _normalize_condition(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _CONDITION_ALIASES.get(value.strip().lower(), value.strip())
        return value


class TriggerIntent(BaseModel):
    """A rule firing produced by the rule engine; the caller owns persistence"""

    rule_id: str
    value: float
    severity: Severity
    threshold: float
    timestamp: datetime = Field(default_factory=utcnow)


class Alert(_Record):
    """Stateful record of a breached condition, tracked until resolved"""

    id: str = Field(default_factory=lambda: new_id("alert"))
    fingerprint: str = ""
    type: str = "custom"
    severity: Severity = "medium"
    title: str = ""
    message: str = ""
    threshold: Optional[float] = None
    current_value: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if not self.fingerprint:
            self.fingerprint = self.id

    @property
    def rule_id(self) -> Optional[str]:
        return self.metadata.get("rule_id")

    def to_payload(self) -> dict[str, Any]:
        """Flat delivery payload sent to notification channels"""
        return {
            "alert_id": self.id,
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "message": self.message,
            "threshold": self.threshold,
            "current_value": self.current_value,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "metadata": {
                k: v for k, v in self.metadata.items() if k != "snapshot"
            },
        }


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class RateLimitPolicy(BaseModel):
    max_per_hour: int = Field(default=100, ge=0)
    burst_limit: int = Field(default=10, ge=0)


class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: list[float] = Field(default_factory=lambda: [1.0, 5.0, 15.0])

    def backoff_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given (1-based) attempt"""
        if not self.backoff_seconds:
            return 0.0
        index = min(max(attempt - 1, 0), len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index]


class NotificationConfig(_Record):
    """Static delivery configuration for one channel endpoint"""

    channel: NotificationChannel
    endpoint: str
    name: str = ""
    enabled: bool = True
    severity_filter: list[Severity] = Field(
        default_factory=lambda: ["medium", "high", "critical"]
    )
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    send_resolutions: bool = False
    template: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        if not self.name:
            self.name = self.channel

    @property
    def rate_key(self) -> str:
        return f"{self.channel}-{self.endpoint}"

    def accepts(self, severity: str) -> bool:
        return self.enabled and severity in self.severity_filter


class AlertNotification(_Record):
    """One delivery attempt chain for an (alert, channel) pair"""

    id: str = Field(default_factory=lambda: new_id("ntf"))
    alert_id: str
    channel: NotificationChannel
    config_name: str
    endpoint: str = ""
    kind: NotificationKind = "alert"
    status: NotificationStatus = "pending"
    attempts: int = 0
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_attempt: Optional[datetime] = None
    next_retry: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


class EscalationConditions(BaseModel):
    severity: list[Severity]
    unresolved_minutes: float = Field(ge=0)
    alert_types: Optional[list[str]] = None


class EscalationActions(BaseModel):
    escalate_to: list[NotificationChannel] = Field(default_factory=list)
    increase_severity: bool = False
    create_incident: bool = False


class EscalationRule(_Record):
    id: str
    name: str = ""
    conditions: EscalationConditions
    actions: EscalationActions = Field(default_factory=EscalationActions)
    enabled: bool = True

    def matches(self, alert: Alert, age_minutes: float) -> bool:
        """An alert whose age reaches unresolved_minutes is due (the boundary is inclusive)"""
        if not self.enabled:
            return False
        if alert.severity not in self.conditions.severity:
            return False
        if (
            self.conditions.alert_types is not None
            and alert.type not in self.conditions.alert_types
        ):
            return False
        return age_minutes >= self.conditions.unresolved_minutes


# ---------------------------------------------------------------------------
# Response actions
# ---------------------------------------------------------------------------


class CommandImplementation(BaseModel):
    kind: Literal["command"] = "command"
    command: str
    timeout_seconds: float = Field(default=30.0, gt=0)


class ApiCallImplementation(BaseModel):
    kind: Literal["api_call"] = "api_call"
    url: str
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout_seconds: float = Field(default=30.0, gt=0)


class ScriptImplementation(BaseModel):
    kind: Literal["script"] = "script"
    path: str
    args: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=120.0, gt=0)


ActionImplementation = Annotated[
    Union[CommandImplementation, ApiCallImplementation, ScriptImplementation],
    Field(discriminator="kind"),
]


class ActionConditions(BaseModel):
    severity: Optional[list[Severity]] = None
    category: Optional[list[IncidentCategory]] = None
    max_executions_per_hour: int = Field(default=1, ge=0, alias="maxExecutionsPerHour")
    cooldown_minutes: float = Field(default=0.0, ge=0, alias="cooldownMinutes")

    model_config = ConfigDict(populate_by_name=True)


class Verification(BaseModel):
    health_check: Optional[str] = None
    metric: Optional[str] = None
    expected_value: Optional[Any] = None
    timeout_seconds: float = Field(default=30.0, gt=0)


class EstimatedImpact(BaseModel):
    disruption: Literal["none", "minimal", "moderate", "high"] = "none"
    duration: int = 0


class ResponseAction(_Record):
    """A single remediation step with its own gating, verification and rollback"""

    id: str
    type: ResponseActionType
    name: str = ""
    description: str = ""
    automated: bool = False
    conditions: ActionConditions = Field(default_factory=ActionConditions)
    implementation: ActionImplementation
    rollback: Optional[ActionImplementation] = None
    verification: Optional[Verification] = None
    risks: list[str] = Field(default_factory=list)
    estimated_impact: EstimatedImpact = Field(default_factory=EstimatedImpact)


class VerificationResult(BaseModel):
    success: bool
    details: str = ""


class ActionExecutionResult(BaseModel):
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    verified: Optional[bool] = None
    verification_details: Optional[str] = None
    rolled_back: Optional[bool] = None
    rollback_details: Optional[str] = None


class ActionExecution(_Record):
    """Journal entry for one invocation (or rejection) of a response action"""

    id: str = Field(default_factory=lambda: new_id("exec"))
    action_id: str
    alert_id: str
    playbook_id: str
    incident_id: Optional[str] = None
    status: ExecutionStatus = "running"
    skip_reason: Optional[SkipReason] = None
    attempts: int = 1
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    result: Optional[ActionExecutionResult] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Playbooks and incidents
# ---------------------------------------------------------------------------


class PlaybookTriggers(BaseModel):
    alerts: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)


class PlaybookEscalation(BaseModel):
    timeout_minutes: float = 15.0
    escalate_to: list[str] = Field(default_factory=list)
    notification_channels: list[str] = Field(default_factory=list)


class PlaybookDocumentation(BaseModel):
    description: str = ""
    common_causes: list[str] = Field(default_factory=list)
    diagnostic_steps: list[str] = Field(default_factory=list)
    prevention_measures: list[str] = Field(default_factory=list)


class Playbook(_Record):
    id: str
    name: str = ""
    category: IncidentCategory = "system"
    triggers: PlaybookTriggers = Field(default_factory=PlaybookTriggers)
    priority: IncidentPriority = "P2"
    actions: list[str] = Field(default_factory=list)
    escalation: PlaybookEscalation = Field(default_factory=PlaybookEscalation)
    documentation: PlaybookDocumentation = Field(default_factory=PlaybookDocumentation)
    enabled: bool = True

    @property
    def priority_rank(self) -> int:
        return PRIORITY_ORDER[self.priority]

    def matches(self, alert: Alert) -> bool:
        """Alert-type substring / rule id trigger match plus severity gate"""
        if not self.enabled:
            return False
        type_matches = any(
            trigger == "all"
            or trigger in alert.type
            or (alert.rule_id is not None and trigger == alert.rule_id)
            for trigger in self.triggers.alerts
        )
        # P0 playbooks are reserved for high/critical alerts
        severity_matches = alert.severity in ("high", "critical") or self.priority != "P0"
        return type_matches and severity_matches


class TimelineEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    action: str
    details: str = ""
    user: Optional[str] = None


class Incident(_Record):
    """Aggregate record grouping related alerts with its remediation timeline"""

    id: str = Field(default_factory=lambda: new_id("inc"))
    title: str
    description: str = ""
    severity: Severity = "critical"
    status: IncidentStatus = "open"
    category: Optional[IncidentCategory] = None
    alerts: list[str] = Field(default_factory=list)
    assignee: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    playbook_id: Optional[str] = None
    response_actions: list[str] = Field(default_factory=list)
    response_started_at: Optional[datetime] = None
    last_action_at: Optional[datetime] = None
    resolution_type: Optional[ResolutionType] = None
    resolution_reason: Optional[str] = None
    escalated: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ("open", "investigating")

    def add_timeline(
        self,
        action: str,
        details: str = "",
        user: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        self.timeline.append(
            TimelineEntry(
                timestamp=timestamp or utcnow(),
                action=action,
                details=details,
                user=user,
            )
        )


class IncidentResponseMetrics(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    active_incidents: int = 0
    total_incidents_24h: int = 0
    avg_response_time: float = 0.0
    automated_resolutions: int = 0
    manual_resolutions: int = 0
    mttr: float = 0.0
