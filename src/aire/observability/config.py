"""
Telemetry configuration for OpenTelemetry and Prometheus

Provides configuration options for tracing, metrics, and logging.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


class TracingConfig(BaseModel):
    """OpenTelemetry tracing configuration"""

    enabled: bool = Field(default=True, description="Enable OpenTelemetry tracing")
    service_name: str = Field(default="aire", description="Service name for traces")
    service_version: str = Field(default="0.1.0", description="Service version")

    # OTLP Exporter configuration
    otlp_endpoint: Optional[str] = Field(
        default=None, description="OTLP endpoint URL (e.g., http://localhost:4317)"
    )
    otlp_headers: dict[str, str] = Field(
        default_factory=dict, description="OTLP headers for authentication"
    )
    otlp_insecure: bool = Field(
        default=True, description="Use insecure connection for OTLP"
    )

    sample_rate: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Trace sampling rate (0.0 = no traces, 1.0 = all traces)",
    )

    resource_attributes: dict[str, str] = Field(
        default_factory=dict, description="Additional resource attributes for traces"
    )

    @classmethod
    def from_env(cls) -> "TracingConfig":
        """Create tracing config from environment variables"""
        return cls(
            enabled=os.getenv("OTEL_TRACING_ENABLED", "true").lower() == "true",
            service_name=os.getenv("OTEL_SERVICE_NAME", "aire"),
            service_version=os.getenv("OTEL_SERVICE_VERSION", "0.1.0"),
            otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
            otlp_headers=cls._parse_headers(
                os.getenv("OTEL_EXPORTER_OTLP_HEADERS", "")
            ),
            otlp_insecure=os.getenv("OTEL_EXPORTER_OTLP_INSECURE", "true").lower()
            == "true",
            sample_rate=float(os.getenv("OTEL_TRACE_SAMPLE_RATE", "1.0")),
        )

    @staticmethod
    def _parse_headers(headers_str: str) -> dict[str, str]:
        """Parse OTLP headers from environment variable format"""
        headers = {}
        if headers_str:
            for header in headers_str.split(","):
                if "=" in header:
                    key, value = header.split("=", 1)
                    headers[key.strip()] = value.strip()
        return headers


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration"""

    enabled: bool = Field(default=True, description="Enable Prometheus metrics")
    start_server: bool = Field(
        default=False, description="Expose metrics over HTTP on the given port"
    )
    port: int = Field(
        default=9090, ge=1024, le=65535, description="Metrics server port"
    )

    default_labels: dict[str, str] = Field(
        default_factory=dict, description="Default labels added to all metrics"
    )

    # Histogram buckets for delivery / execution durations (seconds)
    duration_buckets: list[float] = Field(
        default_factory=lambda: [0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
        description="Histogram buckets for delivery and execution durations",
    )
    # Incident response time buckets: 1s to 30 minutes
    response_time_buckets: list[float] = Field(
        default_factory=lambda: [1, 5, 15, 30, 60, 300, 600, 1800],
        description="Histogram buckets for incident response time",
    )

    @classmethod
    def from_env(cls) -> "MetricsConfig":
        """Create metrics config from environment variables"""
        return cls(
            enabled=os.getenv("PROMETHEUS_METRICS_ENABLED", "true").lower() == "true",
            start_server=os.getenv("PROMETHEUS_METRICS_SERVER", "false").lower()
            == "true",
            port=int(os.getenv("PROMETHEUS_METRICS_PORT", "9090")),
        )


class LoggingConfig(BaseModel):
    """Structured logging configuration"""

    enabled: bool = Field(default=True, description="Enable structured logging")
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json|text)")

    include_trace_id: bool = Field(
        default=True, description="Include trace ID in log records"
    )
    include_span_id: bool = Field(
        default=True, description="Include span ID in log records"
    )


class TelemetryConfig(BaseModel):
    """Complete telemetry configuration"""

    enabled: bool = Field(default=True, description="Enable all telemetry features")

    tracing: TracingConfig = Field(default_factory=TracingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    environment: str = Field(
        default="development",
        description="Deployment environment (development|staging|production)",
    )

    @classmethod
    def from_env(cls) -> "TelemetryConfig":
        """Create complete telemetry config from environment variables"""
        return cls(
            enabled=os.getenv("TELEMETRY_ENABLED", "true").lower() == "true",
            environment=os.getenv("ENVIRONMENT", "development"),
            tracing=TracingConfig.from_env(),
            metrics=MetricsConfig.from_env(),
        )

    def get_resource_attributes(self) -> dict[str, str]:
        """Get OpenTelemetry resource attributes"""
        attributes = {
            "service.name": self.tracing.service_name,
            "service.version": self.tracing.service_version,
            "deployment.environment": self.environment,
        }
        attributes.update(self.tracing.resource_attributes)
        return attributes

    def should_export_traces(self) -> bool:
        """Check if traces should be exported to external system"""
        return (
            self.enabled
            and self.tracing.enabled
            and self.tracing.otlp_endpoint is not None
        )

    def should_start_metrics_server(self) -> bool:
        """Check if metrics server should be started"""
        return self.enabled and self.metrics.enabled and self.metrics.start_server
