"""
Observability module for aire

OpenTelemetry tracing, Prometheus metrics and structured logging for the
response engine.
"""

from .config import TelemetryConfig
from .init import (
    configure_logging,
    initialize_observability,
    is_observability_initialized,
    shutdown_observability,
)
from .metrics import MetricsCollector, get_metrics
from .tracer import get_tracer, trace_async, trace_operation

__all__ = [
    "TelemetryConfig",
    "configure_logging",
    "get_tracer",
    "trace_operation",
    "trace_async",
    "get_metrics",
    "MetricsCollector",
    "initialize_observability",
    "shutdown_observability",
    "is_observability_initialized",
]
