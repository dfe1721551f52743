"""
Observability initialization

Wires tracing, metrics and structured logging for a running engine.
"""

import logging
import logging.config
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from .config import TelemetryConfig
from .metrics import MetricsCollector, initialize_metrics
from .tracer import initialize_tracing

logger = logging.getLogger(__name__)

_initialized = False
_config: Optional[TelemetryConfig] = None


class TraceContextFilter(logging.Filter):
    """Attach the active trace/span ids to every log record"""

    def filter(self, record):
        span = trace.get_current_span()
        if span.is_recording():
            span_context = span.get_span_context()
            record.trace_id = format(span_context.trace_id, "032x")
            record.span_id = format(span_context.span_id, "016x")
        else:
            record.trace_id = ""
            record.span_id = ""
        return True


def initialize_observability(config: TelemetryConfig) -> Optional[MetricsCollector]:
    """
    Initialize all observability features

    Args:
        config: Telemetry configuration

    Returns:
        The process-wide metrics collector, or None when metrics are off
    """
    global _initialized, _config

    if _initialized:
        logger.warning("Observability already initialized, skipping")
        return None

    _config = config

    if not config.enabled:
        logger.info("Observability is disabled")
        return None

    logger.info(f"Initializing observability for environment: {config.environment}")

    if config.logging.enabled:
        try:
            configure_logging(config)
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to configure logging: {e}")

    if config.tracing.enabled:
        try:
            initialize_tracing(config)
        except Exception as e:
            logger.error(f"Failed to initialize tracing: {e}")

    collector = None
    if config.metrics.enabled:
        collector = initialize_metrics(config)

    _initialized = True
    logger.info("Observability initialization complete")
    return collector


def configure_logging(config: TelemetryConfig) -> None:
    """Configure structured logging with trace correlation"""
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s %(trace_id)s %(span_id)s",
            },
            "text": {"format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"},
        },
        "filters": {"trace_context": {"()": TraceContextFilter}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": config.logging.level,
                "formatter": config.logging.format,
                "filters": ["trace_context"],
                "stream": "ext://sys.stderr",
            }
        },
        "root": {"level": config.logging.level, "handlers": ["console"]},
        "loggers": {"aire": {"level": config.logging.level, "propagate": True}},
    }

    logging.config.dictConfig(log_config)


def get_observability_config() -> Optional[TelemetryConfig]:
    """Get the current observability configuration"""
    return _config


def is_observability_initialized() -> bool:
    """Check if observability has been initialized"""
    return _initialized


def shutdown_observability() -> None:
    """Shutdown observability systems gracefully"""
    global _initialized

    if not _initialized:
        return

    logger.info("Shutting down observability systems")

    provider = trace.get_tracer_provider()
    if isinstance(provider, TracerProvider):
        try:
            provider.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down tracing: {e}")

    _initialized = False
    logger.info("Observability shutdown complete")
