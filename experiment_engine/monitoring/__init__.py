"""
Monitoring: structured logging and Prometheus metrics.
"""

from experiment_engine.monitoring.logger import (
    ContextLogger,
    JsonFormatter,
    LogCategory,
    LogFormat,
    TextFormatter,
    get_logger,
    setup_logging,
)
from experiment_engine.monitoring.metrics import (
    REGISTRY,
    MetricsCollector,
    get_metrics_collector,
)

__all__ = [
    "ContextLogger",
    "JsonFormatter",
    "LogCategory",
    "LogFormat",
    "TextFormatter",
    "get_logger",
    "setup_logging",
    "REGISTRY",
    "MetricsCollector",
    "get_metrics_collector",
]
