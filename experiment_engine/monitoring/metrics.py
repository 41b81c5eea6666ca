"""
Prometheus metrics collection for the experimentation engine.

Provides metrics for:
- Assignment volume and targeting outcomes
- Exposure, conversion and metric event throughput
- Analysis runs, verdicts and latency
- Bandit weight updates and errors
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)


# Create a custom registry to avoid conflicts
REGISTRY = CollectorRegistry(auto_describe=True)


# =============================================================================
# System Metrics
# =============================================================================

ENGINE_INFO = Info(
    "experiment_engine",
    "Experimentation engine information",
    registry=REGISTRY,
)

ERRORS_TOTAL = Counter(
    "experiment_errors_total",
    "Total number of errors",
    ["error_type", "component"],
    registry=REGISTRY,
)

RUNNING_TESTS = Gauge(
    "experiment_running_tests",
    "Number of tests currently running",
    registry=REGISTRY,
)


# =============================================================================
# Assignment Metrics
# =============================================================================

ASSIGNMENTS_TOTAL = Counter(
    "experiment_assignments_total",
    "New assignments created",
    ["test_id", "variant_id"],
    registry=REGISTRY,
)

ASSIGNMENTS_SKIPPED = Counter(
    "experiment_assignments_skipped_total",
    "Assignment requests that returned no variant",
    ["test_id", "reason"],  # not_found, not_running, audience, excluded, rollout
    registry=REGISTRY,
)


# =============================================================================
# Tracking Metrics
# =============================================================================

EXPOSURES_TOTAL = Counter(
    "experiment_exposures_total",
    "Exposure events recorded",
    ["test_id", "variant_id"],
    registry=REGISTRY,
)

CONVERSIONS_TOTAL = Counter(
    "experiment_conversions_total",
    "Conversion events counted",
    ["test_id", "variant_id", "goal_id"],
    registry=REGISTRY,
)

METRIC_EVENTS_TOTAL = Counter(
    "experiment_metric_events_total",
    "Metric events recorded",
    ["test_id", "metric_name"],
    registry=REGISTRY,
)


# =============================================================================
# Analysis Metrics
# =============================================================================

ANALYSES_TOTAL = Counter(
    "experiment_analyses_total",
    "Completed analyses",
    ["method", "verdict"],
    registry=REGISTRY,
)

ANALYSIS_LATENCY = Histogram(
    "experiment_analysis_latency_seconds",
    "Analysis latency in seconds",
    ["method"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

BANDIT_UPDATES_TOTAL = Counter(
    "experiment_bandit_updates_total",
    "Bandit allocation updates",
    ["strategy"],
    registry=REGISTRY,
)


# =============================================================================
# Metrics Collector
# =============================================================================


class MetricsCollector:
    """Central metrics collector for the engine.

    Provides convenient methods for updating metrics and generating
    Prometheus-compatible output.
    """

    _instance: "MetricsCollector | None" = None

    def __new__(cls) -> "MetricsCollector":
        """Singleton pattern for metrics collector."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def set_engine_info(self, version: str, environment: str) -> None:
        """Set engine information."""
        ENGINE_INFO.info({"version": version, "environment": environment})

    def set_running_tests(self, count: int) -> None:
        RUNNING_TESTS.set(count)

    def record_assignment(self, test_id: str, variant_id: str) -> None:
        """Record a newly created assignment."""
        ASSIGNMENTS_TOTAL.labels(test_id=test_id, variant_id=variant_id).inc()

    def record_assignment_skipped(self, test_id: str, reason: str) -> None:
        """Record an assignment request that returned no variant."""
        ASSIGNMENTS_SKIPPED.labels(test_id=test_id, reason=reason).inc()

    def record_exposure(self, test_id: str, variant_id: str) -> None:
        EXPOSURES_TOTAL.labels(test_id=test_id, variant_id=variant_id).inc()

    def record_conversion(self, test_id: str, variant_id: str, goal_id: str) -> None:
        CONVERSIONS_TOTAL.labels(
            test_id=test_id, variant_id=variant_id, goal_id=goal_id
        ).inc()

    def record_metric_event(self, test_id: str, metric_name: str) -> None:
        METRIC_EVENTS_TOTAL.labels(test_id=test_id, metric_name=metric_name).inc()

    def record_analysis(self, method: str, verdict: str) -> None:
        """Record a completed analysis.

        Args:
            method: Inference method (frequentist, bayesian, bootstrap).
            verdict: Resulting verdict.
        """
        ANALYSES_TOTAL.labels(method=method, verdict=verdict).inc()

    def record_bandit_update(self, strategy: str) -> None:
        BANDIT_UPDATES_TOTAL.labels(strategy=strategy).inc()

    def record_error(self, error_type: str, component: str) -> None:
        """Record an error.

        Args:
            error_type: Type of error.
            component: Component where error occurred.
        """
        ERRORS_TOTAL.labels(error_type=error_type, component=component).inc()

    @contextmanager
    def time_analysis(self, method: str) -> Generator[None, None, None]:
        """Context manager to time an analysis run.

        Args:
            method: Inference method.

        Yields:
            None
        """
        start = time.time()
        try:
            yield
        finally:
            ANALYSIS_LATENCY.labels(method=method).observe(time.time() - start)

    def get_metrics(self) -> bytes:
        """Generate Prometheus metrics output.

        Returns:
            Prometheus-formatted metrics bytes.
        """
        return generate_latest(REGISTRY)


def get_metrics_collector() -> MetricsCollector:
    """Get the singleton metrics collector instance.

    Returns:
        MetricsCollector instance.
    """
    return MetricsCollector()
