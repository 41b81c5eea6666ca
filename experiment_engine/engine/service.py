"""
Experimentation service.

Single entry point wiring storage, assignment, tracking, analysis, bandit
and lifecycle components together. Collaborator inputs may be pydantic
models or plain dicts; dicts are validated into the models.
"""

from __future__ import annotations

import functools
import threading
from typing import Any, Callable, TypeVar

from experiment_engine.config.settings import Settings, get_settings
from experiment_engine.core.data_types import (
    DeviceInfo,
    SessionInfo,
    UserProfile,
    coerce_model,
)
from experiment_engine.core.exceptions import (
    ExperimentEngineError,
    InvalidConfigurationError,
    NotFoundError,
)
from experiment_engine.engine.analyzer import StatisticalAnalyzer
from experiment_engine.engine.assignment import AssignmentEngine
from experiment_engine.engine.bandit import BanditOptimizer
from experiment_engine.engine.lifecycle import LifecycleController
from experiment_engine.engine.statistics import CancellationToken
from experiment_engine.engine.tracking import EventTracker
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage import create_storage
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    ExperimentStatus,
    ExperimentType,
    TrafficAllocation,
    UserExperiment,
)
from experiment_engine.storage.results import AnalysisResult

logger = get_logger(__name__, LogCategory.SYSTEM)

F = TypeVar("F", bound=Callable[..., Any])


def _observed(component: str) -> Callable[[F], F]:
    """Count engine errors by type before letting them propagate."""
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except ExperimentEngineError as e:
                get_metrics_collector().record_error(type(e).__name__, component)
                raise
        return wrapper  # type: ignore[return-value]
    return decorator


class ExperimentationService:
    """
    Central service for running experiments.

    Provides test lifecycle management, user assignment, event tracking,
    statistical analysis and bandit reallocation.
    """

    def __init__(
        self,
        storage: ExperimentStorage | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.storage = storage or create_storage(
            self.settings.storage.backend,
            self.settings.storage.path,
            self.settings.storage.lock_stripes,
        )
        self.lifecycle = LifecycleController(
            self.storage, self.settings.analysis, self.settings.bandit
        )
        self.assignment = AssignmentEngine(self.storage)
        self.tracker = EventTracker(self.storage)
        self.analyzer = StatisticalAnalyzer(self.storage, self.settings.analysis)
        self.bandit = BanditOptimizer(self.storage, self.settings.bandit)

    def _require(self, test_id: str) -> ABTest:
        test = self.storage.get_test(test_id)
        if test is None:
            raise NotFoundError(f"Unknown test: {test_id}", entity="test", entity_id=test_id)
        return test

    # Lifecycle

    @_observed("lifecycle")
    def create_test(self, config: dict[str, Any] | ABTest) -> ABTest:
        return self.lifecycle.create_test(config)

    @_observed("lifecycle")
    def start_test(self, test_id: str) -> bool:
        return self.lifecycle.start_test(test_id)

    @_observed("lifecycle")
    def stop_test(self, test_id: str) -> bool:
        return self.lifecycle.stop_test(test_id)

    @_observed("lifecycle")
    def archive_test(self, test_id: str) -> bool:
        return self.lifecycle.archive_test(test_id)

    @_observed("lifecycle")
    def update_test(self, test_id: str, **changes: Any) -> ABTest:
        return self.lifecycle.update_test(test_id, **changes)

    @_observed("lifecycle")
    def clone_test(self, test_id: str, name: str | None = None) -> ABTest:
        return self.lifecycle.clone_test(test_id, name)

    # Assignment

    @_observed("assignment")
    def assign_user_to_variant(
        self,
        test_id: str,
        user_id: str,
        user_profile: UserProfile | dict[str, Any] | None = None,
        session_info: SessionInfo | dict[str, Any] | None = None,
        device_info: DeviceInfo | dict[str, Any] | None = None,
    ) -> str | None:
        """Assign a user to a variant of a test.

        Returns:
            The variant id, or None if the test is unknown or not running,
            or the user is not eligible.

        Raises:
            InvalidConfigurationError: Malformed collaborator data, or a
                profile whose user_id disagrees with ``user_id``.
        """
        test = self.storage.get_test(test_id)
        if test is None:
            get_metrics_collector().record_assignment_skipped(test_id, "not_found")
            logger.debug(f"No assignment for {user_id}: unknown test {test_id}")
            return None

        if user_profile is None:
            user_profile = {"user_id": user_id}
        elif isinstance(user_profile, dict) and "user_id" not in user_profile:
            user_profile = {**user_profile, "user_id": user_id}
        profile = coerce_model(UserProfile, user_profile, "user_profile")
        if profile.user_id != user_id.strip():
            raise InvalidConfigurationError(
                "user_profile.user_id does not match user_id",
                field_name="user_profile.user_id",
                invalid_value=profile.user_id,
            )

        session = coerce_model(SessionInfo, session_info, "session_info")
        device = coerce_model(DeviceInfo, device_info, "device_info")
        return self.assignment.assign(test, profile, session, device)

    # Tracking

    @_observed("tracking")
    def track_exposure(
        self,
        test_id: str,
        user_id: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        return self.tracker.track_exposure(test_id, user_id, context)

    @_observed("tracking")
    def track_conversion(
        self,
        test_id: str,
        user_id: str,
        goal_id: str,
        value: float | None = None,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        return self.tracker.track_conversion(test_id, user_id, goal_id, value, properties)

    @_observed("tracking")
    def track_metric(
        self,
        test_id: str,
        user_id: str,
        metric_name: str,
        value: float,
        properties: dict[str, Any] | None = None,
    ) -> None:
        self.tracker.track_metric(test_id, user_id, metric_name, value, properties)

    # Analysis

    @_observed("analysis")
    def analyze_test(
        self,
        test_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        return self.analyzer.analyze(self._require(test_id), cancel_token)

    @_observed("bandit")
    def update_weights(self, test_id: str) -> TrafficAllocation:
        return self.bandit.update_weights(self._require(test_id))

    # Queries

    def get_test(self, test_id: str) -> ABTest | None:
        return self.lifecycle.get_test(test_id)

    def get_tests(
        self,
        status: ExperimentStatus | str | None = None,
        tag: str | None = None,
    ) -> list[ABTest]:
        return self.lifecycle.get_tests(status, tag)

    def get_user_experiments(self, user_id: str) -> list[UserExperiment]:
        return self.lifecycle.get_user_experiments(user_id)

    def get_user_assignments(self, user_id: str) -> dict[str, str]:
        return self.lifecycle.get_user_assignments(user_id)


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

_service: ExperimentationService | None = None
_service_lock = threading.Lock()


def get_experimentation_service() -> ExperimentationService:
    """Get singleton experimentation service built from settings."""
    global _service
    with _service_lock:
        if _service is None:
            _service = ExperimentationService()
        return _service


def create_ab_test(
    service: ExperimentationService,
    name: str,
    goal_id: str = "conversion",
    control_weight: float = 0.5,
    test_type: ExperimentType = ExperimentType.SIMPLE_AB,
    **kwargs: Any,
) -> ABTest:
    """
    Convenience function to create a two-arm A/B test.

    Args:
        service: Service to create the test in
        name: Human-readable test name
        goal_id: Id of the binary primary goal
        control_weight: Traffic fraction for control (default 0.5)
        test_type: Kind of experiment
        **kwargs: Additional configuration keys

    Returns:
        Draft test
    """
    config: dict[str, Any] = {
        "name": name,
        "test_type": test_type.value,
        "variants": [
            {"variant_id": "control", "name": "Control", "is_control": True, "weight": control_weight},
            {"variant_id": "treatment", "name": "Treatment", "weight": 1 - control_weight},
        ],
        "primary_goal": {"goal_id": goal_id, "name": goal_id},
    }
    config.update(kwargs)
    return service.create_test(config)
