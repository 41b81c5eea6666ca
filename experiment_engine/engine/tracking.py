"""
Event tracking for running tests.

Every accepted event is tied to an existing assignment. Dedupe runs under
the storage's (test, user) lock and counters change under each variant's
own lock; no tracking call takes the store-wide lock.
"""

from __future__ import annotations

import math
from typing import Any
from uuid import uuid4

from experiment_engine.core.data_types import validate_properties
from experiment_engine.core.exceptions import (
    InvalidConfigurationError,
    InvalidTransitionError,
    NoAssignmentError,
    NotFoundError,
    UnknownGoalError,
)
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    Assignment,
    AssignmentActivity,
    EventType,
    TrackedEvent,
    Variant,
    apply_event,
)

logger = get_logger(__name__, LogCategory.TRACKING)


def _coerce_value(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfigurationError(
            f"{field_name} must be a number", field_name=field_name, invalid_value=value
        )
    value = float(value)
    if not math.isfinite(value):
        raise InvalidConfigurationError(
            f"{field_name} must be finite", field_name=field_name, invalid_value=value
        )
    return value


class EventTracker:
    """Records exposures, conversions and metric observations."""

    def __init__(self, storage: ExperimentStorage) -> None:
        self.storage = storage
        self._metrics = get_metrics_collector()

    def _running_test(self, test_id: str) -> ABTest:
        test = self.storage.get_test(test_id)
        if test is None:
            raise NotFoundError(f"Unknown test: {test_id}", entity="test", entity_id=test_id)
        if not test.is_running:
            raise InvalidTransitionError(
                f"Cannot track events for test {test_id} in status {test.status.value}",
                current_status=test.status.value,
            )
        return test

    def _assignment(self, test: ABTest, user_id: str) -> tuple[Assignment, Variant]:
        assignment = self.storage.get_assignment(test.test_id, user_id)
        if assignment is None:
            raise NoAssignmentError(
                f"User {user_id} has no assignment in test {test.test_id}",
                test_id=test.test_id,
                user_id=user_id,
            )
        variant = test.get_variant(assignment.variant_id)
        if variant is None:
            raise NotFoundError(
                f"Assigned variant {assignment.variant_id} missing from test {test.test_id}",
                entity="variant",
                entity_id=assignment.variant_id,
            )
        return assignment, variant

    def _activity(self, assignment: Assignment) -> AssignmentActivity:
        activity = self.storage.get_activity(assignment.test_id, assignment.user_id)
        if activity is None:
            raise NoAssignmentError(
                f"No activity recorded for assignment {assignment.key}",
                test_id=assignment.test_id,
                user_id=assignment.user_id,
            )
        return activity

    def _event(self, event_type: EventType, assignment: Assignment, **fields: Any) -> TrackedEvent:
        return TrackedEvent(
            event_id=str(uuid4()),
            event_type=event_type,
            test_id=assignment.test_id,
            user_id=assignment.user_id,
            variant_id=assignment.variant_id,
            **fields,
        )

    def _expose(
        self,
        test: ABTest,
        assignment: Assignment,
        variant: Variant,
        activity: AssignmentActivity,
        properties: dict[str, Any],
    ) -> bool:
        """Record an exposure; caller holds the assignment lock."""
        event = self._event(EventType.EXPOSURE, assignment, properties=properties)
        self.storage.commit_event(event, test, activity)
        counted = apply_event(test, activity, event)
        if counted:
            self._metrics.record_exposure(test.test_id, variant.variant_id)
        return counted

    def track_exposure(
        self,
        test_id: str,
        user_id: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """Record that the user saw their variant.

        Returns:
            True if the variant's exposure count was incremented.

        Raises:
            NotFoundError: Unknown test.
            InvalidTransitionError: Test is not running.
            NoAssignmentError: User has no assignment.
        """
        test = self._running_test(test_id)
        properties = validate_properties(context)
        assignment, variant = self._assignment(test, user_id)

        with self.storage.assignment_lock(test_id, user_id):
            activity = self._activity(assignment)
            counted = self._expose(test, assignment, variant, activity, properties)

        logger.debug(
            f"Exposure {'counted' if counted else 'repeat'} for {user_id}",
            extra={"test_id": test_id, "user_id": user_id, "variant_id": variant.variant_id},
        )
        return counted

    def track_conversion(
        self,
        test_id: str,
        user_id: str,
        goal_id: str,
        value: float | None = None,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Record a goal conversion.

        A user converting without a prior exposure gets an implicit exposure
        first so that exposures never trail conversions.

        Returns:
            False if the conversion was a dropped duplicate, True otherwise.

        Raises:
            NotFoundError: Unknown test.
            InvalidTransitionError: Test is not running.
            UnknownGoalError: Goal is not defined on the test.
            NoAssignmentError: User has no assignment.
        """
        test = self._running_test(test_id)
        goal = test.get_goal(goal_id)
        if goal is None:
            raise UnknownGoalError(f"Goal {goal_id} is not defined on test {test_id}", goal_id=goal_id)
        amount = 1.0 if value is None else _coerce_value(value, "value")
        props = validate_properties(properties)
        assignment, variant = self._assignment(test, user_id)

        with self.storage.assignment_lock(test_id, user_id):
            activity = self._activity(assignment)
            if activity.exposures == 0:
                self._expose(test, assignment, variant, activity, {"implicit": True})

            if goal_id in activity.converted_goals and not goal.allow_repeat_conversions:
                logger.debug(
                    f"Dropped repeat conversion of {goal_id} for {user_id}",
                    extra={"test_id": test_id, "user_id": user_id},
                )
                return False

            event = self._event(
                EventType.CONVERSION, assignment, value=amount, goal_id=goal_id, properties=props
            )
            self.storage.commit_event(event, test, activity)
            first = apply_event(test, activity, event)

        if first:
            self._metrics.record_conversion(test_id, variant.variant_id, goal_id)
        logger.debug(
            f"Conversion {goal_id}={amount} for {user_id}",
            extra={"test_id": test_id, "user_id": user_id, "variant_id": variant.variant_id},
        )
        return True

    def track_metric(
        self,
        test_id: str,
        user_id: str,
        metric_name: str,
        value: float,
        properties: dict[str, Any] | None = None,
    ) -> None:
        """Fold a value into the variant's named metric aggregate.

        Raises:
            NotFoundError: Unknown test.
            InvalidTransitionError: Test is not running.
            NoAssignmentError: User has no assignment.
        """
        test = self._running_test(test_id)
        if not metric_name:
            raise InvalidConfigurationError("metric_name must not be empty", field_name="metric_name")
        amount = _coerce_value(value, "value")
        props = validate_properties(properties)
        assignment, variant = self._assignment(test, user_id)

        with self.storage.assignment_lock(test_id, user_id):
            activity = self._activity(assignment)
            event = self._event(
                EventType.METRIC, assignment, value=amount, metric_name=metric_name, properties=props
            )
            self.storage.commit_event(event, test, activity)
            apply_event(test, activity, event)

        self._metrics.record_metric_event(test_id, metric_name)
