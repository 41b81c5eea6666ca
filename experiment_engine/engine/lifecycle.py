"""
Test lifecycle: creation, validation and status transitions.

    draft --start--> running --stop--> concluded
    draft --archive--> archived

Configuration (variants, goals, targeting, statistics) is only editable in
draft; once running, only the bandit may change allocation weights.
"""

from __future__ import annotations

import math
import threading
from datetime import timedelta
from typing import Any
from uuid import uuid4

from experiment_engine.config.settings import AnalysisSettings, BanditSettings
from experiment_engine.core.exceptions import (
    AlreadyRunningError,
    InvalidConfigurationError,
    InvalidTransitionError,
    NotFoundError,
    TestConcludedError,
)
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    AudienceSegment,
    BanditStrategy,
    ExclusionCriteria,
    ExperimentStatus,
    ExperimentType,
    Goal,
    MetricType,
    StatisticalConfiguration,
    TrafficAllocation,
    UserExperiment,
    Variant,
    utc_now,
)

logger = get_logger(__name__, LogCategory.LIFECYCLE)

# Fields that describe a run rather than its configuration.
RUNTIME_FIELDS = (
    "status", "activated_at", "ends_at", "concluded_at",
    "looks_spent", "last_result", "created_at", "updated_at",
)


class LifecycleController:
    """Creates tests and moves them through their lifecycle."""

    def __init__(
        self,
        storage: ExperimentStorage,
        analysis_settings: AnalysisSettings | None = None,
        bandit_settings: BanditSettings | None = None,
    ) -> None:
        self.storage = storage
        self.analysis_settings = analysis_settings or AnalysisSettings()
        self.bandit_settings = bandit_settings or BanditSettings()
        self._lock = threading.RLock()
        self._metrics = get_metrics_collector()

    # -------------------------------------------------------------------------
    # Configuration parsing
    # -------------------------------------------------------------------------

    def build_test(self, config: dict[str, Any]) -> ABTest:
        """Build a draft test from a configuration mapping.

        Variant weights come from each variant's ``weight`` entry, or from
        ``allocation.weights``, or default to an equal split.

        Raises:
            InvalidConfigurationError: Missing or malformed fields.
        """
        try:
            return self._parse(config)
        except InvalidConfigurationError:
            raise
        except KeyError as e:
            raise InvalidConfigurationError(
                f"Missing required field: {e.args[0]}", field_name=str(e.args[0])
            ) from e
        except (TypeError, ValueError, AttributeError) as e:
            raise InvalidConfigurationError(f"Malformed test configuration: {e}") from e

    def _parse(self, config: dict[str, Any]) -> ABTest:
        variant_configs = list(config["variants"])
        variants = [Variant.from_dict(v) for v in variant_configs]

        allocation_config = dict(config.get("allocation") or {})
        if any("weight" in v for v in variant_configs):
            weights = {v["variant_id"]: float(v.get("weight", 0.0)) for v in variant_configs}
        elif allocation_config.get("weights"):
            weights = {k: float(w) for k, w in allocation_config["weights"].items()}
        else:
            weights = {v.variant_id: 1.0 / len(variants) for v in variants} if variants else {}

        test_type = ExperimentType(config.get("test_type", ExperimentType.SIMPLE_AB.value))
        strategy = allocation_config.get("bandit_strategy")
        if strategy is None and test_type == ExperimentType.MULTI_ARMED_BANDIT:
            strategy = BanditStrategy.THOMPSON_SAMPLING.value

        allocation = TrafficAllocation(
            weights=weights,
            rollout_percentage=float(allocation_config.get("rollout_percentage", 100.0)),
            bandit_strategy=BanditStrategy(strategy) if strategy else None,
            exploration_epsilon=float(
                allocation_config.get("exploration_epsilon", self.bandit_settings.exploration_epsilon)
            ),
        )

        defaults = self.analysis_settings
        statistics = StatisticalConfiguration.from_dict({
            "significance_level": defaults.significance_level,
            "power": defaults.power,
            "confidence_level": defaults.confidence_level,
            "correction": defaults.multiple_testing_correction,
            "bootstrap_iterations": defaults.bootstrap_iterations,
            "max_looks": defaults.max_looks,
            "random_seed": defaults.random_seed,
            **(config.get("statistics") or {}),
        })

        if "planned_duration_seconds" in config:
            duration = timedelta(seconds=float(config["planned_duration_seconds"]))
        else:
            duration = timedelta(days=float(config.get("planned_duration_days", 14)))

        return ABTest(
            test_id=config.get("test_id") or f"test_{uuid4().hex[:12]}",
            name=config["name"],
            description=config.get("description", ""),
            test_type=test_type,
            variants=variants,
            allocation=allocation,
            audience=AudienceSegment.from_dict(config.get("audience") or {}),
            exclusions=[ExclusionCriteria.from_dict(e) for e in config.get("exclusions") or []],
            primary_goal=Goal.from_dict(config["primary_goal"]),
            secondary_goals=[Goal.from_dict(g) for g in config.get("secondary_goals") or []],
            planned_duration=duration,
            minimum_sample_size=int(config.get("minimum_sample_size", 100)),
            max_sample_size=config.get("max_sample_size"),
            statistics=statistics,
            owner=config.get("owner", ""),
            tags=list(config.get("tags") or []),
            category=config.get("category", ""),
        )

    def validate_test(self, test: ABTest) -> None:
        """Check structural and statistical invariants.

        Raises:
            InvalidConfigurationError: On the first violated invariant.
        """
        def fail(message: str, field_name: str, value: Any = None) -> None:
            raise InvalidConfigurationError(message, field_name=field_name, invalid_value=value)

        if not test.name or not test.name.strip():
            fail("Test name must not be empty", "name")

        variant_ids = [v.variant_id for v in test.variants]
        if len(variant_ids) < 2:
            fail("A test requires at least 2 variants", "variants", len(variant_ids))
        if len(set(variant_ids)) != len(variant_ids):
            fail("Variant ids must be unique", "variants", variant_ids)
        controls = [v.variant_id for v in test.variants if v.is_control]
        if len(controls) != 1:
            fail("Exactly one variant must be marked as control", "is_control", controls)

        weights = test.allocation.weights
        if set(weights) != set(variant_ids):
            fail("Allocation weights must cover exactly the test's variants", "weights", sorted(weights))
        if any(not math.isfinite(w) or w < 0 or w > 1 for w in weights.values()):
            fail("Variant weights must lie in [0, 1]", "weights", weights)
        total = sum(weights.values())
        if abs(total - 1.0) > self.analysis_settings.weight_tolerance:
            fail(f"Variant weights must sum to 1.0: {total}", "weights", total)

        allocation = test.allocation
        if not 0 <= allocation.rollout_percentage <= 100:
            fail("rollout_percentage must be within [0, 100]", "rollout_percentage", allocation.rollout_percentage)
        epsilon = allocation.exploration_epsilon
        if epsilon < 0 or len(variant_ids) * epsilon > 1:
            fail("exploration_epsilon must satisfy 0 <= k * epsilon <= 1", "exploration_epsilon", epsilon)
        if test.test_type == ExperimentType.MULTI_ARMED_BANDIT and allocation.bandit_strategy is None:
            fail("Bandit tests require a bandit strategy", "bandit_strategy")

        goal_ids = [g.goal_id for g in test.goals]
        if len(set(goal_ids)) != len(goal_ids):
            fail("Goal ids must be unique", "goals", goal_ids)
        for goal in test.goals:
            if goal.minimum_detectable_effect <= 0:
                fail("minimum_detectable_effect must be positive", "minimum_detectable_effect",
                     goal.minimum_detectable_effect)
            if (goal.metric_type == MetricType.BINARY and goal.expected_baseline is not None
                    and not 0 < goal.expected_baseline < 1):
                fail("Binary expected_baseline must lie in (0, 1)", "expected_baseline", goal.expected_baseline)

        stats_config = test.statistics
        for name in ("significance_level", "power", "confidence_level"):
            value = getattr(stats_config, name)
            if not 0 < value < 1:
                fail(f"{name} must lie in (0, 1)", name, value)
        if stats_config.max_looks < 1:
            fail("max_looks must be at least 1", "max_looks", stats_config.max_looks)
        if stats_config.bootstrap_iterations < 1:
            fail("bootstrap_iterations must be at least 1", "bootstrap_iterations",
                 stats_config.bootstrap_iterations)

        if test.minimum_sample_size < 1:
            fail("minimum_sample_size must be at least 1", "minimum_sample_size", test.minimum_sample_size)
        if test.max_sample_size is not None and test.max_sample_size < test.minimum_sample_size:
            fail("max_sample_size must not be below minimum_sample_size", "max_sample_size",
                 test.max_sample_size)
        if test.planned_duration.total_seconds() <= 0:
            fail("planned_duration must be positive", "planned_duration", test.planned_duration)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _require(self, test_id: str) -> ABTest:
        test = self.storage.get_test(test_id)
        if test is None:
            raise NotFoundError(f"Unknown test: {test_id}", entity="test", entity_id=test_id)
        return test

    def _refresh_running_gauge(self) -> None:
        self._metrics.set_running_tests(
            sum(1 for t in self.storage.list_tests() if t.is_running)
        )

    def create_test(self, config: dict[str, Any] | ABTest) -> ABTest:
        """Validate a configuration and store it as a draft test.

        Raises:
            InvalidConfigurationError: Invalid config or duplicate test id.
        """
        test = config if isinstance(config, ABTest) else self.build_test(config)
        self.validate_test(test)

        with self._lock:
            if self.storage.get_test(test.test_id) is not None:
                raise InvalidConfigurationError(
                    f"Test {test.test_id} already exists", field_name="test_id", invalid_value=test.test_id
                )
            test.status = ExperimentStatus.DRAFT
            self.storage.save_test(test)

        logger.info(
            f"Created test {test.test_id} ({test.test_type.value})",
            extra={"test_id": test.test_id, "extra_data": {"variants": len(test.variants)}},
        )
        return test

    def start_test(self, test_id: str) -> bool:
        """Move a draft test to running.

        Raises:
            NotFoundError: Unknown test.
            AlreadyRunningError: Test is already running.
            TestConcludedError: Test is concluded or archived.
        """
        with self._lock:
            test = self._require(test_id)
            if test.status == ExperimentStatus.RUNNING:
                raise AlreadyRunningError(
                    f"Test {test_id} is already running",
                    current_status=test.status.value,
                    target_status=ExperimentStatus.RUNNING.value,
                )
            if test.status != ExperimentStatus.DRAFT:
                raise TestConcludedError(
                    f"Test {test_id} is {test.status.value} and cannot be started",
                    current_status=test.status.value,
                    target_status=ExperimentStatus.RUNNING.value,
                )
            self.validate_test(test)

            now = utc_now()
            test.activated_at = now
            test.ends_at = now + test.planned_duration
            test.status = ExperimentStatus.RUNNING
            self.storage.save_test(test)

        self._refresh_running_gauge()
        logger.info(f"Started test {test_id}", extra={"test_id": test_id})
        return True

    def stop_test(self, test_id: str) -> bool:
        """Conclude a running test.

        Raises:
            NotFoundError: Unknown test.
            InvalidTransitionError: Test is not running.
        """
        with self._lock:
            test = self._require(test_id)
            if test.status != ExperimentStatus.RUNNING:
                raise InvalidTransitionError(
                    f"Only running tests can be stopped; {test_id} is {test.status.value}",
                    current_status=test.status.value,
                    target_status=ExperimentStatus.CONCLUDED.value,
                )
            test.status = ExperimentStatus.CONCLUDED
            test.concluded_at = utc_now()
            self.storage.save_test(test)

        self._refresh_running_gauge()
        logger.info(f"Concluded test {test_id}", extra={"test_id": test_id})
        return True

    def archive_test(self, test_id: str) -> bool:
        """Archive a draft test that will never run."""
        with self._lock:
            test = self._require(test_id)
            if test.status != ExperimentStatus.DRAFT:
                raise InvalidTransitionError(
                    f"Only draft tests can be archived; {test_id} is {test.status.value}",
                    current_status=test.status.value,
                    target_status=ExperimentStatus.ARCHIVED.value,
                )
            test.status = ExperimentStatus.ARCHIVED
            self.storage.save_test(test)

        logger.info(f"Archived test {test_id}", extra={"test_id": test_id})
        return True

    def update_test(self, test_id: str, **changes: Any) -> ABTest:
        """Edit a draft test's configuration.

        Accepts the same keys as ``create_test``; unspecified keys keep
        their current values.

        Raises:
            NotFoundError: Unknown test.
            InvalidTransitionError: Test is not a draft.
            InvalidConfigurationError: The edited configuration is invalid.
        """
        with self._lock:
            test = self._require(test_id)
            if test.status != ExperimentStatus.DRAFT:
                raise InvalidTransitionError(
                    f"Test {test_id} is {test.status.value}; only drafts can be edited",
                    current_status=test.status.value,
                )
            if "test_id" in changes and changes["test_id"] != test_id:
                raise InvalidConfigurationError(
                    "test_id cannot be changed", field_name="test_id", invalid_value=changes["test_id"]
                )

            config = self._config_of(test)
            if "variants" in changes and "allocation" not in changes:
                config["allocation"].pop("weights", None)
            config.update(changes)

            updated = self.build_test(config)
            self.validate_test(updated)
            updated.created_at = test.created_at
            self.storage.save_test(updated)

        logger.info(
            f"Updated test {test_id}",
            extra={"test_id": test_id, "extra_data": {"fields": sorted(changes)}},
        )
        return updated

    def clone_test(self, test_id: str, name: str | None = None) -> ABTest:
        """Create a new draft run with the same configuration and zeroed counters."""
        source = self._require(test_id)
        config = self._config_of(source)
        config["test_id"] = None
        config["name"] = name or f"{source.name} (copy)"

        clone = self.build_test(config)
        for variant in clone.variants:
            variant.reset()
        created = self.create_test(clone)
        logger.info(
            f"Cloned test {test_id} into {created.test_id}",
            extra={"test_id": created.test_id},
        )
        return created

    @staticmethod
    def _config_of(test: ABTest) -> dict[str, Any]:
        config = test.to_dict()
        for name in RUNTIME_FIELDS:
            config.pop(name, None)
        return config

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_test(self, test_id: str) -> ABTest | None:
        return self.storage.get_test(test_id)

    def get_tests(
        self,
        status: ExperimentStatus | str | None = None,
        tag: str | None = None,
    ) -> list[ABTest]:
        """List tests, optionally filtered by status and tag."""
        tests = self.storage.list_tests()
        if status is not None:
            wanted = ExperimentStatus(status)
            tests = [t for t in tests if t.status == wanted]
        if tag is not None:
            tests = [t for t in tests if tag in t.tags]
        return tests

    def get_user_assignments(self, user_id: str) -> dict[str, str]:
        """Map of test id to variant id for every test the user is assigned to."""
        return {a.test_id: a.variant_id for a in self.storage.get_user_assignments(user_id)}

    def get_user_experiments(self, user_id: str) -> list[UserExperiment]:
        """The user's assignments joined with their tracked activity."""
        experiments = []
        for assignment in self.storage.get_user_assignments(user_id):
            test = self.storage.get_test(assignment.test_id)
            if test is None:
                continue
            activity = self.storage.get_activity(assignment.test_id, user_id)
            experiments.append(UserExperiment(
                test_id=assignment.test_id,
                user_id=user_id,
                variant_id=assignment.variant_id,
                assigned_at=assignment.assigned_at,
                status=test.status,
                exposures=activity.exposures if activity else 0,
                converted_goals=frozenset(activity.converted_goals) if activity else frozenset(),
                goal_values=dict(activity.goal_values) if activity else {},
                last_event_at=activity.last_event_at if activity else None,
            ))
        return experiments
