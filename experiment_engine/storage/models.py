"""
Entity definitions for experiments.

Dataclasses for tests, variants, goals, traffic allocation, audience
targeting, assignments and tracked events, each with dictionary
serialization for the file backend.

Variant counters are guarded by a per-variant lock and only ever grow;
analysis reads them through immutable snapshots.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from experiment_engine.storage.results import AnalysisResult

SAMPLE_LIMIT = 1000
TIME_SERIES_LIMIT = 1000
PERCENTILES = (50, 90, 95, 99)
DATETIME_TAG = "__datetime__"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# ENUMS
# =============================================================================

class ExperimentType(str, Enum):
    """Kind of experiment."""
    SIMPLE_AB = "simple_ab"
    MULTIVARIATE = "multivariate"
    MULTI_ARMED_BANDIT = "multi_armed_bandit"
    SEQUENTIAL = "sequential"


class ExperimentStatus(str, Enum):
    """Lifecycle status of a test."""
    DRAFT = "draft"
    RUNNING = "running"
    CONCLUDED = "concluded"
    ARCHIVED = "archived"


class MetricType(str, Enum):
    """Type of goal metric."""
    BINARY = "binary"  # converted or not
    CONTINUOUS = "continuous"  # e.g. revenue, time on task


class GoalDirection(str, Enum):
    """Which direction counts as an improvement."""
    INCREASE = "increase"
    DECREASE = "decrease"


class BanditStrategy(str, Enum):
    """Strategy for reallocating bandit traffic."""
    EPSILON_GREEDY = "epsilon_greedy"
    THOMPSON_SAMPLING = "thompson_sampling"
    UCB = "ucb"


class InferenceMethod(str, Enum):
    """Statistical inference method."""
    FREQUENTIST = "frequentist"
    BAYESIAN = "bayesian"
    BOOTSTRAP = "bootstrap"


class CorrectionMethod(str, Enum):
    """Multiple-testing correction across treatment comparisons."""
    BONFERRONI = "bonferroni"
    BENJAMINI_HOCHBERG = "benjamini_hochberg"
    NONE = "none"


class CriterionOperator(str, Enum):
    """Comparison operators for audience criteria."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    EXISTS = "exists"


class EventType(str, Enum):
    """Kind of tracked event."""
    EXPOSURE = "exposure"
    CONVERSION = "conversion"
    METRIC = "metric"


# =============================================================================
# AGGREGATES
# =============================================================================

@dataclass(frozen=True)
class TimeSeriesPoint:
    """One observation of a value stream with the running count after it."""
    timestamp: datetime
    value: float
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value, "count": self.count}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimeSeriesPoint:
        return cls(
            timestamp=_parse_dt(data.get("timestamp")) or utc_now(),
            value=float(data["value"]),
            count=int(data["count"]),
        )


@dataclass
class RunningAggregate:
    """Count, sum and sum of squares of an observed value stream.

    Also keeps the most recent ``SAMPLE_LIMIT`` values for percentiles and
    a time series capped at ``TIME_SERIES_LIMIT`` points.
    """
    count: int = 0
    total: float = 0.0
    total_sq: float = 0.0
    min_value: float = math.inf
    max_value: float = -math.inf
    sample: deque[float] = field(default_factory=lambda: deque(maxlen=SAMPLE_LIMIT))
    time_series: deque[TimeSeriesPoint] = field(
        default_factory=lambda: deque(maxlen=TIME_SERIES_LIMIT)
    )

    def add(self, value: float, at: datetime | None = None) -> None:
        self.count += 1
        self.total += value
        self.total_sq += value * value
        self.min_value = min(self.min_value, value)
        self.max_value = max(self.max_value, value)
        self.sample.append(value)
        self.time_series.append(TimeSeriesPoint(at or utc_now(), value, self.count))

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    @property
    def variance(self) -> float:
        """Unbiased sample variance."""
        if self.count < 2:
            return 0.0
        var = (self.total_sq - self.total * self.total / self.count) / (self.count - 1)
        return max(var, 0.0)

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)

    def percentile(self, q: float) -> float:
        """Linearly interpolated percentile of the retained sample; 0.0 when empty."""
        if not self.sample:
            return 0.0
        return float(np.percentile(np.fromiter(self.sample, dtype=float), q))

    def percentiles(self) -> dict[str, float]:
        """p50, p90, p95 and p99 of the retained sample."""
        if not self.sample:
            return {f"p{q}": 0.0 for q in PERCENTILES}
        values = np.percentile(np.fromiter(self.sample, dtype=float), PERCENTILES)
        return {f"p{q}": float(v) for q, v in zip(PERCENTILES, values)}

    def copy(self) -> RunningAggregate:
        return replace(
            self,
            sample=deque(self.sample, maxlen=SAMPLE_LIMIT),
            time_series=deque(self.time_series, maxlen=TIME_SERIES_LIMIT),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "count": self.count,
            "total": self.total,
            "total_sq": self.total_sq,
            "min_value": self.min_value if self.count else None,
            "max_value": self.max_value if self.count else None,
            "sample": list(self.sample),
            "time_series": [p.to_dict() for p in self.time_series],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunningAggregate:
        """Create from dictionary."""
        return cls(
            count=data.get("count", 0),
            total=data.get("total", 0.0),
            total_sq=data.get("total_sq", 0.0),
            min_value=data["min_value"] if data.get("min_value") is not None else math.inf,
            max_value=data["max_value"] if data.get("max_value") is not None else -math.inf,
            sample=deque((float(v) for v in data.get("sample", [])), maxlen=SAMPLE_LIMIT),
            time_series=deque(
                (TimeSeriesPoint.from_dict(p) for p in data.get("time_series", [])),
                maxlen=TIME_SERIES_LIMIT,
            ),
        )


# =============================================================================
# TEST CONFIGURATION
# =============================================================================

@dataclass
class Goal:
    """Success metric of a test."""
    goal_id: str
    name: str = ""
    metric_type: MetricType = MetricType.BINARY
    direction: GoalDirection = GoalDirection.INCREASE
    weight: float = 1.0
    allow_repeat_conversions: bool = False
    allow_repeat_exposures: bool = False
    minimum_detectable_effect: float = 0.05  # relative, 0.05 = 5%
    expected_baseline: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "goal_id": self.goal_id,
            "name": self.name,
            "metric_type": self.metric_type.value,
            "direction": self.direction.value,
            "weight": self.weight,
            "allow_repeat_conversions": self.allow_repeat_conversions,
            "allow_repeat_exposures": self.allow_repeat_exposures,
            "minimum_detectable_effect": self.minimum_detectable_effect,
            "expected_baseline": self.expected_baseline,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Goal:
        """Create from dictionary."""
        return cls(
            goal_id=data["goal_id"],
            name=data.get("name", data["goal_id"]),
            metric_type=MetricType(data.get("metric_type", "binary")),
            direction=GoalDirection(data.get("direction", "increase")),
            weight=data.get("weight", 1.0),
            allow_repeat_conversions=data.get("allow_repeat_conversions", False),
            allow_repeat_exposures=data.get("allow_repeat_exposures", False),
            minimum_detectable_effect=data.get("minimum_detectable_effect", 0.05),
            expected_baseline=data.get("expected_baseline"),
        )


@dataclass(frozen=True)
class TrafficAllocation:
    """Immutable traffic split; replaced wholesale on every update."""
    weights: dict[str, float]  # variant_id -> weight, in variant order
    rollout_percentage: float = 100.0
    bandit_strategy: BanditStrategy | None = None
    exploration_epsilon: float = 0.05
    updated_at: datetime = field(default_factory=utc_now)

    def with_weights(self, weights: dict[str, float]) -> TrafficAllocation:
        return replace(self, weights=dict(weights), updated_at=utc_now())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "weights": dict(self.weights),
            "rollout_percentage": self.rollout_percentage,
            "bandit_strategy": self.bandit_strategy.value if self.bandit_strategy else None,
            "exploration_epsilon": self.exploration_epsilon,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrafficAllocation:
        """Create from dictionary."""
        strategy = data.get("bandit_strategy")
        return cls(
            weights={k: float(v) for k, v in data.get("weights", {}).items()},
            rollout_percentage=data.get("rollout_percentage", 100.0),
            bandit_strategy=BanditStrategy(strategy) if strategy else None,
            exploration_epsilon=data.get("exploration_epsilon", 0.05),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
        )


@dataclass
class SegmentCriterion:
    """Single predicate over a dotted field path."""
    field: str  # e.g. "attributes.subject", "device.device_type"
    operator: CriterionOperator
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SegmentCriterion:
        return cls(
            field=data["field"],
            operator=CriterionOperator(data["operator"]),
            value=data.get("value"),
        )


@dataclass
class AudienceSegment:
    """Targeting predicate; every criterion must match."""
    segment_id: str = "all_users"
    name: str = "All users"
    criteria: list[SegmentCriterion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segment_id": self.segment_id,
            "name": self.name,
            "criteria": [c.to_dict() for c in self.criteria],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AudienceSegment:
        return cls(
            segment_id=data.get("segment_id", "all_users"),
            name=data.get("name", "All users"),
            criteria=[SegmentCriterion.from_dict(c) for c in data.get("criteria", [])],
        )


@dataclass
class ExclusionCriteria:
    """Named group of criteria; a user matching all of them is excluded."""
    reason: str
    criteria: list[SegmentCriterion] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "criteria": [c.to_dict() for c in self.criteria]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExclusionCriteria:
        return cls(
            reason=data.get("reason", ""),
            criteria=[SegmentCriterion.from_dict(c) for c in data.get("criteria", [])],
        )


@dataclass
class StatisticalConfiguration:
    """Inference settings for a test."""
    method: InferenceMethod = InferenceMethod.FREQUENTIST
    significance_level: float = 0.05
    power: float = 0.80
    confidence_level: float = 0.95
    correction: CorrectionMethod = CorrectionMethod.BENJAMINI_HOCHBERG
    bootstrap_iterations: int = 2000
    max_looks: int = 5
    random_seed: int = 42

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "method": self.method.value,
            "significance_level": self.significance_level,
            "power": self.power,
            "confidence_level": self.confidence_level,
            "correction": self.correction.value,
            "bootstrap_iterations": self.bootstrap_iterations,
            "max_looks": self.max_looks,
            "random_seed": self.random_seed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StatisticalConfiguration:
        """Create from dictionary."""
        return cls(
            method=InferenceMethod(data.get("method", "frequentist")),
            significance_level=data.get("significance_level", 0.05),
            power=data.get("power", 0.80),
            confidence_level=data.get("confidence_level", 0.95),
            correction=CorrectionMethod(data.get("correction", "benjamini_hochberg")),
            bootstrap_iterations=data.get("bootstrap_iterations", 2000),
            max_looks=data.get("max_looks", 5),
            random_seed=data.get("random_seed", 42),
        )


# =============================================================================
# VARIANTS
# =============================================================================

@dataclass(frozen=True)
class VariantSnapshot:
    """Point-in-time copy of a variant's counters."""
    variant_id: str
    is_control: bool
    exposures: int
    conversions: dict[str, int]
    goal_values: dict[str, RunningAggregate]
    metrics: dict[str, RunningAggregate]

    def conversion_count(self, goal_id: str) -> int:
        return self.conversions.get(goal_id, 0)

    def goal_aggregate(self, goal_id: str) -> RunningAggregate:
        return self.goal_values.get(goal_id) or RunningAggregate()


@dataclass
class Variant:
    """Treatment arm of a test, including its live counters."""
    variant_id: str
    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    is_control: bool = False

    exposures: int = 0
    conversions: dict[str, int] = field(default_factory=dict)
    goal_values: dict[str, RunningAggregate] = field(default_factory=dict)
    metrics: dict[str, RunningAggregate] = field(default_factory=dict)

    _lock: threading.Lock = field(
        default_factory=threading.Lock, repr=False, compare=False
    )

    def record_exposure(self) -> int:
        with self._lock:
            self.exposures += 1
            return self.exposures

    def record_conversion(
        self,
        goal_id: str,
        value: float,
        new_converter: bool,
        at: datetime | None = None,
    ) -> None:
        """Fold a conversion value; bump the unique count only for new converters."""
        with self._lock:
            if new_converter:
                self.conversions[goal_id] = self.conversions.get(goal_id, 0) + 1
            self.goal_values.setdefault(goal_id, RunningAggregate()).add(value, at)

    def record_metric(self, metric_name: str, value: float, at: datetime | None = None) -> None:
        with self._lock:
            self.metrics.setdefault(metric_name, RunningAggregate()).add(value, at)

    def snapshot(self) -> VariantSnapshot:
        with self._lock:
            return VariantSnapshot(
                variant_id=self.variant_id,
                is_control=self.is_control,
                exposures=self.exposures,
                conversions=dict(self.conversions),
                goal_values={k: v.copy() for k, v in self.goal_values.items()},
                metrics={k: v.copy() for k, v in self.metrics.items()},
            )

    def reset(self) -> None:
        """Zero all counters before a clone starts a new run or a reload replays events."""
        with self._lock:
            self.exposures = 0
            self.conversions = {}
            self.goal_values = {}
            self.metrics = {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        with self._lock:
            return {
                "variant_id": self.variant_id,
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
                "is_control": self.is_control,
                "exposures": self.exposures,
                "conversions": dict(self.conversions),
                "goal_values": {k: v.to_dict() for k, v in self.goal_values.items()},
                "metrics": {k: v.to_dict() for k, v in self.metrics.items()},
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Variant:
        """Create from dictionary."""
        return cls(
            variant_id=data["variant_id"],
            name=data.get("name", data["variant_id"]),
            description=data.get("description", ""),
            parameters=data.get("parameters", {}),
            is_control=data.get("is_control", False),
            exposures=data.get("exposures", 0),
            conversions=dict(data.get("conversions", {})),
            goal_values={
                k: RunningAggregate.from_dict(v) for k, v in data.get("goal_values", {}).items()
            },
            metrics={
                k: RunningAggregate.from_dict(v) for k, v in data.get("metrics", {}).items()
            },
        )


# =============================================================================
# TEST
# =============================================================================

@dataclass
class ABTest:
    """A controlled experiment and its accumulated state."""
    test_id: str
    name: str
    variants: list[Variant]
    allocation: TrafficAllocation
    primary_goal: Goal
    description: str = ""
    test_type: ExperimentType = ExperimentType.SIMPLE_AB
    audience: AudienceSegment = field(default_factory=AudienceSegment)
    exclusions: list[ExclusionCriteria] = field(default_factory=list)
    secondary_goals: list[Goal] = field(default_factory=list)

    planned_duration: timedelta = field(default_factory=lambda: timedelta(days=14))
    minimum_sample_size: int = 100
    max_sample_size: int | None = None
    statistics: StatisticalConfiguration = field(default_factory=StatisticalConfiguration)

    status: ExperimentStatus = ExperimentStatus.DRAFT
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    activated_at: datetime | None = None
    ends_at: datetime | None = None
    concluded_at: datetime | None = None

    owner: str = ""
    tags: list[str] = field(default_factory=list)
    category: str = ""

    looks_spent: int = 0
    last_result: AnalysisResult | None = None

    @property
    def goals(self) -> list[Goal]:
        return [self.primary_goal, *self.secondary_goals]

    @property
    def control(self) -> Variant:
        return next(v for v in self.variants if v.is_control)

    @property
    def treatments(self) -> list[Variant]:
        return [v for v in self.variants if not v.is_control]

    @property
    def is_running(self) -> bool:
        return self.status == ExperimentStatus.RUNNING

    def get_goal(self, goal_id: str) -> Goal | None:
        return next((g for g in self.goals if g.goal_id == goal_id), None)

    def get_variant(self, variant_id: str) -> Variant | None:
        return next((v for v in self.variants if v.variant_id == variant_id), None)

    def snapshot(self) -> dict[str, VariantSnapshot]:
        """Counter snapshots keyed by variant id, in variant order."""
        return {v.variant_id: v.snapshot() for v in self.variants}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "test_id": self.test_id,
            "name": self.name,
            "description": self.description,
            "test_type": self.test_type.value,
            "variants": [v.to_dict() for v in self.variants],
            "allocation": self.allocation.to_dict(),
            "audience": self.audience.to_dict(),
            "exclusions": [e.to_dict() for e in self.exclusions],
            "primary_goal": self.primary_goal.to_dict(),
            "secondary_goals": [g.to_dict() for g in self.secondary_goals],
            "planned_duration_seconds": self.planned_duration.total_seconds(),
            "minimum_sample_size": self.minimum_sample_size,
            "max_sample_size": self.max_sample_size,
            "statistics": self.statistics.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "activated_at": _format_dt(self.activated_at),
            "ends_at": _format_dt(self.ends_at),
            "concluded_at": _format_dt(self.concluded_at),
            "owner": self.owner,
            "tags": list(self.tags),
            "category": self.category,
            "looks_spent": self.looks_spent,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ABTest:
        """Create from dictionary."""
        from experiment_engine.storage.results import AnalysisResult

        return cls(
            test_id=data["test_id"],
            name=data.get("name", data["test_id"]),
            description=data.get("description", ""),
            test_type=ExperimentType(data.get("test_type", "simple_ab")),
            variants=[Variant.from_dict(v) for v in data["variants"]],
            allocation=TrafficAllocation.from_dict(data["allocation"]),
            audience=AudienceSegment.from_dict(data.get("audience", {})),
            exclusions=[ExclusionCriteria.from_dict(e) for e in data.get("exclusions", [])],
            primary_goal=Goal.from_dict(data["primary_goal"]),
            secondary_goals=[Goal.from_dict(g) for g in data.get("secondary_goals", [])],
            planned_duration=timedelta(seconds=data.get("planned_duration_seconds", 14 * 86400)),
            minimum_sample_size=data.get("minimum_sample_size", 100),
            max_sample_size=data.get("max_sample_size"),
            statistics=StatisticalConfiguration.from_dict(data.get("statistics", {})),
            status=ExperimentStatus(data.get("status", "draft")),
            created_at=_parse_dt(data.get("created_at")) or utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or utc_now(),
            activated_at=_parse_dt(data.get("activated_at")),
            ends_at=_parse_dt(data.get("ends_at")),
            concluded_at=_parse_dt(data.get("concluded_at")),
            owner=data.get("owner", ""),
            tags=list(data.get("tags", [])),
            category=data.get("category", ""),
            looks_spent=data.get("looks_spent", 0),
            last_result=AnalysisResult.from_dict(data["last_result"]) if data.get("last_result") else None,
        )


# =============================================================================
# ASSIGNMENTS AND EVENTS
# =============================================================================

@dataclass(frozen=True)
class Assignment:
    """Immutable binding of a user to a variant of a test."""
    test_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime = field(default_factory=utc_now)
    segment_snapshot: dict[str, Any] = field(default_factory=dict)
    session: dict[str, Any] = field(default_factory=dict)
    device: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.test_id, self.user_id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "test_id": self.test_id,
            "user_id": self.user_id,
            "variant_id": self.variant_id,
            "assigned_at": self.assigned_at.isoformat(),
            "segment_snapshot": self.segment_snapshot,
            "session": self.session,
            "device": self.device,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Assignment:
        """Create from dictionary."""
        return cls(
            test_id=data["test_id"],
            user_id=data["user_id"],
            variant_id=data["variant_id"],
            assigned_at=_parse_dt(data.get("assigned_at")) or utc_now(),
            segment_snapshot=data.get("segment_snapshot", {}),
            session=data.get("session", {}),
            device=data.get("device", {}),
        )


@dataclass
class AssignmentActivity:
    """Mutable tracking state of one assignment.

    Guarded by the storage's per-(test, user) lock.
    """
    test_id: str
    user_id: str
    variant_id: str
    exposures: int = 0
    converted_goals: set[str] = field(default_factory=set)
    goal_values: dict[str, float] = field(default_factory=dict)
    last_event_at: datetime | None = None

    def record_exposure(self, at: datetime) -> int:
        self.exposures += 1
        self.last_event_at = at
        return self.exposures

    def record_conversion(self, goal_id: str, value: float, at: datetime) -> bool:
        """Fold a conversion. Returns True if this is the goal's first conversion.

        Containers are replaced rather than mutated so concurrent readers
        never see them change size mid-iteration.
        """
        first = goal_id not in self.converted_goals
        if first:
            self.converted_goals = self.converted_goals | {goal_id}
        self.goal_values = {
            **self.goal_values,
            goal_id: self.goal_values.get(goal_id, 0.0) + value,
        }
        self.last_event_at = at
        return first

    def outcome(self, goal_id: str, metric_type: MetricType) -> float:
        """Per-user outcome for resampling: 0/1 for binary, value total otherwise."""
        if metric_type == MetricType.BINARY:
            return 1.0 if goal_id in self.converted_goals else 0.0
        return self.goal_values.get(goal_id, 0.0)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "test_id": self.test_id,
            "user_id": self.user_id,
            "variant_id": self.variant_id,
            "exposures": self.exposures,
            "converted_goals": sorted(self.converted_goals),
            "goal_values": dict(self.goal_values),
            "last_event_at": _format_dt(self.last_event_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AssignmentActivity:
        """Create from dictionary."""
        return cls(
            test_id=data["test_id"],
            user_id=data["user_id"],
            variant_id=data["variant_id"],
            exposures=data.get("exposures", 0),
            converted_goals=set(data.get("converted_goals", [])),
            goal_values=dict(data.get("goal_values", {})),
            last_event_at=_parse_dt(data.get("last_event_at")),
        )


@dataclass(frozen=True)
class UserExperiment:
    """A user's participation in one test: assignment plus tracked activity."""
    test_id: str
    user_id: str
    variant_id: str
    assigned_at: datetime
    status: ExperimentStatus
    exposures: int = 0
    converted_goals: frozenset[str] = frozenset()
    goal_values: dict[str, float] = field(default_factory=dict)
    last_event_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "user_id": self.user_id,
            "variant_id": self.variant_id,
            "assigned_at": self.assigned_at.isoformat(),
            "status": self.status.value,
            "exposures": self.exposures,
            "converted_goals": sorted(self.converted_goals),
            "goal_values": dict(self.goal_values),
            "last_event_at": _format_dt(self.last_event_at),
        }


def _encode_property(value: Any) -> Any:
    # datetimes are tagged so they do not come back as plain strings
    if isinstance(value, datetime):
        return {DATETIME_TAG: value.isoformat()}
    return value


def _decode_property(value: Any) -> Any:
    if isinstance(value, dict) and DATETIME_TAG in value:
        return datetime.fromisoformat(value[DATETIME_TAG])
    return value


@dataclass(frozen=True)
class TrackedEvent:
    """Append-only record of an exposure, conversion or metric observation."""
    event_id: str
    event_type: EventType
    test_id: str
    user_id: str
    variant_id: str
    timestamp: datetime = field(default_factory=utc_now)
    value: float | None = None
    goal_id: str | None = None
    metric_name: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "test_id": self.test_id,
            "user_id": self.user_id,
            "variant_id": self.variant_id,
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "goal_id": self.goal_id,
            "metric_name": self.metric_name,
            "properties": {k: _encode_property(v) for k, v in self.properties.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackedEvent:
        """Create from dictionary."""
        return cls(
            event_id=data["event_id"],
            event_type=EventType(data["event_type"]),
            test_id=data["test_id"],
            user_id=data["user_id"],
            variant_id=data["variant_id"],
            timestamp=_parse_dt(data.get("timestamp")) or utc_now(),
            value=data.get("value"),
            goal_id=data.get("goal_id"),
            metric_name=data.get("metric_name"),
            properties={k: _decode_property(v) for k, v in data.get("properties", {}).items()},
        )


def apply_event(test: ABTest, activity: AssignmentActivity, event: TrackedEvent) -> bool:
    """Fold an accepted event into the assignment's activity and variant counters.

    Used both when tracking live events and when replaying a stored event
    log. The caller holds the (test, user) lock and has already applied any
    dedupe rules.

    Returns:
        True if a unique count moved: a counted exposure or a goal's first
        conversion for this user.
    """
    variant = test.get_variant(event.variant_id)
    if event.event_type == EventType.EXPOSURE:
        counted = activity.exposures == 0 or test.primary_goal.allow_repeat_exposures
        activity.record_exposure(event.timestamp)
        if counted and variant is not None:
            variant.record_exposure()
        return counted

    if event.event_type == EventType.CONVERSION:
        value = 1.0 if event.value is None else event.value
        first = activity.record_conversion(event.goal_id, value, event.timestamp)
        if variant is not None:
            variant.record_conversion(event.goal_id, value, new_converter=first, at=event.timestamp)
        return first

    activity.last_event_at = event.timestamp
    if variant is not None:
        variant.record_metric(event.metric_name, event.value or 0.0, at=event.timestamp)
    return False
