"""
Analysis result containers.

Plain dataclasses returned by the analyzer and persisted as the test's
most recent result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from experiment_engine.storage.models import (
    InferenceMethod,
    RunningAggregate,
    TimeSeriesPoint,
    utc_now,
)


class Verdict(str, Enum):
    """Outcome of an analysis."""
    INCONCLUSIVE = "inconclusive"
    SIGNIFICANT_WINNER = "significant_winner"
    NO_DIFFERENCE = "no_difference"


class RecommendationAction(str, Enum):
    """What to do with the test next."""
    LAUNCH = "launch"
    CONTINUE = "continue"
    STOP = "stop"


@dataclass
class MetricSummary:
    """Distribution of one value stream on one arm."""
    name: str
    count: int = 0
    mean: float = 0.0
    std: float = 0.0
    min_value: float | None = None
    max_value: float | None = None
    percentiles: dict[str, float] = field(default_factory=dict)
    time_series: list[TimeSeriesPoint] = field(default_factory=list)

    @classmethod
    def from_aggregate(cls, name: str, aggregate: RunningAggregate) -> MetricSummary:
        return cls(
            name=name,
            count=aggregate.count,
            mean=aggregate.mean,
            std=aggregate.std,
            min_value=aggregate.min_value if aggregate.count else None,
            max_value=aggregate.max_value if aggregate.count else None,
            percentiles=aggregate.percentiles(),
            time_series=list(aggregate.time_series),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "mean": self.mean,
            "std": self.std,
            "min_value": self.min_value,
            "max_value": self.max_value,
            "percentiles": dict(self.percentiles),
            "time_series": [p.to_dict() for p in self.time_series],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricSummary:
        return cls(
            name=data["name"],
            count=data.get("count", 0),
            mean=data.get("mean", 0.0),
            std=data.get("std", 0.0),
            min_value=data.get("min_value"),
            max_value=data.get("max_value"),
            percentiles=dict(data.get("percentiles", {})),
            time_series=[TimeSeriesPoint.from_dict(p) for p in data.get("time_series", [])],
        )


@dataclass
class VariantSummary:
    """Descriptive statistics of one arm.

    ``mean_value`` and ``std_value`` are per exposed user for the primary
    goal. ``goal_values`` describes the recorded conversion values of the
    primary goal and ``metrics`` each custom metric.
    """
    variant_id: str
    is_control: bool
    exposures: int
    conversions: int
    conversion_rate: float
    mean_value: float
    std_value: float
    goal_values: MetricSummary | None = None
    metrics: dict[str, MetricSummary] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "is_control": self.is_control,
            "exposures": self.exposures,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "mean_value": self.mean_value,
            "std_value": self.std_value,
            "goal_values": self.goal_values.to_dict() if self.goal_values else None,
            "metrics": {name: m.to_dict() for name, m in self.metrics.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VariantSummary:
        return cls(
            variant_id=data["variant_id"],
            is_control=data["is_control"],
            exposures=data["exposures"],
            conversions=data["conversions"],
            conversion_rate=data["conversion_rate"],
            mean_value=data["mean_value"],
            std_value=data["std_value"],
            goal_values=MetricSummary.from_dict(data["goal_values"]) if data.get("goal_values") else None,
            metrics={
                name: MetricSummary.from_dict(m) for name, m in data.get("metrics", {}).items()
            },
        )


@dataclass
class VariantComparison:
    """One treatment arm compared against control on one goal."""
    variant_id: str
    control_id: str
    goal_id: str
    control_value: float
    variant_value: float
    effect: float  # variant - control
    relative_effect: float
    ci_lower: float
    ci_upper: float
    p_value: float | None = None
    adjusted_p_value: float | None = None
    probability_to_beat_control: float | None = None
    cohens_d: float = 0.0
    hedges_g: float = 0.0
    is_significant: bool = False
    is_improvement: bool = False  # effect points in the goal's direction

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "variant_id": self.variant_id,
            "control_id": self.control_id,
            "goal_id": self.goal_id,
            "control_value": self.control_value,
            "variant_value": self.variant_value,
            "effect": self.effect,
            "relative_effect": self.relative_effect,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "p_value": self.p_value,
            "adjusted_p_value": self.adjusted_p_value,
            "probability_to_beat_control": self.probability_to_beat_control,
            "cohens_d": self.cohens_d,
            "hedges_g": self.hedges_g,
            "is_significant": self.is_significant,
            "is_improvement": self.is_improvement,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VariantComparison:
        return cls(**data)


@dataclass
class PowerAnalysis:
    """Sample size adequacy of the primary comparison."""
    required_sample_size: int | None  # per arm; None when the effect cannot be sized
    actual_sample_size: int  # smallest arm
    observed_power: float
    minimum_detectable_effect: float
    baseline: float

    @property
    def is_adequate(self) -> bool:
        return self.required_sample_size is not None and self.actual_sample_size >= self.required_sample_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "required_sample_size": self.required_sample_size,
            "actual_sample_size": self.actual_sample_size,
            "observed_power": self.observed_power,
            "minimum_detectable_effect": self.minimum_detectable_effect,
            "baseline": self.baseline,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PowerAnalysis:
        return cls(**data)


@dataclass
class Recommendation:
    """Suggested next step."""
    action: RecommendationAction
    reason: str
    variant_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action.value, "reason": self.reason, "variant_id": self.variant_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recommendation:
        return cls(
            action=RecommendationAction(data["action"]),
            reason=data.get("reason", ""),
            variant_id=data.get("variant_id"),
        )


@dataclass
class AnalysisResult:
    """Full analysis report for a test."""
    test_id: str
    method: InferenceMethod
    verdict: Verdict
    reason: str = ""
    winning_variant: str | None = None
    insufficient_data: bool = False
    summaries: list[VariantSummary] = field(default_factory=list)
    comparisons: list[VariantComparison] = field(default_factory=list)
    secondary_comparisons: dict[str, list[VariantComparison]] = field(default_factory=dict)
    power: PowerAnalysis | None = None
    recommendations: list[Recommendation] = field(default_factory=list)
    confidence_level: float = 0.95
    looks_spent: int | None = None
    alpha_spent: float | None = None
    total_sample_size: int = 0
    analyzed_at: datetime = field(default_factory=utc_now)
    test_duration_seconds: float = 0.0

    @property
    def is_conclusive(self) -> bool:
        return self.verdict != Verdict.INCONCLUSIVE

    def comparison_for(self, variant_id: str) -> VariantComparison | None:
        return next((c for c in self.comparisons if c.variant_id == variant_id), None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "test_id": self.test_id,
            "method": self.method.value,
            "verdict": self.verdict.value,
            "reason": self.reason,
            "winning_variant": self.winning_variant,
            "insufficient_data": self.insufficient_data,
            "summaries": [s.to_dict() for s in self.summaries],
            "comparisons": [c.to_dict() for c in self.comparisons],
            "secondary_comparisons": {
                goal_id: [c.to_dict() for c in comps]
                for goal_id, comps in self.secondary_comparisons.items()
            },
            "power": self.power.to_dict() if self.power else None,
            "recommendations": [r.to_dict() for r in self.recommendations],
            "confidence_level": self.confidence_level,
            "looks_spent": self.looks_spent,
            "alpha_spent": self.alpha_spent,
            "total_sample_size": self.total_sample_size,
            "analyzed_at": self.analyzed_at.isoformat(),
            "test_duration_seconds": self.test_duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisResult:
        """Create from dictionary."""
        return cls(
            test_id=data["test_id"],
            method=InferenceMethod(data["method"]),
            verdict=Verdict(data["verdict"]),
            reason=data.get("reason", ""),
            winning_variant=data.get("winning_variant"),
            insufficient_data=data.get("insufficient_data", False),
            summaries=[VariantSummary.from_dict(s) for s in data.get("summaries", [])],
            comparisons=[VariantComparison.from_dict(c) for c in data.get("comparisons", [])],
            secondary_comparisons={
                goal_id: [VariantComparison.from_dict(c) for c in comps]
                for goal_id, comps in data.get("secondary_comparisons", {}).items()
            },
            power=PowerAnalysis.from_dict(data["power"]) if data.get("power") else None,
            recommendations=[Recommendation.from_dict(r) for r in data.get("recommendations", [])],
            confidence_level=data.get("confidence_level", 0.95),
            looks_spent=data.get("looks_spent"),
            alpha_spent=data.get("alpha_spent"),
            total_sample_size=data.get("total_sample_size", 0),
            analyzed_at=datetime.fromisoformat(data["analyzed_at"]) if data.get("analyzed_at") else utc_now(),
            test_duration_seconds=data.get("test_duration_seconds", 0.0),
        )
