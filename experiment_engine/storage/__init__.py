"""
Storage: entity models, analysis results and persistence backends.
"""

from experiment_engine.storage.base import ExperimentStorage, StripedLock
from experiment_engine.storage.file import FileExperimentStorage
from experiment_engine.storage.memory import InMemoryExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    Assignment,
    AssignmentActivity,
    AudienceSegment,
    BanditStrategy,
    CorrectionMethod,
    CriterionOperator,
    EventType,
    ExclusionCriteria,
    ExperimentStatus,
    ExperimentType,
    Goal,
    GoalDirection,
    InferenceMethod,
    MetricType,
    RunningAggregate,
    TimeSeriesPoint,
    SegmentCriterion,
    StatisticalConfiguration,
    TrackedEvent,
    TrafficAllocation,
    Variant,
    UserExperiment,
    VariantSnapshot,
)
from experiment_engine.storage.results import (
    AnalysisResult,
    MetricSummary,
    PowerAnalysis,
    Recommendation,
    RecommendationAction,
    VariantComparison,
    VariantSummary,
    Verdict,
)


def create_storage(backend: str = "memory", path=None, lock_stripes: int = 64) -> ExperimentStorage:
    """Build a storage backend by name."""
    if backend == "file":
        if path is None:
            raise ValueError("file backend requires a path")
        return FileExperimentStorage(path, lock_stripes=lock_stripes)
    return InMemoryExperimentStorage(lock_stripes=lock_stripes)


__all__ = [
    "ExperimentStorage",
    "StripedLock",
    "FileExperimentStorage",
    "InMemoryExperimentStorage",
    "create_storage",
    "ABTest",
    "Assignment",
    "AssignmentActivity",
    "AudienceSegment",
    "BanditStrategy",
    "CorrectionMethod",
    "CriterionOperator",
    "EventType",
    "ExclusionCriteria",
    "ExperimentStatus",
    "ExperimentType",
    "Goal",
    "GoalDirection",
    "InferenceMethod",
    "MetricType",
    "RunningAggregate",
    "TimeSeriesPoint",
    "SegmentCriterion",
    "StatisticalConfiguration",
    "TrackedEvent",
    "TrafficAllocation",
    "Variant",
    "UserExperiment",
    "VariantSnapshot",
    "AnalysisResult",
    "MetricSummary",
    "PowerAnalysis",
    "Recommendation",
    "RecommendationAction",
    "VariantComparison",
    "VariantSummary",
    "Verdict",
]
