"""
Engine: assignment, tracking, statistical analysis, bandit and lifecycle.
"""

from experiment_engine.engine.analyzer import StatisticalAnalyzer
from experiment_engine.engine.assignment import AssignmentEngine, hash_bucket, select_variant
from experiment_engine.engine.bandit import BanditOptimizer
from experiment_engine.engine.lifecycle import LifecycleController
from experiment_engine.engine.service import (
    ExperimentationService,
    create_ab_test,
    get_experimentation_service,
)
from experiment_engine.engine.statistics import (
    BayesianTester,
    BootstrapTester,
    CancellationToken,
    FrequentistTester,
)
from experiment_engine.engine.tracking import EventTracker

__all__ = [
    "StatisticalAnalyzer",
    "AssignmentEngine",
    "hash_bucket",
    "select_variant",
    "BanditOptimizer",
    "LifecycleController",
    "ExperimentationService",
    "create_ab_test",
    "get_experimentation_service",
    "BayesianTester",
    "BootstrapTester",
    "CancellationToken",
    "FrequentistTester",
    "EventTracker",
]
