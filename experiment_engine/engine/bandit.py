"""
Multi-armed bandit traffic reallocation.

Each strategy scores the arms from their exposures and primary-goal
conversions; scores are turned into weights with an exploration floor:

    weight_i = epsilon + (1 - k * epsilon) * score_i / sum(score)

so every arm keeps at least ``epsilon`` of the traffic.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np

from experiment_engine.config.settings import BanditSettings
from experiment_engine.core.exceptions import InvalidConfigurationError, InvalidTransitionError
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    BanditStrategy,
    ExperimentType,
    TrafficAllocation,
)

logger = get_logger(__name__, LogCategory.BANDIT)


@dataclass
class ArmStats:
    """Pulls and rewards of one arm."""
    variant_id: str
    pulls: int
    rewards: int


# =============================================================================
# SCORERS
# =============================================================================

class ArmScorer(ABC):
    """Abstract base class for bandit arm scoring."""

    @abstractmethod
    def score(self, arms: list[ArmStats]) -> np.ndarray:
        """Non-negative score per arm, in input order."""
        pass


class EpsilonGreedyScorer(ArmScorer):
    """Posterior mean reward under a uniform Beta prior."""

    def score(self, arms: list[ArmStats]) -> np.ndarray:
        return np.array([(1 + a.rewards) / (2 + a.pulls) for a in arms], dtype=float)


class ThompsonSamplingScorer(ArmScorer):
    """Probability each arm is best, estimated from seeded Beta draws."""

    def __init__(self, draws: int = 10000, seed: int = 42) -> None:
        self.draws = draws
        self.seed = seed

    def score(self, arms: list[ArmStats]) -> np.ndarray:
        rng = np.random.default_rng(self.seed)
        samples = np.column_stack([
            rng.beta(1 + a.rewards, 1 + max(a.pulls - a.rewards, 0), self.draws)
            for a in arms
        ])
        best = np.argmax(samples, axis=1)
        return np.bincount(best, minlength=len(arms)) / self.draws


class UCBScorer(ArmScorer):
    """UCB1 index: mean reward plus sqrt(2 ln N / n)."""

    def score(self, arms: list[ArmStats]) -> np.ndarray:
        # Untried arms have an unbounded index and take all exploitative traffic
        untried = np.array([a.pulls == 0 for a in arms])
        if untried.any():
            return untried.astype(float)

        total = sum(a.pulls for a in arms)
        return np.array([
            a.rewards / a.pulls + np.sqrt(2 * np.log(total) / a.pulls)
            for a in arms
        ], dtype=float)


def floor_weights(scores: np.ndarray, epsilon: float) -> np.ndarray:
    """Convert scores into weights that sum to 1 with a per-arm floor."""
    k = len(scores)
    total = float(scores.sum())
    shares = scores / total if total > 0 else np.full(k, 1.0 / k)
    weights = epsilon + (1 - k * epsilon) * shares
    return weights / weights.sum()


# =============================================================================
# OPTIMIZER
# =============================================================================

class BanditOptimizer:
    """Recomputes and persists allocation weights of bandit tests."""

    def __init__(self, storage: ExperimentStorage, settings: BanditSettings | None = None) -> None:
        self.storage = storage
        self.settings = settings or BanditSettings()
        self._metrics = get_metrics_collector()

    def _scorer(self, strategy: BanditStrategy, seed: int) -> ArmScorer:
        if strategy == BanditStrategy.THOMPSON_SAMPLING:
            return ThompsonSamplingScorer(draws=self.settings.thompson_draws, seed=seed)
        if strategy == BanditStrategy.UCB:
            return UCBScorer()
        return EpsilonGreedyScorer()

    def update_weights(self, test: ABTest) -> TrafficAllocation:
        """Reallocate traffic from the primary goal's conversions.

        Raises:
            InvalidConfigurationError: Test is not a bandit test.
            InvalidTransitionError: Test is not running.
        """
        if test.test_type != ExperimentType.MULTI_ARMED_BANDIT:
            raise InvalidConfigurationError(
                f"Test {test.test_id} is not a multi-armed bandit test",
                field_name="test_type",
                invalid_value=test.test_type.value,
            )
        if not test.is_running:
            raise InvalidTransitionError(
                f"Cannot update weights of test {test.test_id} in status {test.status.value}",
                current_status=test.status.value,
            )

        allocation = test.allocation
        strategy = allocation.bandit_strategy or BanditStrategy.THOMPSON_SAMPLING
        goal_id = test.primary_goal.goal_id

        arms = []
        for variant in test.variants:
            snap = variant.snapshot()
            arms.append(ArmStats(
                variant_id=variant.variant_id,
                pulls=snap.exposures,
                rewards=min(snap.conversion_count(goal_id), snap.exposures),
            ))

        scores = self._scorer(strategy, test.statistics.random_seed).score(arms)
        weights = floor_weights(scores, allocation.exploration_epsilon)

        updated = allocation.with_weights({
            arm.variant_id: float(w) for arm, w in zip(arms, weights)
        })
        self.storage.update_allocation(test.test_id, updated)

        self._metrics.record_bandit_update(strategy.value)
        logger.info(
            f"Updated {strategy.value} weights for {test.test_id}",
            extra={"test_id": test.test_id, "extra_data": updated.weights},
        )
        return updated
