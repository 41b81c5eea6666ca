"""
Statistical analysis of a test's accumulated counters.

The primary goal drives the verdict; secondary goals are compared the same
way and reported alongside it. Analysis reads variant snapshots taken under
brief per-variant locks and never holds a store-wide lock while computing.
"""

from __future__ import annotations

from collections import defaultdict

import numpy as np

from experiment_engine.config.settings import AnalysisSettings
from experiment_engine.core.exceptions import InvalidTransitionError
from experiment_engine.engine.statistics import (
    ArmData,
    BayesianTester,
    BootstrapTester,
    CancellationToken,
    ComparisonStats,
    FrequentistTester,
    StatisticalTester,
    adjust_p_values,
    arm_from_snapshot,
    obrien_fleming_alpha,
    observed_power,
    required_sample_size,
)
from experiment_engine.monitoring.logger import LogCategory, get_logger
from experiment_engine.monitoring.metrics import get_metrics_collector
from experiment_engine.storage.base import ExperimentStorage
from experiment_engine.storage.models import (
    ABTest,
    ExperimentStatus,
    ExperimentType,
    Goal,
    GoalDirection,
    InferenceMethod,
    MetricType,
    VariantSnapshot,
    utc_now,
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

logger = get_logger(__name__, LogCategory.ANALYSIS)

ANALYZABLE_STATUSES = (ExperimentStatus.RUNNING, ExperimentStatus.CONCLUDED)


class StatisticalAnalyzer:
    """Computes significance, verdicts and recommendations for a test."""

    def __init__(
        self,
        storage: ExperimentStorage,
        settings: AnalysisSettings | None = None,
    ) -> None:
        self.storage = storage
        self.settings = settings or AnalysisSettings()
        self._metrics = get_metrics_collector()

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def analyze(
        self,
        test: ABTest,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Analyze a running or concluded test and store the result on it.

        Sequential tests reserve one look per call before computing; a look
        reserved by an analysis that fails or is cancelled is given back.

        Raises:
            InvalidTransitionError: Test is draft or archived.
            AnalysisCancelledError: Cancel token was set during bootstrap.
        """
        if test.status not in ANALYZABLE_STATUSES:
            raise InvalidTransitionError(
                f"Test {test.test_id} cannot be analyzed in status {test.status.value}",
                current_status=test.status.value,
            )

        config = test.statistics
        method = config.method

        with self._metrics.time_analysis(method.value):
            look: int | None = None
            reserved = False
            alpha = config.significance_level
            if test.test_type == ExperimentType.SEQUENTIAL:
                look, reserved = self.storage.reserve_look(test)
                alpha = obrien_fleming_alpha(config.significance_level, look / config.max_looks)

            try:
                snapshots = test.snapshot()
                samples = self._outcome_samples(test) if method == InferenceMethod.BOOTSTRAP else {}
                result = self._build_result(test, snapshots, samples, alpha, look, cancel_token)
            except Exception:
                if reserved:
                    self.storage.release_look(test, look)
                raise

        test.last_result = result
        self.storage.save_test(test)

        self._metrics.record_analysis(method.value, result.verdict.value)
        log = logger.with_context(test_id=test.test_id, method=method.value)
        log.info(
            f"Analyzed {test.test_id}: {result.verdict.value}",
            extra={"extra_data": {
                "winner": result.winning_variant,
                "sample_size": result.total_sample_size,
                "look": look,
            }},
        )
        return result

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def _outcome_samples(self, test: ABTest) -> dict[str, dict[str, np.ndarray]]:
        """Per-user outcomes of exposed assignments, keyed by goal then variant."""
        by_goal: dict[str, dict[str, list[float]]] = {
            g.goal_id: defaultdict(list) for g in test.goals
        }
        for activity in self.storage.list_activities(test.test_id):
            if activity.exposures == 0:
                continue
            for goal in test.goals:
                by_goal[goal.goal_id][activity.variant_id].append(
                    activity.outcome(goal.goal_id, goal.metric_type)
                )
        return {
            goal_id: {vid: np.asarray(values, dtype=float) for vid, values in arms.items()}
            for goal_id, arms in by_goal.items()
        }

    def _tester(self, test: ABTest, cancel_token: CancellationToken | None) -> StatisticalTester:
        config = test.statistics
        if config.method == InferenceMethod.BAYESIAN:
            return BayesianTester(draws=self.settings.bayesian_draws, seed=config.random_seed)
        if config.method == InferenceMethod.BOOTSTRAP:
            return BootstrapTester(
                iterations=config.bootstrap_iterations,
                chunk_size=self.settings.bootstrap_chunk_size,
                seed=config.random_seed,
                cancel_token=cancel_token,
                test_id=test.test_id,
            )
        return FrequentistTester()

    # -------------------------------------------------------------------------
    # Comparisons
    # -------------------------------------------------------------------------

    def _compare_goal(
        self,
        test: ABTest,
        goal: Goal,
        snapshots: dict[str, VariantSnapshot],
        samples: dict[str, dict[str, np.ndarray]],
        tester: StatisticalTester,
        alpha: float,
        interval_alpha: float,
        enough_data: bool,
    ) -> list[VariantComparison]:
        goal_samples = samples.get(goal.goal_id, {})
        control_id = test.control.variant_id
        control_arm = arm_from_snapshot(
            snapshots[control_id], goal, goal_samples.get(control_id)
        )

        raw: list[tuple[ArmData, ComparisonStats]] = []
        for variant in test.treatments:
            arm = arm_from_snapshot(
                snapshots[variant.variant_id], goal, goal_samples.get(variant.variant_id)
            )
            raw.append((arm, tester.compare(control_arm, arm, goal.metric_type, interval_alpha)))

        p_values = [s.p_value for _, s in raw]
        adjusted: list[float | None] = list(p_values)
        if all(p is not None for p in p_values):
            adjusted = adjust_p_values(p_values, test.statistics.correction)

        comparisons = []
        for (arm, result), adj_p in zip(raw, adjusted):
            sign = 1.0 if goal.direction == GoalDirection.INCREASE else -1.0
            prob_beat = result.probability_treatment_higher
            if prob_beat is not None and sign < 0:
                prob_beat = 1.0 - prob_beat

            comparisons.append(VariantComparison(
                variant_id=arm.variant_id,
                control_id=control_id,
                goal_id=goal.goal_id,
                control_value=control_arm.mean,
                variant_value=arm.mean,
                effect=result.effect,
                relative_effect=result.relative_effect,
                ci_lower=result.ci_lower,
                ci_upper=result.ci_upper,
                p_value=result.p_value,
                adjusted_p_value=adj_p,
                probability_to_beat_control=prob_beat,
                cohens_d=result.cohens_d,
                hedges_g=result.hedges_g,
                is_significant=enough_data and self._is_significant(
                    test.statistics.method, result, adj_p, prob_beat, alpha, interval_alpha
                ),
                is_improvement=sign * result.effect > 0,
            ))
        return comparisons

    @staticmethod
    def _is_significant(
        method: InferenceMethod,
        result: ComparisonStats,
        adjusted_p: float | None,
        prob_beat: float | None,
        alpha: float,
        interval_alpha: float,
    ) -> bool:
        if method == InferenceMethod.BAYESIAN:
            if prob_beat is None:
                return False
            confidence = 1.0 - interval_alpha
            return prob_beat >= confidence or prob_beat <= 1.0 - confidence
        if method == InferenceMethod.BOOTSTRAP:
            return result.ci_lower > 0 or result.ci_upper < 0
        return adjusted_p is not None and adjusted_p < alpha

    # -------------------------------------------------------------------------
    # Result assembly
    # -------------------------------------------------------------------------

    def _build_result(
        self,
        test: ABTest,
        snapshots: dict[str, VariantSnapshot],
        samples: dict[str, dict[str, np.ndarray]],
        alpha: float,
        look: int | None,
        cancel_token: CancellationToken | None,
    ) -> AnalysisResult:
        config = test.statistics
        goal = test.primary_goal
        tester = self._tester(test, cancel_token)

        # Frequentist intervals match the (possibly spent) alpha; the other
        # methods use the configured confidence unless a look narrows it.
        if config.method == InferenceMethod.FREQUENTIST or look is not None:
            interval_alpha = alpha
        else:
            interval_alpha = 1.0 - config.confidence_level

        min_arm = min(s.exposures for s in snapshots.values())
        enough_data = min_arm >= test.minimum_sample_size

        comparisons = self._compare_goal(
            test, goal, snapshots, samples, tester, alpha, interval_alpha, enough_data
        )
        secondary = {
            g.goal_id: self._compare_goal(
                test, g, snapshots, samples, tester, alpha, interval_alpha, enough_data
            )
            for g in test.secondary_goals
        }

        power = self._power_analysis(test, snapshots, comparisons, alpha)
        verdict, winner, reason = self._verdict(test, comparisons, power, enough_data, min_arm)

        now = utc_now()
        duration = (now - test.activated_at).total_seconds() if test.activated_at else 0.0

        return AnalysisResult(
            test_id=test.test_id,
            method=config.method,
            verdict=verdict,
            reason=reason,
            winning_variant=winner,
            insufficient_data=not enough_data,
            summaries=self._summaries(test, snapshots),
            comparisons=comparisons,
            secondary_comparisons=secondary,
            power=power,
            recommendations=self._recommendations(test, verdict, winner, power, reason),
            confidence_level=1.0 - interval_alpha,
            looks_spent=look,
            alpha_spent=alpha if look is not None else None,
            total_sample_size=sum(s.exposures for s in snapshots.values()),
            analyzed_at=now,
            test_duration_seconds=duration,
        )

    def _summaries(self, test: ABTest, snapshots: dict[str, VariantSnapshot]) -> list[VariantSummary]:
        goal = test.primary_goal
        summaries = []
        for variant in test.variants:
            snap = snapshots[variant.variant_id]
            arm = arm_from_snapshot(snap, goal)
            conversions = snap.conversion_count(goal.goal_id)
            summaries.append(VariantSummary(
                variant_id=variant.variant_id,
                is_control=variant.is_control,
                exposures=snap.exposures,
                conversions=conversions,
                conversion_rate=conversions / snap.exposures if snap.exposures else 0.0,
                mean_value=arm.mean,
                std_value=arm.std,
                goal_values=MetricSummary.from_aggregate(
                    goal.goal_id, snap.goal_aggregate(goal.goal_id)
                ),
                metrics={
                    name: MetricSummary.from_aggregate(name, agg)
                    for name, agg in snap.metrics.items()
                },
            ))
        return summaries

    def _power_analysis(
        self,
        test: ABTest,
        snapshots: dict[str, VariantSnapshot],
        comparisons: list[VariantComparison],
        alpha: float,
    ) -> PowerAnalysis:
        goal = test.primary_goal
        control = arm_from_snapshot(snapshots[test.control.variant_id], goal)
        baseline = goal.expected_baseline if goal.expected_baseline is not None else control.mean

        required = required_sample_size(
            baseline=baseline,
            minimum_detectable_effect=goal.minimum_detectable_effect,
            metric_type=goal.metric_type,
            alpha=test.statistics.significance_level,
            power=test.statistics.power,
            std=control.std if goal.metric_type == MetricType.CONTINUOUS else None,
        )

        power = 0.0
        if comparisons:
            primary = max(comparisons, key=lambda c: abs(c.effect))
            treatment = arm_from_snapshot(snapshots[primary.variant_id], goal)
            se = _unpooled_se(control, treatment)
            power = observed_power(primary.effect, se, alpha)

        return PowerAnalysis(
            required_sample_size=required,
            actual_sample_size=min(s.exposures for s in snapshots.values()),
            observed_power=power,
            minimum_detectable_effect=goal.minimum_detectable_effect,
            baseline=baseline,
        )

    @staticmethod
    def _verdict(
        test: ABTest,
        comparisons: list[VariantComparison],
        power: PowerAnalysis,
        enough_data: bool,
        min_arm: int,
    ) -> tuple[Verdict, str | None, str]:
        if not enough_data:
            return (
                Verdict.INCONCLUSIVE,
                None,
                f"Smallest arm has {min_arm} exposures; {test.minimum_sample_size} required",
            )

        sign = 1.0 if test.primary_goal.direction == GoalDirection.INCREASE else -1.0
        winners = [c for c in comparisons if c.is_significant and c.is_improvement]
        if winners:
            best = max(winners, key=lambda c: sign * c.effect)
            return (
                Verdict.SIGNIFICANT_WINNER,
                best.variant_id,
                f"{best.variant_id} beats control by {best.relative_effect:+.2%}",
            )

        if comparisons and all(c.is_significant and not c.is_improvement for c in comparisons):
            control_id = test.control.variant_id
            return (
                Verdict.SIGNIFICANT_WINNER,
                control_id,
                "Every treatment is significantly worse than control",
            )

        if not any(c.is_significant for c in comparisons) and power.is_adequate:
            return (
                Verdict.NO_DIFFERENCE,
                None,
                f"No significant difference at the required {power.required_sample_size} per arm",
            )

        return Verdict.INCONCLUSIVE, None, "No significant result yet"

    @staticmethod
    def _recommendations(
        test: ABTest,
        verdict: Verdict,
        winner: str | None,
        power: PowerAnalysis,
        reason: str,
    ) -> list[Recommendation]:
        if verdict == Verdict.SIGNIFICANT_WINNER:
            return [Recommendation(RecommendationAction.LAUNCH, reason, winner)]
        if verdict == Verdict.NO_DIFFERENCE:
            return [Recommendation(RecommendationAction.STOP, reason)]

        recommendations = [Recommendation(RecommendationAction.CONTINUE, reason)]
        if power.required_sample_size is not None and not power.is_adequate:
            remaining = power.required_sample_size - power.actual_sample_size
            recommendations.append(Recommendation(
                RecommendationAction.CONTINUE,
                f"Collect about {remaining} more exposures per arm to reach "
                f"{test.statistics.power:.0%} power",
            ))
        return recommendations


def _unpooled_se(control: ArmData, treatment: ArmData) -> float:
    if control.n == 0 or treatment.n == 0:
        return 0.0
    return (control.variance / control.n + treatment.variance / treatment.n) ** 0.5
