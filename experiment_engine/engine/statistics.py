"""
Statistical tests for comparing a treatment arm against control.

Provides:
- Two-proportion z-test and Welch's t-test (frequentist)
- Beta-Binomial Monte Carlo and Normal closed form (Bayesian)
- Percentile bootstrap with cooperative cancellation
- O'Brien-Fleming alpha spending for sequential looks
- Bonferroni and Benjamini-Hochberg corrections
- Power analysis, required sample size and effect sizes
"""

from __future__ import annotations

import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
from scipy import stats

from experiment_engine.core.exceptions import AnalysisCancelledError
from experiment_engine.storage.models import (
    CorrectionMethod,
    Goal,
    MetricType,
    VariantSnapshot,
)


# =============================================================================
# INPUTS AND OUTPUTS
# =============================================================================

@dataclass
class ArmData:
    """Per-exposed-user sufficient statistics of one arm for one goal."""
    variant_id: str
    n: int
    conversions: int
    mean: float
    variance: float
    samples: np.ndarray | None = None  # per-user outcomes, bootstrap only

    @property
    def std(self) -> float:
        return math.sqrt(self.variance) if self.variance > 0 else 0.0


@dataclass
class ComparisonStats:
    """Raw outcome of one treatment-vs-control test.

    Probabilities and effects are oriented as treatment minus control,
    regardless of the goal's direction.
    """
    effect: float
    relative_effect: float
    ci_lower: float
    ci_upper: float
    standard_error: float
    p_value: float | None = None
    probability_treatment_higher: float | None = None
    cohens_d: float = 0.0
    hedges_g: float = 0.0


def arm_from_snapshot(
    snapshot: VariantSnapshot,
    goal: Goal,
    samples: np.ndarray | None = None,
) -> ArmData:
    """Derive per-exposed-user statistics from variant counters.

    Binary goals use unique converters over exposures. Continuous goals
    treat non-converting exposed users as zero, so the goal aggregate is
    spread over all exposures.
    """
    n = snapshot.exposures
    conversions = snapshot.conversion_count(goal.goal_id)

    if n == 0:
        return ArmData(snapshot.variant_id, 0, conversions, 0.0, 0.0, samples)

    if goal.metric_type == MetricType.BINARY:
        p = min(conversions / n, 1.0)
        variance = p * (1 - p) * n / (n - 1) if n > 1 else 0.0
        return ArmData(snapshot.variant_id, n, conversions, p, variance, samples)

    agg = snapshot.goal_aggregate(goal.goal_id)
    mean = agg.total / n
    variance = 0.0
    if n > 1:
        variance = max((agg.total_sq - agg.total * agg.total / n) / (n - 1), 0.0)
    return ArmData(snapshot.variant_id, n, conversions, mean, variance, samples)


# =============================================================================
# EFFECT SIZES
# =============================================================================

def pooled_std(control: ArmData, treatment: ArmData) -> float:
    n1, n2 = control.n, treatment.n
    if n1 + n2 <= 2:
        return 0.0
    return math.sqrt(((n1 - 1) * control.variance + (n2 - 1) * treatment.variance) / (n1 + n2 - 2))


def cohens_d(control: ArmData, treatment: ArmData) -> float:
    """Standardized mean difference using the pooled standard deviation."""
    sd = pooled_std(control, treatment)
    return (treatment.mean - control.mean) / sd if sd > 0 else 0.0


def hedges_g(d: float, n1: int, n2: int) -> float:
    """Cohen's d with the small-sample bias correction."""
    df = n1 + n2
    if df <= 3:
        return d
    return d * (1 - 3 / (4 * df - 9))


def _relative(effect: float, baseline: float) -> float:
    return effect / abs(baseline) if abs(baseline) > 0 else 0.0


def _tail(alpha: float) -> float:
    """Upper-tail probability of a two-sided test, kept above zero."""
    return max(alpha / 2, np.finfo(float).tiny)


def _z_critical(alpha: float) -> float:
    # isf keeps precision for the tiny alphas of early sequential looks
    return float(stats.norm.isf(_tail(alpha)))


# =============================================================================
# CANCELLATION
# =============================================================================

class CancellationToken:
    """Cooperative cancellation flag checked between bootstrap chunks."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, test_id: str | None = None, iterations_completed: int = 0) -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(
                "Analysis cancelled by caller",
                test_id=test_id,
                iterations_completed=iterations_completed,
            )


# =============================================================================
# TESTERS
# =============================================================================

class StatisticalTester(ABC):
    """Abstract base class for statistical tests."""

    @abstractmethod
    def compare(
        self,
        control: ArmData,
        treatment: ArmData,
        metric_type: MetricType,
        alpha: float = 0.05,
    ) -> ComparisonStats:
        """Compare treatment to control; interval coverage is 1 - alpha."""
        pass


class FrequentistTester(StatisticalTester):
    """
    Frequentist hypothesis testing.

    Binary metrics use a two-proportion z-test with pooled standard error
    and an unpooled confidence interval. Continuous metrics use Welch's
    t-test, which handles unequal variances and sample sizes.
    """

    def compare(
        self,
        control: ArmData,
        treatment: ArmData,
        metric_type: MetricType,
        alpha: float = 0.05,
    ) -> ComparisonStats:
        if metric_type == MetricType.BINARY:
            result = self._two_proportion(control, treatment, alpha)
        else:
            result = self._welch(control, treatment, alpha)
        result.cohens_d = cohens_d(control, treatment)
        result.hedges_g = hedges_g(result.cohens_d, control.n, treatment.n)
        return result

    def _two_proportion(self, control: ArmData, treatment: ArmData, alpha: float) -> ComparisonStats:
        n1, n2 = control.n, treatment.n
        p1, p2 = control.mean, treatment.mean
        effect = p2 - p1

        if n1 == 0 or n2 == 0:
            return ComparisonStats(effect, 0.0, 0.0, 0.0, 0.0, p_value=1.0, probability_treatment_higher=0.5)

        pooled = (control.conversions + treatment.conversions) / (n1 + n2)
        se_pooled = math.sqrt(pooled * (1 - pooled) * (1 / n1 + 1 / n2))
        se = math.sqrt(p1 * (1 - p1) / n1 + p2 * (1 - p2) / n2)

        if se_pooled > 0:
            z_stat = effect / se_pooled
            p_value = float(2 * stats.norm.sf(abs(z_stat)))
        else:
            p_value = 1.0

        z_crit = _z_critical(alpha)
        prob_higher = float(stats.norm.cdf(effect / se)) if se > 0 else _step(effect)

        return ComparisonStats(
            effect=effect,
            relative_effect=_relative(effect, p1),
            ci_lower=effect - z_crit * se,
            ci_upper=effect + z_crit * se,
            standard_error=se,
            p_value=p_value,
            probability_treatment_higher=prob_higher,
        )

    def _welch(self, control: ArmData, treatment: ArmData, alpha: float) -> ComparisonStats:
        n1, n2 = control.n, treatment.n
        effect = treatment.mean - control.mean

        if n1 < 2 or n2 < 2:
            return ComparisonStats(
                effect, _relative(effect, control.mean), 0.0, 0.0, 0.0,
                p_value=1.0, probability_treatment_higher=0.5,
            )

        var1, var2 = control.variance, treatment.variance
        se = math.sqrt(var1 / n1 + var2 / n2)

        if se == 0:
            p_value = 1.0 if effect == 0 else 0.0
            return ComparisonStats(
                effect, _relative(effect, control.mean), effect, effect, 0.0,
                p_value=p_value, probability_treatment_higher=_step(effect),
            )

        t_stat = effect / se

        # Welch-Satterthwaite degrees of freedom
        denom = (var1 / n1) ** 2 / (n1 - 1) + (var2 / n2) ** 2 / (n2 - 1)
        df = max(1.0, (var1 / n1 + var2 / n2) ** 2 / denom) if denom > 0 else float(n1 + n2 - 2)

        p_value = float(2 * stats.t.sf(abs(t_stat), df))
        t_crit = stats.t.isf(_tail(alpha), df)

        return ComparisonStats(
            effect=effect,
            relative_effect=_relative(effect, control.mean),
            ci_lower=effect - t_crit * se,
            ci_upper=effect + t_crit * se,
            standard_error=se,
            p_value=p_value,
            probability_treatment_higher=float(stats.t.cdf(t_stat, df)),
        )


class BayesianTester(StatisticalTester):
    """
    Bayesian inference for A/B testing.

    Uses conjugate posteriors:
    - Beta(1 + x, 1 + n - x) per arm for binary metrics, compared by
      seeded Monte Carlo draws
    - Normal approximation to the difference of means for continuous
      metrics, in closed form
    """

    def __init__(self, draws: int = 20000, seed: int = 42) -> None:
        self.draws = draws
        self.seed = seed

    def compare(
        self,
        control: ArmData,
        treatment: ArmData,
        metric_type: MetricType,
        alpha: float = 0.05,
    ) -> ComparisonStats:
        if metric_type == MetricType.BINARY:
            result = self._beta_binomial(control, treatment, alpha)
        else:
            result = self._normal(control, treatment, alpha)
        result.cohens_d = cohens_d(control, treatment)
        result.hedges_g = hedges_g(result.cohens_d, control.n, treatment.n)
        return result

    def _beta_binomial(self, control: ArmData, treatment: ArmData, alpha: float) -> ComparisonStats:
        rng = np.random.default_rng(self.seed)
        x1, n1 = min(control.conversions, control.n), control.n
        x2, n2 = min(treatment.conversions, treatment.n), treatment.n

        control_samples = rng.beta(1 + x1, 1 + n1 - x1, self.draws)
        treatment_samples = rng.beta(1 + x2, 1 + n2 - x2, self.draws)
        effect_samples = treatment_samples - control_samples

        ci_low, ci_high = np.percentile(effect_samples, [100 * alpha / 2, 100 * (1 - alpha / 2)])
        effect = float(np.mean(effect_samples))

        return ComparisonStats(
            effect=effect,
            relative_effect=_relative(effect, float(np.mean(control_samples))),
            ci_lower=float(ci_low),
            ci_upper=float(ci_high),
            standard_error=float(np.std(effect_samples)),
            probability_treatment_higher=float(np.mean(treatment_samples > control_samples)),
        )

    def _normal(self, control: ArmData, treatment: ArmData, alpha: float) -> ComparisonStats:
        effect = treatment.mean - control.mean
        if control.n < 2 or treatment.n < 2:
            return ComparisonStats(
                effect, _relative(effect, control.mean), 0.0, 0.0, 0.0,
                probability_treatment_higher=0.5,
            )

        se = math.sqrt(control.variance / control.n + treatment.variance / treatment.n)
        z_crit = _z_critical(alpha)
        prob_higher = float(stats.norm.cdf(effect / se)) if se > 0 else _step(effect)

        return ComparisonStats(
            effect=effect,
            relative_effect=_relative(effect, control.mean),
            ci_lower=effect - z_crit * se,
            ci_upper=effect + z_crit * se,
            standard_error=se,
            probability_treatment_higher=prob_higher,
        )


class BootstrapTester(StatisticalTester):
    """
    Percentile bootstrap on per-user outcomes.

    Resamples both arms with replacement for a fixed number of iterations,
    run in chunks; the cancellation token is checked between chunks and
    partial results are discarded on cancellation.
    """

    def __init__(
        self,
        iterations: int = 2000,
        chunk_size: int = 250,
        seed: int = 42,
        cancel_token: CancellationToken | None = None,
        test_id: str | None = None,
    ) -> None:
        self.iterations = iterations
        self.chunk_size = max(1, chunk_size)
        self.seed = seed
        self.cancel_token = cancel_token
        self.test_id = test_id

    def compare(
        self,
        control: ArmData,
        treatment: ArmData,
        metric_type: MetricType,
        alpha: float = 0.05,
    ) -> ComparisonStats:
        control_samples = control.samples if control.samples is not None else np.empty(0)
        treatment_samples = treatment.samples if treatment.samples is not None else np.empty(0)

        observed = _mean(treatment_samples) - _mean(control_samples)
        baseline = _mean(control_samples)

        if control_samples.size == 0 or treatment_samples.size == 0:
            return ComparisonStats(
                observed, _relative(observed, baseline), 0.0, 0.0, 0.0,
                p_value=1.0, probability_treatment_higher=0.5,
            )

        diffs = self._resample(control_samples, treatment_samples)
        ci_low, ci_high = np.percentile(diffs, [100 * alpha / 2, 100 * (1 - alpha / 2)])
        p_value = min(1.0, 2 * min(float(np.mean(diffs <= 0)), float(np.mean(diffs >= 0))))

        d = cohens_d(control, treatment)
        return ComparisonStats(
            effect=observed,
            relative_effect=_relative(observed, baseline),
            ci_lower=float(ci_low),
            ci_upper=float(ci_high),
            standard_error=float(np.std(diffs, ddof=1)) if diffs.size > 1 else 0.0,
            p_value=p_value,
            probability_treatment_higher=float(np.mean(diffs > 0)),
            cohens_d=d,
            hedges_g=hedges_g(d, control.n, treatment.n),
        )

    def _resample(self, control: np.ndarray, treatment: np.ndarray) -> np.ndarray:
        rng = np.random.default_rng(self.seed)
        diffs = np.empty(self.iterations)
        done = 0
        while done < self.iterations:
            if self.cancel_token is not None:
                self.cancel_token.raise_if_cancelled(self.test_id, done)
            stop = min(done + self.chunk_size, self.iterations)
            for i in range(done, stop):
                diffs[i] = (
                    rng.choice(treatment, size=treatment.size, replace=True).mean()
                    - rng.choice(control, size=control.size, replace=True).mean()
                )
            done = stop
        return diffs


def _mean(values: np.ndarray) -> float:
    return float(values.mean()) if values.size else 0.0


def _step(effect: float) -> float:
    if effect > 0:
        return 1.0
    if effect < 0:
        return 0.0
    return 0.5


# =============================================================================
# SEQUENTIAL AND MULTIPLE TESTING
# =============================================================================

def obrien_fleming_alpha(alpha: float, information_fraction: float) -> float:
    """Nominal alpha available at an interim look (O'Brien-Fleming spending)."""
    if information_fraction <= 0:
        return 0.0
    if information_fraction >= 1:
        return alpha

    z_alpha = _z_critical(alpha)
    z_t = z_alpha / math.sqrt(information_fraction)
    return float(2 * stats.norm.sf(z_t))


def adjust_p_values(p_values: list[float], method: CorrectionMethod) -> list[float]:
    """Adjust a family of p-values, preserving input order."""
    m = len(p_values)
    if m == 0 or method == CorrectionMethod.NONE:
        return list(p_values)

    if method == CorrectionMethod.BONFERRONI:
        return [min(1.0, p * m) for p in p_values]

    # Benjamini-Hochberg step-up, made monotone from the largest rank down
    order = sorted(range(m), key=lambda i: p_values[i])
    adjusted = [0.0] * m
    running_min = 1.0
    for rank in range(m, 0, -1):
        idx = order[rank - 1]
        running_min = min(running_min, p_values[idx] * m / rank)
        adjusted[idx] = running_min
    return adjusted


# =============================================================================
# POWER ANALYSIS
# =============================================================================

def required_sample_size(
    baseline: float,
    minimum_detectable_effect: float,
    metric_type: MetricType,
    alpha: float = 0.05,
    power: float = 0.80,
    std: float | None = None,
) -> int | None:
    """Per-arm sample size to detect a relative lift at (alpha, power).

    Returns None when the effect cannot be sized (zero baseline, zero
    spread, or a target rate outside (0, 1)).
    """
    z_alpha = _z_critical(alpha)
    z_beta = stats.norm.ppf(power)

    if metric_type == MetricType.BINARY:
        p1 = baseline
        p2 = baseline * (1 + minimum_detectable_effect)
        if not (0 < p1 < 1 and 0 < p2 < 1) or p1 == p2:
            return None
        p_bar = (p1 + p2) / 2
        numerator = (
            z_alpha * math.sqrt(2 * p_bar * (1 - p_bar))
            + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
        ) ** 2
        return int(math.ceil(numerator / (p2 - p1) ** 2))

    delta = abs(baseline) * minimum_detectable_effect
    if delta == 0 or not std:
        return None
    return int(math.ceil(2 * ((z_alpha + z_beta) * std / delta) ** 2))


def observed_power(effect: float, standard_error: float, alpha: float = 0.05) -> float:
    """Power of a two-sided z-test for the observed effect and standard error."""
    if standard_error <= 0:
        return 0.0
    z_crit = _z_critical(alpha)
    ncp = abs(effect) / standard_error
    power = stats.norm.cdf(ncp - z_crit) + stats.norm.cdf(-ncp - z_crit)
    return float(max(0.0, min(1.0, power)))
