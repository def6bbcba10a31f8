"""Pairwise variant comparison, expected loss and stop/continue/conclude rules.

Binary metrics get a fully Bayesian treatment: paired Monte Carlo draws from
the two Beta posteriors estimate P(treatment > control), the expected loss
of shipping the treatment, and a credible interval on relative lift.

Continuous metrics use a frequentist approximation instead: Welch's
unequal-variance t statistic on the two running means/variances.  The
reported ``probability_to_be_best`` is the one-sided confidence
``T_df.cdf(diff / se)``, which plays the same role in the decision rule but
is not a posterior probability.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
from scipy import stats as sp_stats

from abengine.schemas import Recommendation, TestResult, Variant, VariantStats
from abengine.stats.bayesian import BetaBinomial, draw_sample_matrix, ensure_rng, equal_tailed_interval

MIN_MONTE_CARLO_SAMPLES = 10_000


@dataclass(frozen=True)
class TestParams:
    __test__ = False  # not a pytest class

    significance_threshold: float = 0.95
    min_sample_size: int = 1000
    credible_interval: float = 0.95

    @property
    def futility_threshold(self) -> float:
        return 1.0 - self.significance_threshold


def metric_record(variant: Variant, metric: str) -> VariantStats:
    """The variant's record for ``metric``.

    A metric the variant never observed yields an empty record carrying only
    the assignment count, never another metric's data.
    """
    record = variant.metric_stats.get(metric)
    if record is not None:
        return record
    return VariantStats(assignments=variant.stats.assignments)


# ======================================================================
# Expected loss
# ======================================================================

def expected_loss(
    models: list[BetaBinomial],
    n_samples: int = 50_000,
    rng: np.random.Generator | None = None,
) -> list[float]:
    """Compute the expected loss for each variant.

    For variant *i*, expected loss is defined as::

        E[ max_j(theta_j) - theta_i ]

    i.e. the expected regret of choosing variant *i* when a better one
    may exist.
    """
    samples = draw_sample_matrix(models, n_samples, rng)
    best_per_row = np.max(samples, axis=1, keepdims=True)
    losses = best_per_row - samples
    return np.mean(losses, axis=0).tolist()


# ======================================================================
# Recommendation rule
# ======================================================================

def recommend(
    probability: float,
    control_samples: int,
    treatment_samples: int,
    params: TestParams,
) -> Recommendation:
    """``conclude`` / ``stop`` once both arms have enough data and the
    probability is decisively high / low, otherwise ``continue``."""
    enough_data = min(control_samples, treatment_samples) >= params.min_sample_size
    if not enough_data:
        return "continue"
    if probability >= params.significance_threshold:
        return "conclude"
    if probability <= params.futility_threshold:
        return "stop"
    return "continue"


# ======================================================================
# Tester
# ======================================================================

class BayesianTester:
    """Compares one treatment against the control on a single metric.

    Parameters
    ----------
    n_samples : int
        Monte Carlo draws per comparison.  At least 10,000, which keeps the
        standard error of the probability estimate below 0.5%.
    """

    def __init__(self, n_samples: int = 20_000) -> None:
        if n_samples < MIN_MONTE_CARLO_SAMPLES:
            raise ValueError(f"n_samples must be at least {MIN_MONTE_CARLO_SAMPLES}")
        self.n_samples = n_samples

    def compare(
        self,
        control: Variant,
        treatment: Variant,
        metric: str,
        binary: bool,
        params: TestParams | None = None,
        rng: np.random.Generator | None = None,
    ) -> TestResult:
        params = params or TestParams()
        control_stats = metric_record(control, metric)
        treatment_stats = metric_record(treatment, metric)

        if binary:
            fields = self._compare_binary(control_stats, treatment_stats, params, ensure_rng(rng))
        else:
            fields = self._compare_continuous(control_stats, treatment_stats, params)

        return TestResult(
            control_variant_id=control.id,
            treatment_variant_id=treatment.id,
            control_name=control.name,
            treatment_name=treatment.name,
            metric=metric,
            control_samples=control_stats.observations,
            treatment_samples=treatment_stats.observations,
            recommended_action=recommend(
                fields["probability_to_be_best"],
                control_stats.observations,
                treatment_stats.observations,
                params,
            ),
            **fields,
        )

    # ------------------------------------------------------------------
    # Binary: Beta-Binomial Monte Carlo
    # ------------------------------------------------------------------

    def _compare_binary(
        self,
        control: VariantStats,
        treatment: VariantStats,
        params: TestParams,
        rng: np.random.Generator,
    ) -> dict:
        model_c = BetaBinomial.from_stats(control)
        model_t = BetaBinomial.from_stats(treatment)

        samples_c = model_c.sample(self.n_samples, rng)
        samples_t = model_t.sample(self.n_samples, rng)

        probability = float(np.mean(samples_t > samples_c))
        loss = float(np.mean(np.maximum(samples_c - samples_t, 0.0)))

        # Beta draws can underflow to exactly 0 for extreme posteriors
        valid = samples_c > 0
        lift = (samples_t[valid] - samples_c[valid]) / samples_c[valid]
        credible = equal_tailed_interval(lift, params.credible_interval) if lift.size else None

        mean_c = model_c.posterior_mean()
        mean_t = model_t.posterior_mean()
        return {
            "metric_type": "binary",
            "method": "beta_binomial_monte_carlo",
            "control_mean": mean_c,
            "treatment_mean": mean_t,
            "control_interval": model_c.credible_interval(params.credible_interval),
            "treatment_interval": model_t.credible_interval(params.credible_interval),
            "absolute_effect": mean_t - mean_c,
            "relative_effect": (mean_t - mean_c) / mean_c,
            "probability_to_be_best": probability,
            "credible_interval": credible,
            "expected_loss": loss,
        }

    # ------------------------------------------------------------------
    # Continuous: Welch approximation
    # ------------------------------------------------------------------

    @staticmethod
    def _sample_variance(stats: VariantStats) -> float:
        n = stats.observations
        return stats.sum_of_squares / (n - 1) if n > 1 else 0.0

    def _compare_continuous(
        self,
        control: VariantStats,
        treatment: VariantStats,
        params: TestParams,
    ) -> dict:
        n_c, n_t = control.observations, treatment.observations
        mean_c, mean_t = control.mean, treatment.mean
        diff = mean_t - mean_c
        relative = diff / mean_c if mean_c != 0 else None
        z_tail = (1 + params.credible_interval) / 2

        def arm_interval(stats: VariantStats) -> tuple[float, float]:
            n = stats.observations
            if n < 2:
                return (stats.mean, stats.mean)
            half = sp_stats.t.ppf(z_tail, n - 1) * math.sqrt(self._sample_variance(stats) / n)
            return (stats.mean - half, stats.mean + half)

        result = {
            "metric_type": "continuous",
            "method": "welch_t_approximation",
            "control_mean": mean_c,
            "treatment_mean": mean_t,
            "control_interval": arm_interval(control),
            "treatment_interval": arm_interval(treatment),
            "absolute_effect": diff,
            "relative_effect": relative,
            "probability_to_be_best": 0.5,
            "credible_interval": None,
            "expected_loss": None,
        }
        if n_c < 2 or n_t < 2:
            return result

        var_c = self._sample_variance(control) / n_c
        var_t = self._sample_variance(treatment) / n_t
        se = math.sqrt(var_c + var_t)
        if se == 0:
            # Both arms constant: the difference is known exactly
            result["probability_to_be_best"] = 0.5 if diff == 0 else float(diff > 0)
            if relative is not None:
                result["credible_interval"] = (relative, relative)
            return result

        # Welch-Satterthwaite degrees of freedom
        df_denominator = 0.0
        if var_c > 0:
            df_denominator += var_c ** 2 / (n_c - 1)
        if var_t > 0:
            df_denominator += var_t ** 2 / (n_t - 1)
        df = (var_c + var_t) ** 2 / df_denominator

        result["probability_to_be_best"] = float(sp_stats.t.cdf(diff / se, df))
        half = float(sp_stats.t.ppf(z_tail, df)) * se
        if mean_c != 0:
            bounds = sorted(((diff - half) / mean_c, (diff + half) / mean_c))
            result["credible_interval"] = (bounds[0], bounds[1])
        return result
