"""Variant selection policies: Thompson Sampling, UCB1, Epsilon-Greedy and
fixed-weight random allocation.

``VariantSelector.select`` is the single entry point.  It dispatches through
an explicit registry keyed by ``PolicyType``; ``ab_test`` and ``bayesian_ab``
experiments both use fixed-weight allocation for assignment (the latter
differs only in how results are evaluated).

Whenever several variants score exactly the same, the winner is drawn
uniformly from the tied set so that declaration order never biases traffic.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from abengine.core.errors import InvalidVariantConfiguration
from abengine.schemas import PolicyType, Variant
from abengine.stats.accumulator import StatsAccumulator
from abengine.stats.bayesian import BetaBinomial, draw_sample_matrix, ensure_rng


def argmax_random_tie(scores: np.ndarray, rng: np.random.Generator) -> int:
    """Index of the maximum score, ties broken uniformly at random."""
    best = np.flatnonzero(scores == scores.max())
    if len(best) == 1:
        return int(best[0])
    return int(rng.choice(best))


class SelectionPolicy(ABC):
    """One traffic-allocation strategy."""

    def validate(self, variants: list[Variant], params: dict[str, Any]) -> None:
        """Reject variant sets or parameters this policy cannot work with."""

    @abstractmethod
    def select(
        self,
        variants: list[Variant],
        params: dict[str, Any],
        rng: np.random.Generator,
        binary: bool,
    ) -> Variant:
        ...


# ----------------------------------------------------------------------
# Thompson Sampling
# ----------------------------------------------------------------------


class ThompsonSamplingPolicy(SelectionPolicy):
    """Draw once from every arm's Beta(alpha, beta) posterior; play the highest draw.

    Wide posteriors occasionally sample high (exploration) while narrow,
    high-mean posteriors win most rounds (exploitation).
    """

    def select(self, variants, params, rng, binary):
        draws = np.array([rng.beta(v.stats.alpha, v.stats.beta) for v in variants])
        return variants[argmax_random_tie(draws, rng)]

    @staticmethod
    def allocation(
        variants: list[Variant],
        n_samples: int = 10_000,
        rng: np.random.Generator | None = None,
    ) -> list[float]:
        """Estimate the traffic split Thompson Sampling would currently produce.

        Runs ``n_samples`` vectorised rounds and returns the fraction of
        rounds each variant wins.
        """
        models = [BetaBinomial.from_stats(v.stats) for v in variants]
        samples = draw_sample_matrix(models, n_samples, rng)
        winners = np.argmax(samples, axis=1)
        counts = np.bincount(winners, minlength=len(variants))
        return (counts / n_samples).tolist()


# ----------------------------------------------------------------------
# UCB1
# ----------------------------------------------------------------------


class UCB1Policy(SelectionPolicy):
    """score = mean + c * sqrt(ln(total_assignments) / assignments).

    Any arm that has never been assigned is played first, before any score
    is computed.
    """

    DEFAULT_C = 2.0

    def __init__(self, accumulator: StatsAccumulator) -> None:
        self.accumulator = accumulator

    def validate(self, variants, params):
        c = params.get("c", self.DEFAULT_C)
        if not isinstance(c, (int, float)) or c <= 0:
            raise InvalidVariantConfiguration(f"UCB exploration constant c must be positive, got {c!r}")

    def select(self, variants, params, rng, binary):
        cold = [v for v in variants if v.stats.assignments == 0]
        if cold:
            return cold[int(rng.integers(len(cold)))]

        c = float(params.get("c", self.DEFAULT_C))
        total = sum(v.stats.assignments for v in variants)
        log_total = math.log(total)
        scores = np.array(
            [
                self.accumulator.arm_mean(v.stats, binary)
                + c * math.sqrt(log_total / v.stats.assignments)
                for v in variants
            ]
        )
        return variants[argmax_random_tie(scores, rng)]


# ----------------------------------------------------------------------
# Epsilon-Greedy
# ----------------------------------------------------------------------


class EpsilonGreedyPolicy(SelectionPolicy):
    """Explore uniformly with probability epsilon, otherwise exploit the best mean.

    With ``decay`` enabled the exploration rate shrinks as traffic grows::

        epsilon_t = max(epsilon / (1 + decay_rate * total), min(epsilon, min_epsilon))

    The floor keeps the rate strictly positive so every arm keeps being
    revisited.
    """

    DEFAULT_EPSILON = 0.1
    DEFAULT_MIN_EPSILON = 0.01

    def __init__(self, accumulator: StatsAccumulator) -> None:
        self.accumulator = accumulator

    def validate(self, variants, params):
        epsilon = params.get("epsilon", self.DEFAULT_EPSILON)
        if not isinstance(epsilon, (int, float)) or not 0 < epsilon <= 1:
            raise InvalidVariantConfiguration(f"epsilon must be in (0, 1], got {epsilon!r}")
        decay_rate = params.get("decay_rate", 1.0)
        if not isinstance(decay_rate, (int, float)) or decay_rate < 0:
            raise InvalidVariantConfiguration(f"decay_rate must be non-negative, got {decay_rate!r}")
        min_epsilon = params.get("min_epsilon", self.DEFAULT_MIN_EPSILON)
        if not isinstance(min_epsilon, (int, float)) or min_epsilon <= 0:
            raise InvalidVariantConfiguration(f"min_epsilon must be positive, got {min_epsilon!r}")

    def effective_epsilon(self, params: dict[str, Any], total_assignments: int) -> float:
        epsilon = float(params.get("epsilon", self.DEFAULT_EPSILON))
        if not params.get("decay", False):
            return epsilon
        decay_rate = float(params.get("decay_rate", 1.0))
        floor = min(epsilon, float(params.get("min_epsilon", self.DEFAULT_MIN_EPSILON)))
        return max(epsilon / (1.0 + decay_rate * total_assignments), floor)

    def select(self, variants, params, rng, binary):
        total = sum(v.stats.assignments for v in variants)
        if rng.random() < self.effective_epsilon(params, total):
            return variants[int(rng.integers(len(variants)))]

        means = np.array([self.accumulator.arm_mean(v.stats, binary) for v in variants])
        return variants[argmax_random_tie(means, rng)]


# ----------------------------------------------------------------------
# Fixed allocation
# ----------------------------------------------------------------------


class WeightedRandomPolicy(SelectionPolicy):
    """Cumulative-weight sampling over ``variant.weight`` (classic A/B split)."""

    def validate(self, variants, params):
        total = sum(v.weight for v in variants)
        if not total > 0:
            raise InvalidVariantConfiguration("Variant weights must sum to a positive value")

    def select(self, variants, params, rng, binary):
        total = sum(v.weight for v in variants)
        if not total > 0:
            raise InvalidVariantConfiguration("Variant weights must sum to a positive value")

        r = rng.uniform(0.0, total)
        for variant in variants:
            r -= variant.weight
            if r <= 0:
                return variant
        # Floating point remainder
        return variants[-1]


# ----------------------------------------------------------------------
# Dispatch
# ----------------------------------------------------------------------


class VariantSelector:
    """Dispatches ``select`` to the policy registered for an experiment type."""

    def __init__(self, accumulator: StatsAccumulator | None = None) -> None:
        self.accumulator = accumulator or StatsAccumulator()
        weighted = WeightedRandomPolicy()
        self.policies: dict[PolicyType, SelectionPolicy] = {
            PolicyType.thompson_sampling: ThompsonSamplingPolicy(),
            PolicyType.ucb: UCB1Policy(self.accumulator),
            PolicyType.epsilon_greedy: EpsilonGreedyPolicy(self.accumulator),
            PolicyType.ab_test: weighted,
            PolicyType.bayesian_ab: weighted,
        }

    def policy_for(self, policy: PolicyType | str) -> SelectionPolicy:
        try:
            return self.policies[PolicyType(policy)]
        except (KeyError, ValueError):
            raise InvalidVariantConfiguration(f"Unsupported policy: {policy!r}") from None

    def validate(
        self,
        variants: list[Variant],
        policy: PolicyType | str,
        params: dict[str, Any] | None = None,
    ) -> None:
        if len(variants) < 2:
            raise InvalidVariantConfiguration("An experiment needs at least two variants")
        self.policy_for(policy).validate(variants, params or {})

    def select(
        self,
        variants: list[Variant],
        policy: PolicyType | str,
        params: dict[str, Any] | None = None,
        rng: np.random.Generator | None = None,
        binary: bool = True,
    ) -> Variant:
        """Pick one variant.

        Parameters
        ----------
        variants : list[Variant]
            Candidate arms with their current stats snapshots.
        policy : PolicyType | str
            Allocation strategy.
        params : dict | None
            Policy-specific parameters (``c``, ``epsilon``, ``decay`` ...).
        rng : numpy.random.Generator | None
            Random source; pass a seeded generator for reproducible runs.
        binary : bool
            Whether the metric driving mean-based policies is binary
            (success rate) or continuous (running mean).
        """
        if not variants:
            raise InvalidVariantConfiguration("No variants to select from")
        return self.policy_for(policy).select(variants, params or {}, ensure_rng(rng), binary)
