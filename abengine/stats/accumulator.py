"""Online per-variant statistics for binary and continuous metrics.

Binary metrics (an allow-list, ``click`` and ``conversion`` by default) feed
a Beta(1, 1)-smoothed Beta-Binomial posterior.  Every other metric is
treated as continuous and updated with Welford's single-pass algorithm, so
each observation touches O(1) state and the running mean never suffers the
cancellation of the naive sum / sum-of-squares formula.
"""

from __future__ import annotations

from collections.abc import Iterable

from abengine.core.config import settings
from abengine.schemas import VariantStats


class StatsAccumulator:
    """Applies assignment and observation events to ``VariantStats`` records.

    Parameters
    ----------
    binary_metrics : Iterable[str] | None
        Metric names treated as Bernoulli outcomes.  Defaults to
        ``settings.BINARY_METRICS``.
    """

    def __init__(self, binary_metrics: Iterable[str] | None = None) -> None:
        if binary_metrics is None:
            binary_metrics = settings.BINARY_METRICS
        self.binary_metrics = frozenset(binary_metrics)

    def is_binary(self, metric: str) -> bool:
        return metric in self.binary_metrics

    # ------------------------------------------------------------------
    # Event application (mutates the record in place)
    # ------------------------------------------------------------------

    @staticmethod
    def apply_assignment(stats: VariantStats) -> VariantStats:
        stats.assignments += 1
        return stats

    def apply_observation(self, stats: VariantStats, metric: str, value: float) -> VariantStats:
        """Fold one observation into ``stats``.

        Binary: ``value > 0`` is a success, anything else a failure, and the
        posterior becomes Beta(1 + successes, 1 + failures).

        Continuous::

            n       = n + 1
            delta   = value - mean
            mean   += delta / n
            M2     += delta * (value - mean)
            var     = M2 / n   (0 while n == 1)
        """
        if self.is_binary(metric):
            return self.apply_binary(stats, value)
        return self.apply_continuous(stats, value)

    @staticmethod
    def apply_binary(stats: VariantStats, value: float) -> VariantStats:
        stats.observations += 1
        if value > 0:
            stats.successes += 1
        else:
            stats.failures += 1
        stats.alpha = 1.0 + stats.successes
        stats.beta = 1.0 + stats.failures
        return stats

    @staticmethod
    def apply_continuous(stats: VariantStats, value: float) -> VariantStats:
        n = stats.observations + 1
        delta = value - stats.mean
        stats.observations = n
        stats.sum += value
        stats.mean += delta / n
        stats.sum_of_squares += delta * (value - stats.mean)
        stats.variance = stats.sum_of_squares / n if n > 1 else 0.0
        return stats

    # ------------------------------------------------------------------
    # Merging partial records
    # ------------------------------------------------------------------

    @staticmethod
    def merge(a: VariantStats, b: VariantStats) -> VariantStats:
        """Combine two records as if their events had been applied to one.

        Counters add; mean and M2 use Chan et al.'s pairwise combination,
        which is commutative and associative, so partial records built by
        concurrent writers converge to the same totals in any order.
        """
        n = a.observations + b.observations
        if n == 0:
            mean = 0.0
            m2 = 0.0
        else:
            delta = b.mean - a.mean
            mean = a.mean + delta * b.observations / n
            m2 = a.sum_of_squares + b.sum_of_squares + delta * delta * a.observations * b.observations / n

        successes = a.successes + b.successes
        failures = a.failures + b.failures
        return VariantStats(
            assignments=a.assignments + b.assignments,
            observations=n,
            successes=successes,
            failures=failures,
            alpha=1.0 + successes,
            beta=1.0 + failures,
            sum=a.sum + b.sum,
            sum_of_squares=m2,
            mean=mean,
            variance=m2 / n if n > 1 else 0.0,
        )

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @staticmethod
    def success_rate(stats: VariantStats) -> float:
        """Empirical success rate; 0.0 before any binary observation."""
        trials = stats.successes + stats.failures
        return stats.successes / trials if trials > 0 else 0.0

    def arm_mean(self, stats: VariantStats, binary: bool) -> float:
        return self.success_rate(stats) if binary else stats.mean
