"""Statistics for the experimentation engine.

Public API:
- StatsAccumulator: online per-variant stats (Beta counts, Welford moments)
- BetaBinomial: conjugate Beta-Binomial posterior
- VariantSelector: Thompson Sampling, UCB1, epsilon-greedy and weighted allocation
- BayesianTester: pairwise treatment-vs-control comparison
- expected_loss: per-variant expected regret
- recommend: continue / conclude / stop rule
"""

from abengine.stats.accumulator import StatsAccumulator
from abengine.stats.bandits import (
    EpsilonGreedyPolicy,
    ThompsonSamplingPolicy,
    UCB1Policy,
    VariantSelector,
    WeightedRandomPolicy,
)
from abengine.stats.bayesian import BetaBinomial, equal_tailed_interval
from abengine.stats.decisions import BayesianTester, TestParams, expected_loss, recommend

__all__ = [
    "StatsAccumulator",
    "BetaBinomial",
    "equal_tailed_interval",
    "VariantSelector",
    "ThompsonSamplingPolicy",
    "UCB1Policy",
    "EpsilonGreedyPolicy",
    "WeightedRandomPolicy",
    "BayesianTester",
    "TestParams",
    "expected_loss",
    "recommend",
]
