"""Conjugate Beta-Binomial model for binary-metric success rates.

Every variant starts from the uniform Beta(1, 1) prior, so the posterior
after ``s`` successes and ``f`` failures is Beta(1 + s, 1 + f).  Models are
built straight from a variant's stats record with ``from_stats``.

Randomness is always drawn from a caller-supplied ``numpy.random.Generator``
so that simulations and tests are reproducible.
"""

from __future__ import annotations

import numpy as np
from scipy import stats as sp_stats

from abengine.schemas import VariantStats


def ensure_rng(rng: np.random.Generator | None) -> np.random.Generator:
    """Return ``rng`` or a fresh, OS-seeded generator."""
    return rng if rng is not None else np.random.default_rng()


class BetaBinomial:
    """Immutable Beta-Binomial conjugate model.

    Parameters
    ----------
    prior_alpha : float
        Alpha parameter of the Beta prior (pseudo-successes).  Default 1.
    prior_beta : float
        Beta parameter of the Beta prior (pseudo-failures).  Default 1.
    """

    __slots__ = ("alpha", "beta")

    def __init__(self, prior_alpha: float = 1.0, prior_beta: float = 1.0) -> None:
        if prior_alpha <= 0 or prior_beta <= 0:
            raise ValueError("Alpha and beta must be positive")
        self.alpha = prior_alpha
        self.beta = prior_beta

    @classmethod
    def from_stats(cls, stats: VariantStats) -> BetaBinomial:
        """Posterior carried by a variant's binary-metric stats record."""
        return cls(prior_alpha=stats.alpha, prior_beta=stats.beta)

    # ------------------------------------------------------------------
    # Posterior summaries
    # ------------------------------------------------------------------

    def posterior_mean(self) -> float:
        """Expected value of the posterior Beta distribution: alpha / (alpha + beta)."""
        return self.alpha / (self.alpha + self.beta)

    def credible_interval(self, width: float = 0.95) -> tuple[float, float]:
        """Equal-tailed credible interval for the success rate.

        Parameters
        ----------
        width : float
            Width of the credible interval, e.g. 0.95 for 95%.

        Returns
        -------
        tuple[float, float]
            (lower_bound, upper_bound)
        """
        if not 0 < width < 1:
            raise ValueError("width must be between 0 and 1 exclusive")
        lower_tail = (1 - width) / 2
        dist = sp_stats.beta(self.alpha, self.beta)
        return (float(dist.ppf(lower_tail)), float(dist.ppf(1 - lower_tail)))

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def sample(self, n: int, rng: np.random.Generator | None = None) -> np.ndarray:
        """Draw *n* samples from the posterior Beta distribution.

        numpy draws Beta variates as a ratio of Gamma variates, which is
        exact for every (alpha, beta) the engine produces.
        """
        return ensure_rng(rng).beta(self.alpha, self.beta, size=n)

    def __repr__(self) -> str:
        return f"BetaBinomial(alpha={self.alpha:.3f}, beta={self.beta:.3f})"


# ======================================================================
# Shared utility
# ======================================================================

def draw_sample_matrix(
    models: list[BetaBinomial],
    n_samples: int,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """Draw a (n_samples, n_variants) matrix from a list of BetaBinomial posteriors.

    Used by the Thompson allocation estimate and ``expected_loss``.
    """
    rng = ensure_rng(rng)
    return np.column_stack(
        [rng.beta(m.alpha, m.beta, size=n_samples) for m in models]
    )


def equal_tailed_interval(samples: np.ndarray, width: float = 0.95) -> tuple[float, float]:
    """Empirical equal-tailed interval from Monte Carlo samples."""
    if not 0 < width < 1:
        raise ValueError("width must be between 0 and 1 exclusive")
    lower_tail = (1 - width) / 2
    low, high = np.quantile(samples, [lower_tail, 1 - lower_tail])
    return (float(low), float(high))
