import uuid

import numpy as np
import pytest

from abengine.schemas import Variant, VariantStats
from abengine.stats.accumulator import StatsAccumulator


@pytest.fixture
def rng():
    return np.random.default_rng(42)


@pytest.fixture
def accumulator():
    return StatsAccumulator(["click", "conversion"])


@pytest.fixture
def make_variant():
    """Factory for detached variants with hand-set stats."""
    experiment_id = uuid.uuid4()

    def _make(
        name: str, weight: float = 0.5, is_control: bool = False, metric: str = "conversion", **stats
    ) -> Variant:
        successes = stats.get("successes", 0)
        failures = stats.get("failures", 0)
        stats.setdefault("observations", successes + failures)
        record = VariantStats(alpha=1.0 + successes, beta=1.0 + failures, **stats)
        return Variant(
            experiment_id=experiment_id,
            name=name,
            weight=weight,
            is_control=is_control,
            stats=record,
            metric_stats={metric: record},
        )

    return _make
