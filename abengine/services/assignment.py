"""Sticky variant assignment.

A returning identity always gets the assignment it received first, for the
lifetime of the experiment.  First-time requests pick a variant with the
experiment's policy and persist it through the store's conditional insert,
so concurrent first requests for one identity converge on a single row.

Traffic gating uses a 32-bit FNV-1a hash of ``"{identity}:{experiment_id}"``
mapped to a bucket in 0-999; identities whose bucket falls outside
``traffic_allocation`` are excluded from the experiment entirely.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import numpy as np

from abengine.core.errors import ExperimentNotRunning
from abengine.schemas import Assignment, AssignmentContext, Experiment, ExperimentStatus
from abengine.stats.bandits import VariantSelector
from abengine.stats.bayesian import ensure_rng

logger = logging.getLogger(__name__)

# FNV-1a constants (32-bit)
FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
MASK_32 = 0xFFFFFFFF


def fnv1a(data: str) -> int:
    """Compute 32-bit FNV-1a hash of a string."""
    h = FNV_OFFSET_BASIS
    for byte in data.encode("utf-8"):
        h ^= byte
        h = (h * FNV_PRIME) & MASK_32
    return h


def traffic_bucket(identity_key: str, experiment_id) -> int:
    return fnv1a(f"{identity_key}:{experiment_id}") % 1000


def in_traffic(identity_key: str, experiment: Experiment) -> bool:
    """Whether an identity falls inside the experiment's traffic allocation."""
    return traffic_bucket(identity_key, experiment.id) < int(experiment.config.traffic_allocation * 1000)


class AssignmentLedger:
    """Get-or-create for (experiment, identity) assignments.

    Parameters
    ----------
    store
        ``ExperimentStore`` (normally wrapped in ``GuardedStore``).
    selector : VariantSelector
        Policy dispatcher used for first-time identities.
    binary_metric : callable
        ``metric -> bool``, tells mean-based policies how to read stats.
    rng : numpy.random.Generator | None
        Random source for the selector.
    """

    def __init__(self, store, selector: VariantSelector, binary_metric, rng: np.random.Generator | None = None) -> None:
        self.store = store
        self.selector = selector
        self.binary_metric = binary_metric
        self.rng = ensure_rng(rng)

    async def get_or_create(
        self,
        experiment: Experiment,
        identity_key: str,
        context: AssignmentContext | None = None,
    ) -> Assignment | None:
        if experiment.status != ExperimentStatus.running:
            raise ExperimentNotRunning(experiment.id, experiment.status)

        existing = await self.store.find_assignment(experiment.id, identity_key)
        if existing is not None:
            return existing

        if not in_traffic(identity_key, experiment):
            logger.debug("Identity %s outside traffic allocation of %s", identity_key, experiment.id)
            return None

        config = experiment.config
        variant = self.selector.select(
            experiment.variants,
            config.policy,
            config.parameters,
            rng=self.rng,
            binary=self.binary_metric(config.primary_metric),
        )

        context = context or AssignmentContext()
        candidate = Assignment(
            experiment_id=experiment.id,
            variant_id=variant.id,
            variant_name=variant.name,
            identity_key=identity_key,
            session_id=context.session_id,
            context=context.attributes,
            assigned_at=datetime.now(timezone.utc),
            config=variant.model_copy(deep=True).config,
        )

        stored, created = await self.store.insert_assignment_if_absent(candidate)
        if created:
            await self.store.increment_assignments(stored.variant_id)
        else:
            logger.debug(
                "Concurrent assignment for %s in %s resolved to existing %s",
                identity_key,
                experiment.id,
                stored.id,
            )
        return stored
