"""In-process store honoring the ``ExperimentStore`` atomicity contract.

A single lock guards all state and is never held across an ``await``, so
each method is one atomic step for any number of coroutines or threads.
Records are deep-copied on the way in and out; callers never share mutable
state with the store.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime

from abengine.core.errors import StorageError
from abengine.schemas import Assignment, Experiment, ExperimentStatus, Observation, VariantStats
from abengine.stats.accumulator import StatsAccumulator
from abengine.storage.base import ExperimentStore


class InMemoryStore(ExperimentStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._experiments: dict[uuid.UUID, Experiment] = {}
        self._assignments: dict[uuid.UUID, Assignment] = {}
        self._assignment_index: dict[tuple[uuid.UUID, str], uuid.UUID] = {}
        self._assignment_counts: dict[uuid.UUID, int] = {}
        self._metric_stats: dict[tuple[uuid.UUID, str], VariantStats] = {}
        self._observations: list[Observation] = []

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    async def create_experiment(self, experiment: Experiment) -> Experiment:
        with self._lock:
            if experiment.id in self._experiments:
                raise StorageError(f"Experiment {experiment.id} already exists")
            stored = experiment.model_copy(deep=True)
            for variant in stored.variants:
                variant.stats = VariantStats()
                variant.metric_stats = {}
                self._assignment_counts[variant.id] = 0
            self._experiments[stored.id] = stored
            return self._hydrate(stored)

    async def get_experiment(self, experiment_id: uuid.UUID) -> Experiment | None:
        with self._lock:
            stored = self._experiments.get(experiment_id)
            return self._hydrate(stored) if stored is not None else None

    async def update_status(
        self,
        experiment_id,
        expected,
        new_status,
        *,
        updated_at,
        started_at=None,
        concluded_at=None,
        winner_variant_id=None,
    ) -> bool:
        with self._lock:
            stored = self._experiments.get(experiment_id)
            if stored is None or stored.status != expected:
                return False
            stored.status = ExperimentStatus(new_status)
            stored.updated_at = updated_at
            if started_at is not None and stored.started_at is None:
                stored.started_at = started_at
            if concluded_at is not None:
                stored.concluded_at = concluded_at
            if winner_variant_id is not None:
                stored.winner_variant_id = winner_variant_id
            return True

    async def update_variant_weights(self, experiment_id, weights, updated_at: datetime) -> None:
        with self._lock:
            stored = self._experiments.get(experiment_id)
            if stored is None:
                raise StorageError(f"Experiment {experiment_id} missing")
            for variant in stored.variants:
                if variant.id in weights:
                    variant.weight = weights[variant.id]
            stored.updated_at = updated_at

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def get_assignment(self, assignment_id):
        with self._lock:
            assignment = self._assignments.get(assignment_id)
            return assignment.model_copy(deep=True) if assignment is not None else None

    async def find_assignment(self, experiment_id, identity_key):
        with self._lock:
            assignment_id = self._assignment_index.get((experiment_id, identity_key))
            if assignment_id is None:
                return None
            return self._assignments[assignment_id].model_copy(deep=True)

    async def insert_assignment_if_absent(self, assignment: Assignment) -> tuple[Assignment, bool]:
        key = (assignment.experiment_id, assignment.identity_key)
        with self._lock:
            existing_id = self._assignment_index.get(key)
            if existing_id is not None:
                return self._assignments[existing_id].model_copy(deep=True), False
            stored = assignment.model_copy(deep=True)
            self._assignments[stored.id] = stored
            self._assignment_index[key] = stored.id
            return stored.model_copy(deep=True), True

    async def increment_assignments(self, variant_id, delta: int = 1) -> None:
        with self._lock:
            if variant_id not in self._assignment_counts:
                raise StorageError(f"Variant {variant_id} missing")
            self._assignment_counts[variant_id] += delta

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    async def apply_observation(self, variant_id, metric, value, binary) -> None:
        with self._lock:
            if variant_id not in self._assignment_counts:
                raise StorageError(f"Variant {variant_id} missing")
            stats = self._metric_stats.setdefault((variant_id, metric), VariantStats())
            if binary:
                StatsAccumulator.apply_binary(stats, value)
            else:
                StatsAccumulator.apply_continuous(stats, value)

    async def append_observation(self, observation: Observation) -> None:
        with self._lock:
            self._observations.append(observation.model_copy(deep=True))

    async def list_observations(self, assignment_id) -> list[Observation]:
        with self._lock:
            return [
                o.model_copy(deep=True) for o in self._observations if o.assignment_id == assignment_id
            ]

    # ------------------------------------------------------------------
    # Helpers (lock held by caller)
    # ------------------------------------------------------------------

    def _hydrate(self, stored: Experiment) -> Experiment:
        experiment = stored.model_copy(deep=True)
        primary = experiment.config.primary_metric
        for variant in experiment.variants:
            assignments = self._assignment_counts.get(variant.id, 0)
            variant.metric_stats = {
                metric: stats.model_copy(update={"assignments": assignments})
                for (variant_id, metric), stats in self._metric_stats.items()
                if variant_id == variant.id
            }
            variant.stats = variant.metric_stats.get(primary, VariantStats()).model_copy(
                update={"assignments": assignments}
            )
        return experiment
