"""Storage collaborator contract.

The engine keeps no state of its own: experiments, variant stats,
assignments and observations live behind an ``ExperimentStore``.  Every
mutating method is a single atomic primitive (conditional insert, counter
increment, compare-and-set, in-store stats update) so concurrent request
handlers never need a lock held across a network round trip.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from abengine.core.errors import CollaboratorUnavailable, StorageError
from abengine.schemas import Assignment, Experiment, ExperimentStatus, Observation

logger = logging.getLogger(__name__)


class ExperimentStore(ABC):
    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    @abstractmethod
    async def create_experiment(self, experiment: Experiment) -> Experiment:
        """Persist an experiment and all of its variants atomically."""

    @abstractmethod
    async def get_experiment(self, experiment_id: uuid.UUID) -> Experiment | None:
        """Experiment with fresh variant stats, or None."""

    @abstractmethod
    async def update_status(
        self,
        experiment_id: uuid.UUID,
        expected: ExperimentStatus,
        new_status: ExperimentStatus,
        *,
        updated_at: datetime,
        started_at: datetime | None = None,
        concluded_at: datetime | None = None,
        winner_variant_id: uuid.UUID | None = None,
    ) -> bool:
        """Compare-and-set on status.

        Applies the change only if the stored status still equals
        ``expected``; returns whether it was applied.  ``started_at`` is
        written only when no start time is stored yet.
        """

    @abstractmethod
    async def update_variant_weights(
        self, experiment_id: uuid.UUID, weights: dict[uuid.UUID, float], updated_at: datetime
    ) -> None:
        """Overwrite the weights of existing variants."""

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_assignment(self, assignment_id: uuid.UUID) -> Assignment | None:
        ...

    @abstractmethod
    async def find_assignment(self, experiment_id: uuid.UUID, identity_key: str) -> Assignment | None:
        ...

    @abstractmethod
    async def insert_assignment_if_absent(self, assignment: Assignment) -> tuple[Assignment, bool]:
        """Insert unless (experiment_id, identity_key) already exists.

        Returns the stored assignment and whether this call created it.
        """

    @abstractmethod
    async def increment_assignments(self, variant_id: uuid.UUID, delta: int = 1) -> None:
        ...

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    @abstractmethod
    async def apply_observation(self, variant_id: uuid.UUID, metric: str, value: float, binary: bool) -> None:
        """Atomically fold one observation into the (variant, metric) stats."""

    @abstractmethod
    async def append_observation(self, observation: Observation) -> None:
        ...

    @abstractmethod
    async def list_observations(self, assignment_id: uuid.UUID) -> list[Observation]:
        ...


class GuardedStore:
    """Wraps a store so every coroutine call has a deadline.

    Timeouts and backend failures surface as ``CollaboratorUnavailable``.
    Nothing is retried.
    """

    def __init__(self, store: ExperimentStore, timeout: float) -> None:
        self._store = store
        self._timeout = timeout

    @property
    def wrapped(self) -> ExperimentStore:
        return self._store

    def __getattr__(self, name: str):
        attr = getattr(self._store, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        async def guarded(*args, **kwargs):
            try:
                return await asyncio.wait_for(attr(*args, **kwargs), timeout=self._timeout)
            except asyncio.TimeoutError as exc:
                logger.warning("storage.%s timed out after %.2fs", name, self._timeout)
                raise CollaboratorUnavailable(f"storage.{name} timed out after {self._timeout}s") from exc
            except (StorageError, SQLAlchemyError, OSError) as exc:
                logger.warning("storage.%s failed: %s", name, exc)
                raise CollaboratorUnavailable(f"storage.{name} failed: {exc}") from exc

        guarded.__name__ = name
        return guarded
