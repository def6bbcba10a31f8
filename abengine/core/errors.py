"""Typed failures raised by the experimentation engine.

Every error propagates to the immediate caller.  The engine never retries;
the transport layer decides whether a failed call is safe to re-deliver.
"""

from __future__ import annotations


class ExperimentError(Exception):
    """Base class for all engine failures."""


class ExperimentNotFound(ExperimentError):
    def __init__(self, experiment_id) -> None:
        super().__init__(f"Experiment {experiment_id} not found")
        self.experiment_id = experiment_id


class ExperimentNotRunning(ExperimentError):
    def __init__(self, experiment_id, status) -> None:
        status_value = getattr(status, "value", status)
        super().__init__(f"Experiment {experiment_id} is not running (status: {status_value})")
        self.experiment_id = experiment_id
        self.status = status


class AssignmentNotFound(ExperimentError):
    def __init__(self, assignment_id) -> None:
        super().__init__(f"Assignment {assignment_id} not found")
        self.assignment_id = assignment_id


class InvalidVariantConfiguration(ExperimentError):
    pass


class InvalidObservation(ExperimentError):
    """An observation value the statistics cannot absorb (NaN or infinite)."""


class InvalidStatusTransition(ExperimentError):
    def __init__(self, experiment_id, current, target) -> None:
        super().__init__(
            f"Experiment {experiment_id} cannot move from {getattr(current, 'value', current)} "
            f"to {getattr(target, 'value', target)}"
        )
        self.experiment_id = experiment_id
        self.current = current
        self.target = target


class CollaboratorUnavailable(ExperimentError):
    """The storage or telemetry collaborator failed or timed out."""


class StorageError(Exception):
    """Raised by store adapters; translated to CollaboratorUnavailable by GuardedStore."""
