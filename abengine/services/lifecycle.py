"""Experiment lifecycle: the engine's public operation surface.

Status machine::

    draft -> running <-> paused
                 \\        /
                 concluded   (terminal)

Every transition is a compare-and-set on the previous status, so concurrent
callers racing on the same experiment cannot both win.  All state lives in
the injected store; the service itself is safe to instantiate per request.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timezone
from functools import reduce
from typing import Any

import numpy as np

from abengine.core.config import settings
from abengine.core.errors import (
    AssignmentNotFound,
    ExperimentNotFound,
    ExperimentNotRunning,
    InvalidObservation,
    InvalidStatusTransition,
    InvalidVariantConfiguration,
)
from abengine.schemas import (
    Assignment,
    AssignmentContext,
    Experiment,
    ExperimentConfig,
    ExperimentResults,
    ExperimentStatus,
    Observation,
    PolicyType,
    TestResult,
    Variant,
    VariantConfig,
    VariantStats,
)
from abengine.services.assignment import AssignmentLedger
from abengine.services.telemetry import LoggingTelemetry, TelemetrySink
from abengine.stats.accumulator import StatsAccumulator
from abengine.stats.bandits import ThompsonSamplingPolicy, VariantSelector
from abengine.stats.bayesian import BetaBinomial, ensure_rng
from abengine.stats.decisions import BayesianTester, TestParams, expected_loss, metric_record
from abengine.storage.base import ExperimentStore, GuardedStore

logger = logging.getLogger(__name__)

# target status -> statuses it may be entered from
TRANSITIONS: dict[ExperimentStatus, frozenset[ExperimentStatus]] = {
    ExperimentStatus.running: frozenset({ExperimentStatus.draft, ExperimentStatus.paused}),
    ExperimentStatus.paused: frozenset({ExperimentStatus.running}),
    ExperimentStatus.concluded: frozenset({ExperimentStatus.running, ExperimentStatus.paused}),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExperimentService:
    """Orchestrates experiments, assignments, observations and reports.

    Parameters
    ----------
    store : ExperimentStore
        Storage collaborator; wrapped in ``GuardedStore`` so each call has a
        deadline of ``storage_timeout`` seconds.
    telemetry : TelemetrySink | None
        Audit sink.  Defaults to ``LoggingTelemetry``.
    rng : numpy.random.Generator | None
        Random source for selection and Monte Carlo comparisons.
    """

    def __init__(
        self,
        store: ExperimentStore,
        telemetry: TelemetrySink | None = None,
        rng: np.random.Generator | None = None,
        *,
        accumulator: StatsAccumulator | None = None,
        tester: BayesianTester | None = None,
        storage_timeout: float | None = None,
        allocation_samples: int | None = None,
    ) -> None:
        if storage_timeout is None:
            storage_timeout = settings.STORAGE_TIMEOUT_SECONDS
        self.store = GuardedStore(store, storage_timeout)
        self.telemetry = telemetry if telemetry is not None else LoggingTelemetry()
        self.rng = ensure_rng(rng)
        self.accumulator = accumulator or StatsAccumulator()
        self.selector = VariantSelector(self.accumulator)
        self.tester = tester or BayesianTester(n_samples=settings.MONTE_CARLO_SAMPLES)
        self.allocation_samples = allocation_samples or settings.ALLOCATION_SAMPLES
        self.ledger = AssignmentLedger(self.store, self.selector, self.accumulator.is_binary, self.rng)

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    async def create_experiment(self, config: ExperimentConfig, variant_configs: list[VariantConfig]) -> Experiment:
        """Build a draft experiment with zeroed stats for every variant."""
        if len(variant_configs) < 2:
            raise InvalidVariantConfiguration("An experiment needs at least two variants")
        names = [v.name for v in variant_configs]
        if len(set(names)) != len(names):
            raise InvalidVariantConfiguration("Variant names must be unique within an experiment")

        experiment_id = uuid.uuid4()
        default_weight = 1.0 / len(variant_configs)
        has_control = any(v.is_control for v in variant_configs)
        variants = [
            Variant(
                experiment_id=experiment_id,
                name=v.name,
                description=v.description,
                is_control=v.is_control or (not has_control and index == 0),
                weight=v.weight if v.weight is not None else default_weight,
                config=v.config,
                stats=VariantStats(),
            )
            for index, v in enumerate(variant_configs)
        ]
        self.selector.validate(variants, config.policy, config.parameters)
        if config.policy == PolicyType.thompson_sampling and not self.accumulator.is_binary(config.primary_metric):
            # Beta posteriors only describe binary outcomes
            raise InvalidVariantConfiguration(
                f"Thompson sampling needs a binary primary metric, got {config.primary_metric!r}"
            )

        now = _now()
        experiment = Experiment(
            id=experiment_id,
            config=config,
            variants=variants,
            status=ExperimentStatus.draft,
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create_experiment(experiment)
        logger.info("Created experiment %s (%s, %d variants)", created.id, config.policy.value, len(variants))
        self._emit(
            "experiment_created",
            experiment_id=str(created.id),
            policy=config.policy.value,
            primary_metric=config.primary_metric,
            variants=len(variants),
        )
        return created

    async def get_experiment(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self.store.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFound(experiment_id)
        return experiment

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def start_experiment(self, experiment_id: uuid.UUID) -> Experiment:
        return await self._transition(experiment_id, ExperimentStatus.running)

    async def pause_experiment(self, experiment_id: uuid.UUID) -> Experiment:
        return await self._transition(experiment_id, ExperimentStatus.paused)

    async def resume_experiment(self, experiment_id: uuid.UUID) -> Experiment:
        experiment = await self.get_experiment(experiment_id)
        if experiment.status == ExperimentStatus.draft:
            raise InvalidStatusTransition(experiment_id, experiment.status, ExperimentStatus.running)
        return await self._transition(experiment_id, ExperimentStatus.running, current=experiment)

    async def conclude_experiment(
        self, experiment_id: uuid.UUID, winner_variant_id: uuid.UUID | None = None
    ) -> Experiment:
        """Close the experiment, optionally promoting a winner.

        With no winner the outcome is "no significant difference"; callers
        wanting the computed winner pass ``report.winner.id``.
        """
        experiment = await self.get_experiment(experiment_id)
        if winner_variant_id is not None and experiment.variant(winner_variant_id) is None:
            raise InvalidVariantConfiguration(
                f"Variant {winner_variant_id} does not belong to experiment {experiment_id}"
            )
        return await self._transition(
            experiment_id,
            ExperimentStatus.concluded,
            current=experiment,
            winner_variant_id=winner_variant_id,
        )

    async def _transition(
        self,
        experiment_id: uuid.UUID,
        target: ExperimentStatus,
        current: Experiment | None = None,
        winner_variant_id: uuid.UUID | None = None,
    ) -> Experiment:
        experiment = current or await self.get_experiment(experiment_id)
        self._check_transition(experiment, target)

        now = _now()
        applied = await self.store.update_status(
            experiment_id,
            experiment.status,
            target,
            updated_at=now,
            started_at=now if target == ExperimentStatus.running else None,
            concluded_at=now if target == ExperimentStatus.concluded else None,
            winner_variant_id=winner_variant_id,
        )
        updated = await self.get_experiment(experiment_id)
        if not applied:
            # Lost a race: someone else moved the experiment first
            if updated.status == target and winner_variant_id in (None, updated.winner_variant_id):
                return updated
            self._check_transition(updated, target)
            raise InvalidStatusTransition(experiment_id, updated.status, target)

        logger.info("Experiment %s: %s -> %s", experiment_id, experiment.status.value, target.value)
        self._emit(
            f"experiment_{target.value}",
            experiment_id=str(experiment_id),
            previous_status=experiment.status.value,
            winner_variant_id=str(winner_variant_id) if winner_variant_id else None,
        )
        return updated

    @staticmethod
    def _check_transition(experiment: Experiment, target: ExperimentStatus) -> None:
        if experiment.status == ExperimentStatus.concluded:
            raise ExperimentNotRunning(experiment.id, experiment.status)
        if experiment.status not in TRANSITIONS[target]:
            raise InvalidStatusTransition(experiment.id, experiment.status, target)

    async def reweight_variants(self, experiment_id: uuid.UUID, weights: dict[uuid.UUID, float]) -> Experiment:
        """Redistribute fixed-allocation weights among the existing variants.

        The variant set itself never changes; unknown ids are rejected.
        """
        experiment = await self.get_experiment(experiment_id)
        if experiment.status == ExperimentStatus.concluded:
            raise ExperimentNotRunning(experiment_id, experiment.status)

        known = {v.id for v in experiment.variants}
        unknown = set(weights) - known
        if unknown:
            raise InvalidVariantConfiguration(f"Unknown variants for experiment {experiment_id}: {sorted(map(str, unknown))}")
        for variant_id, weight in weights.items():
            if not 0.0 <= weight <= 1.0:
                raise InvalidVariantConfiguration(f"Weight for {variant_id} must be in [0, 1], got {weight}")

        proposed = [v.model_copy(update={"weight": weights.get(v.id, v.weight)}) for v in experiment.variants]
        if not sum(v.weight for v in proposed) > 0:
            raise InvalidVariantConfiguration("Variant weights must sum to a positive value")
        self.selector.validate(proposed, experiment.config.policy, experiment.config.parameters)

        await self.store.update_variant_weights(experiment_id, weights, _now())
        self._emit(
            "variants_reweighted",
            experiment_id=str(experiment_id),
            weights={str(k): v for k, v in weights.items()},
        )
        return await self.get_experiment(experiment_id)

    # ------------------------------------------------------------------
    # Assignment and observation
    # ------------------------------------------------------------------

    async def assign_variant(
        self,
        experiment_id: uuid.UUID,
        identity_key: str,
        context: AssignmentContext | None = None,
    ) -> Assignment | None:
        """Sticky assignment for ``identity_key``; None when outside traffic allocation."""
        experiment = await self.get_experiment(experiment_id)
        assignment = await self.ledger.get_or_create(experiment, identity_key, context)
        if assignment is not None:
            self._emit(
                "variant_assigned",
                experiment_id=str(experiment_id),
                variant_id=str(assignment.variant_id),
                variant_name=assignment.variant_name,
                policy=experiment.config.policy.value,
            )
        return assignment

    async def record_observation(
        self,
        assignment_id: uuid.UUID,
        metric: str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> Observation:
        if not math.isfinite(value):
            raise InvalidObservation(f"Observation value must be finite, got {value!r}")

        assignment = await self.store.get_assignment(assignment_id)
        if assignment is None:
            raise AssignmentNotFound(assignment_id)

        experiment = await self.get_experiment(assignment.experiment_id)
        if experiment.status != ExperimentStatus.running:
            raise ExperimentNotRunning(experiment.id, experiment.status)

        observation = Observation(
            assignment_id=assignment.id,
            experiment_id=assignment.experiment_id,
            variant_id=assignment.variant_id,
            metric=metric,
            value=value,
            metadata=metadata or {},
            timestamp=_now(),
        )
        await self.store.append_observation(observation)
        await self.store.apply_observation(
            assignment.variant_id, metric, value, self.accumulator.is_binary(metric)
        )
        self._emit(
            "observation_recorded",
            experiment_id=str(assignment.experiment_id),
            variant_id=str(assignment.variant_id),
            metric=metric,
            value=value,
        )
        return observation

    async def list_observations(self, assignment_id: uuid.UUID) -> list[Observation]:
        """Observations recorded against one assignment, oldest first."""
        if await self.store.get_assignment(assignment_id) is None:
            raise AssignmentNotFound(assignment_id)
        return await self.store.list_observations(assignment_id)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_experiment_report(self, experiment_id: uuid.UUID) -> ExperimentResults:
        """Compare every treatment against the control on the primary metric.

        The overall winner is the treatment with the highest probability to
        be best, provided it clears the significance threshold.  The overall
        recommendation is ``conclude_winner`` when there is a winner and
        ``conclude_no_winner`` once every treatment is recommended ``stop``
        or total assignments reach ``min_sample_size`` per variant.

        ``pooled`` merges every variant's primary-metric record.  For a binary
        primary metric the report also carries each variant's expected loss
        and the split Thompson sampling would currently produce.
        """
        experiment = await self.get_experiment(experiment_id)
        config = experiment.config
        metric = config.primary_metric
        binary = self.accumulator.is_binary(metric)
        params = TestParams(
            significance_threshold=config.significance_threshold,
            min_sample_size=config.min_sample_size,
            credible_interval=config.credible_interval,
        )

        control = experiment.control()
        test_results: list[TestResult] = [
            self.tester.compare(control, treatment, metric, binary, params, rng=self.rng)
            for treatment in experiment.variants
            if treatment.id != control.id
        ]

        winner: Variant | None = None
        confidence = 0.0
        if test_results:
            best = max(test_results, key=lambda r: r.probability_to_be_best)
            if best.probability_to_be_best >= config.significance_threshold:
                winner = experiment.variant(best.treatment_variant_id)
                confidence = best.probability_to_be_best

        records = [metric_record(v, metric) for v in experiment.variants]
        pooled = reduce(StatsAccumulator.merge, records, VariantStats())
        total_assignments = pooled.assignments
        total_observations = sum(
            stats.observations for v in experiment.variants for stats in v.metric_stats.values()
        )

        if winner is not None:
            recommended_action = "conclude_winner"
        elif test_results and all(r.recommended_action == "stop" for r in test_results):
            recommended_action = "conclude_no_winner"
        elif total_assignments >= config.min_sample_size * len(experiment.variants):
            recommended_action = "conclude_no_winner"
        else:
            recommended_action = "continue"

        losses = None
        suggested_allocation = None
        if binary:
            models = [BetaBinomial.from_stats(record) for record in records]
            losses = {
                str(v.id): loss
                for v, loss in zip(experiment.variants, expected_loss(models, self.tester.n_samples, self.rng))
            }
            allocation = ThompsonSamplingPolicy.allocation(experiment.variants, self.allocation_samples, self.rng)
            suggested_allocation = {
                str(v.id): round(share, 4) for v, share in zip(experiment.variants, allocation)
            }

        now = _now()
        end = experiment.concluded_at or now
        duration = (end - experiment.started_at).total_seconds() if experiment.started_at else 0.0

        return ExperimentResults(
            experiment_id=experiment.id,
            status=experiment.status,
            primary_metric=metric,
            variants=experiment.variants,
            test_results=test_results,
            winner=winner,
            confidence=confidence,
            total_assignments=total_assignments,
            total_observations=total_observations,
            pooled=pooled,
            duration_seconds=max(duration, 0.0),
            recommended_action=recommended_action,
            suggested_allocation=suggested_allocation,
            expected_loss=losses,
            generated_at=now,
        )

    # ------------------------------------------------------------------
    # Telemetry
    # ------------------------------------------------------------------

    def _emit(self, event: str, **fields: Any) -> None:
        try:
            self.telemetry.emit(event, **fields)
        except Exception:
            logger.warning("Telemetry emit failed for %s", event, exc_info=True)
