"""Tests for ExperimentService against the in-memory store.

Covers the status machine, sticky assignment (including concurrent first
requests), traffic gating, observation recording, reporting, and the
storage / telemetry failure paths.
"""

import asyncio
import math
import uuid

import numpy as np
import pytest
import pytest_asyncio

from abengine.core.errors import (
    AssignmentNotFound,
    CollaboratorUnavailable,
    ExperimentNotFound,
    ExperimentNotRunning,
    InvalidObservation,
    InvalidStatusTransition,
    InvalidVariantConfiguration,
    StorageError,
)
from abengine.schemas import (
    AssignmentContext,
    ExperimentConfig,
    ExperimentStatus,
    PolicyType,
    VariantConfig,
)
from abengine.services.assignment import in_traffic
from abengine.services.lifecycle import ExperimentService
from abengine.stats.accumulator import StatsAccumulator
from abengine.stats.decisions import BayesianTester
from abengine.storage.memory import InMemoryStore


class RecordingTelemetry:
    def __init__(self):
        self.events = []

    def emit(self, event, **fields):
        self.events.append((event, fields))


class BrokenTelemetry:
    def emit(self, event, **fields):
        raise RuntimeError("audit pipeline down")


class RacingStore(InMemoryStore):
    """Yields after every lookup so concurrent first requests all miss."""

    async def find_assignment(self, experiment_id, identity_key):
        found = await super().find_assignment(experiment_id, identity_key)
        await asyncio.sleep(0)
        return found


class SlowStore(InMemoryStore):
    async def get_experiment(self, experiment_id):
        await asyncio.sleep(1.0)
        return await super().get_experiment(experiment_id)


class FailingStore(InMemoryStore):
    async def find_assignment(self, experiment_id, identity_key):
        raise StorageError("connection reset")


def build_service(store=None, telemetry=None, **kwargs):
    return ExperimentService(
        store or InMemoryStore(),
        telemetry=telemetry if telemetry is not None else RecordingTelemetry(),
        rng=np.random.default_rng(7),
        accumulator=StatsAccumulator(["click", "conversion"]),
        tester=BayesianTester(n_samples=10_000),
        allocation_samples=2_000,
        **kwargs,
    )


def two_variants(**control_overrides):
    return [
        VariantConfig(name="control", **control_overrides),
        VariantConfig(name="treatment", config={"button_color": "green"}),
    ]


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def service(telemetry):
    return build_service(telemetry=telemetry)


@pytest_asyncio.fixture
async def running(service):
    experiment = await service.create_experiment(
        ExperimentConfig(name="checkout button", min_sample_size=100),
        two_variants(),
    )
    return await service.start_experiment(experiment.id)


async def seed_binary(service, experiment, results):
    """Write assignments and conversions straight into the store."""
    store = service.store
    for variant, (successes, failures) in zip(experiment.variants, results):
        await store.increment_assignments(variant.id, successes + failures)
        for value in [1.0] * successes + [0.0] * failures:
            await store.apply_observation(variant.id, "conversion", value, True)


# ======================================================================
# Creation
# ======================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_draft_with_defaults(self, service, telemetry):
        experiment = await service.create_experiment(ExperimentConfig(name="hero copy"), two_variants())
        assert experiment.status == ExperimentStatus.draft
        assert [v.weight for v in experiment.variants] == [0.5, 0.5]
        assert experiment.variants[0].is_control
        assert not experiment.variants[1].is_control
        assert all(v.stats.assignments == 0 and v.stats.alpha == 1.0 for v in experiment.variants)
        assert experiment.started_at is None
        assert telemetry.events[-1][0] == "experiment_created"

    @pytest.mark.asyncio
    async def test_keeps_flagged_control(self, service):
        variants = [VariantConfig(name="a"), VariantConfig(name="b", is_control=True)]
        experiment = await service.create_experiment(ExperimentConfig(name="x"), variants)
        assert experiment.control().name == "b"
        assert not experiment.variants[0].is_control

    @pytest.mark.asyncio
    async def test_rejects_single_variant(self, service):
        with pytest.raises(InvalidVariantConfiguration):
            await service.create_experiment(ExperimentConfig(name="x"), [VariantConfig(name="solo")])

    @pytest.mark.asyncio
    async def test_rejects_duplicate_names(self, service):
        variants = [VariantConfig(name="a"), VariantConfig(name="a")]
        with pytest.raises(InvalidVariantConfiguration, match="unique"):
            await service.create_experiment(ExperimentConfig(name="x"), variants)

    @pytest.mark.asyncio
    async def test_rejects_bad_policy_parameters(self, service):
        config = ExperimentConfig(name="x", policy=PolicyType.ucb, parameters={"c": -1})
        with pytest.raises(InvalidVariantConfiguration):
            await service.create_experiment(config, two_variants())

    @pytest.mark.asyncio
    async def test_rejects_zero_weights_for_ab_test(self, service):
        variants = [VariantConfig(name="a", weight=0.0), VariantConfig(name="b", weight=0.0)]
        with pytest.raises(InvalidVariantConfiguration):
            await service.create_experiment(ExperimentConfig(name="x", policy=PolicyType.ab_test), variants)

    @pytest.mark.asyncio
    async def test_rejects_thompson_on_continuous_metric(self, service):
        config = ExperimentConfig(name="x", primary_metric="revenue", policy=PolicyType.thompson_sampling)
        with pytest.raises(InvalidVariantConfiguration, match="binary"):
            await service.create_experiment(config, two_variants())

        ucb = ExperimentConfig(name="x", primary_metric="revenue", policy=PolicyType.ucb)
        experiment = await service.create_experiment(ucb, two_variants())
        assert experiment.config.primary_metric == "revenue"

    @pytest.mark.asyncio
    async def test_unknown_experiment(self, service):
        with pytest.raises(ExperimentNotFound):
            await service.get_experiment(uuid.uuid4())


# ======================================================================
# Status machine
# ======================================================================


class TestStatusMachine:
    @pytest.mark.asyncio
    async def test_start_pause_resume(self, service, running):
        assert running.status == ExperimentStatus.running
        started_at = running.started_at
        assert started_at is not None

        paused = await service.pause_experiment(running.id)
        assert paused.status == ExperimentStatus.paused

        resumed = await service.resume_experiment(running.id)
        assert resumed.status == ExperimentStatus.running
        assert resumed.started_at == started_at

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, service):
        experiment = await service.create_experiment(ExperimentConfig(name="x"), two_variants())
        with pytest.raises(InvalidStatusTransition):
            await service.resume_experiment(experiment.id)
        with pytest.raises(InvalidStatusTransition):
            await service.pause_experiment(experiment.id)

    @pytest.mark.asyncio
    async def test_cannot_start_twice(self, service, running):
        with pytest.raises(InvalidStatusTransition):
            await service.start_experiment(running.id)

    @pytest.mark.asyncio
    async def test_concluded_is_terminal(self, service, running):
        concluded = await service.conclude_experiment(running.id)
        assert concluded.status == ExperimentStatus.concluded
        assert concluded.concluded_at is not None
        assert concluded.winner_variant_id is None

        for operation in (
            service.start_experiment,
            service.pause_experiment,
            service.resume_experiment,
            service.conclude_experiment,
        ):
            with pytest.raises(ExperimentNotRunning):
                await operation(running.id)
        assert (await service.get_experiment(running.id)).status == ExperimentStatus.concluded

    @pytest.mark.asyncio
    async def test_conclude_from_paused_with_winner(self, service, running, telemetry):
        await service.pause_experiment(running.id)
        winner = running.variants[1].id
        concluded = await service.conclude_experiment(running.id, winner)
        assert concluded.winner_variant_id == winner
        assert telemetry.events[-1][0] == "experiment_concluded"
        assert telemetry.events[-1][1]["winner_variant_id"] == str(winner)

    @pytest.mark.asyncio
    async def test_conclude_rejects_foreign_winner(self, service, running):
        with pytest.raises(InvalidVariantConfiguration):
            await service.conclude_experiment(running.id, uuid.uuid4())
        assert (await service.get_experiment(running.id)).status == ExperimentStatus.running

    @pytest.mark.asyncio
    async def test_concurrent_conclusions_agree(self, service, running):
        results = await asyncio.gather(
            *(service.conclude_experiment(running.id) for _ in range(5)),
            return_exceptions=True,
        )
        concluded = [r for r in results if not isinstance(r, Exception)]
        assert concluded
        assert all(r.status == ExperimentStatus.concluded for r in concluded)
        assert all(isinstance(r, ExperimentNotRunning) for r in results if isinstance(r, Exception))


# ======================================================================
# Reweighting
# ======================================================================


class TestReweight:
    @pytest.mark.asyncio
    async def test_reweight(self, service, running):
        control, treatment = running.variants
        updated = await service.reweight_variants(running.id, {control.id: 0.2, treatment.id: 0.8})
        assert [v.weight for v in updated.variants] == [0.2, 0.8]
        assert [v.id for v in updated.variants] == [control.id, treatment.id]

    @pytest.mark.asyncio
    async def test_reweight_rejects_unknown_variant(self, service, running):
        with pytest.raises(InvalidVariantConfiguration):
            await service.reweight_variants(running.id, {uuid.uuid4(): 0.5})

    @pytest.mark.asyncio
    async def test_reweight_rejects_all_zero(self, service, running):
        weights = {v.id: 0.0 for v in running.variants}
        with pytest.raises(InvalidVariantConfiguration):
            await service.reweight_variants(running.id, weights)

    @pytest.mark.asyncio
    async def test_reweight_rejects_out_of_range(self, service, running):
        with pytest.raises(InvalidVariantConfiguration):
            await service.reweight_variants(running.id, {running.variants[0].id: 1.5})


# ======================================================================
# Assignment
# ======================================================================


class TestAssignment:
    @pytest.mark.asyncio
    async def test_requires_running(self, service):
        experiment = await service.create_experiment(ExperimentConfig(name="x"), two_variants())
        with pytest.raises(ExperimentNotRunning):
            await service.assign_variant(experiment.id, "user-1")

    @pytest.mark.asyncio
    async def test_sticky(self, service, running):
        first = await service.assign_variant(running.id, "user-1", AssignmentContext(session_id="s1"))
        for _ in range(10):
            again = await service.assign_variant(running.id, "user-1")
            assert again.id == first.id
            assert again.variant_id == first.variant_id
        assert first.session_id == "s1"

        experiment = await service.get_experiment(running.id)
        assert sum(v.stats.assignments for v in experiment.variants) == 1

    @pytest.mark.asyncio
    async def test_snapshot_of_variant_config(self, service, running):
        for i in range(40):
            assignment = await service.assign_variant(running.id, f"user-{i}")
            if assignment.variant_name == "treatment":
                assert assignment.config == {"button_color": "green"}
                break
        else:
            pytest.fail("treatment never assigned")

    @pytest.mark.asyncio
    async def test_concurrent_first_requests_converge(self):
        service = build_service(store=RacingStore())
        experiment = await service.create_experiment(ExperimentConfig(name="race"), two_variants())
        await service.start_experiment(experiment.id)

        results = await asyncio.gather(*(service.assign_variant(experiment.id, "user-1") for _ in range(20)))
        assert len({a.id for a in results}) == 1
        assert len({a.variant_id for a in results}) == 1

        experiment = await service.get_experiment(experiment.id)
        assert sum(v.stats.assignments for v in experiment.variants) == 1

    @pytest.mark.asyncio
    async def test_traffic_gating(self, service):
        experiment = await service.create_experiment(
            ExperimentConfig(name="partial", traffic_allocation=0.2), two_variants()
        )
        await service.start_experiment(experiment.id)

        included = 0
        for i in range(500):
            key = f"visitor-{i}"
            assignment = await service.assign_variant(experiment.id, key)
            assert (assignment is not None) == in_traffic(key, experiment)
            included += assignment is not None
        assert 0.12 < included / 500 < 0.28

        # exclusion is stable
        excluded = next(f"visitor-{i}" for i in range(500) if not in_traffic(f"visitor-{i}", experiment))
        assert await service.assign_variant(experiment.id, excluded) is None

    @pytest.mark.asyncio
    async def test_full_traffic_includes_everyone(self, service, running):
        for i in range(100):
            assert await service.assign_variant(running.id, f"visitor-{i}") is not None

    @pytest.mark.asyncio
    async def test_paused_experiment_rejects_assignment(self, service, running):
        await service.pause_experiment(running.id)
        with pytest.raises(ExperimentNotRunning):
            await service.assign_variant(running.id, "user-1")


# ======================================================================
# Observations
# ======================================================================


class TestObservations:
    @pytest.mark.asyncio
    async def test_binary_observation_updates_posterior(self, service, running):
        assignment = await service.assign_variant(running.id, "user-1")
        await service.record_observation(assignment.id, "conversion", 1.0)
        await service.record_observation(assignment.id, "conversion", 0.0)

        experiment = await service.get_experiment(running.id)
        stats = experiment.variant(assignment.variant_id).stats
        assert (stats.successes, stats.failures) == (1, 1)
        assert (stats.alpha, stats.beta) == (2.0, 2.0)
        assert stats.assignments == 1

    @pytest.mark.asyncio
    async def test_metrics_are_kept_apart(self, service, running):
        assignment = await service.assign_variant(running.id, "user-1")
        await service.record_observation(assignment.id, "conversion", 1.0)
        await service.record_observation(assignment.id, "revenue", 40.0)
        await service.record_observation(assignment.id, "revenue", 60.0)

        variant = (await service.get_experiment(running.id)).variant(assignment.variant_id)
        assert variant.stats.observations == 1
        revenue = variant.metric_stats["revenue"]
        assert revenue.observations == 2
        assert revenue.mean == pytest.approx(50.0)
        assert revenue.variance == pytest.approx(100.0)
        assert revenue.successes == 0

    @pytest.mark.asyncio
    async def test_unknown_assignment(self, service, running):
        with pytest.raises(AssignmentNotFound):
            await service.record_observation(uuid.uuid4(), "conversion", 1.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    async def test_non_finite_value(self, service, running, value):
        assignment = await service.assign_variant(running.id, "user-1")
        with pytest.raises(InvalidObservation):
            await service.record_observation(assignment.id, "revenue", value)
        assert await service.list_observations(assignment.id) == []

    @pytest.mark.asyncio
    async def test_requires_running_experiment(self, service, running):
        assignment = await service.assign_variant(running.id, "user-1")
        await service.pause_experiment(running.id)
        with pytest.raises(ExperimentNotRunning):
            await service.record_observation(assignment.id, "conversion", 1.0)

    @pytest.mark.asyncio
    async def test_observation_log(self, service, running):
        assignment = await service.assign_variant(running.id, "user-1")
        await service.record_observation(assignment.id, "click", 1.0, {"page": "/pricing"})
        await service.record_observation(assignment.id, "conversion", 0.0)

        log = await service.list_observations(assignment.id)
        assert [o.metric for o in log] == ["click", "conversion"]
        assert log[0].metadata == {"page": "/pricing"}
        assert all(o.variant_id == assignment.variant_id for o in log)

        with pytest.raises(AssignmentNotFound):
            await service.list_observations(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_concurrent_observations_all_count(self, service, running):
        assignment = await service.assign_variant(running.id, "user-1")
        await asyncio.gather(
            *(service.record_observation(assignment.id, "revenue", float(i)) for i in range(1, 101))
        )
        revenue = (await service.get_experiment(running.id)).variant(assignment.variant_id).metric_stats["revenue"]
        assert revenue.observations == 100
        assert revenue.mean == pytest.approx(50.5)
        assert revenue.sum == pytest.approx(5050.0)


# ======================================================================
# Reporting
# ======================================================================


class TestReport:
    @pytest.mark.asyncio
    async def test_clear_winner(self, service, running):
        await seed_binary(service, running, [(50, 50), (70, 30)])
        report = await service.get_experiment_report(running.id)

        assert report.primary_metric == "conversion"
        assert report.total_assignments == 200
        assert report.total_observations == 200
        assert len(report.test_results) == 1
        assert report.test_results[0].recommended_action == "conclude"
        assert report.winner is not None
        assert report.winner.name == "treatment"
        assert report.confidence > 0.99
        assert report.recommended_action == "conclude_winner"
        assert set(report.suggested_allocation) == {str(v.id) for v in running.variants}
        assert sum(report.suggested_allocation.values()) == pytest.approx(1.0, abs=1e-3)
        assert report.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_pooled_totals_and_expected_loss(self, service, running):
        await seed_binary(service, running, [(50, 50), (70, 30)])
        report = await service.get_experiment_report(running.id)
        control, treatment = running.variants

        pooled = report.pooled
        assert (pooled.assignments, pooled.observations) == (200, 200)
        assert (pooled.successes, pooled.failures) == (120, 80)
        assert (pooled.alpha, pooled.beta) == (121.0, 81.0)
        assert report.total_assignments == pooled.assignments

        losses = report.expected_loss
        assert set(losses) == {str(control.id), str(treatment.id)}
        assert losses[str(treatment.id)] < 0.005
        assert losses[str(control.id)] == pytest.approx(0.2, abs=0.03)

    @pytest.mark.asyncio
    async def test_continuous_primary_metric(self, service):
        experiment = await service.create_experiment(
            ExperimentConfig(name="basket size", primary_metric="revenue", policy=PolicyType.ucb, min_sample_size=2),
            two_variants(),
        )
        await service.start_experiment(experiment.id)
        control, treatment = experiment.variants
        for variant, values in [(control, [10.0, 20.0, 30.0]), (treatment, [40.0, 50.0])]:
            await service.store.increment_assignments(variant.id, len(values))
            for value in values:
                await service.store.apply_observation(variant.id, "revenue", value, False)

        report = await service.get_experiment_report(experiment.id)
        assert report.test_results[0].metric_type == "continuous"
        assert report.pooled.observations == 5
        assert report.pooled.mean == pytest.approx(30.0)
        assert report.pooled.variance == pytest.approx(200.0)
        assert report.expected_loss is None
        assert report.suggested_allocation is None

    @pytest.mark.asyncio
    async def test_no_difference_after_enough_traffic(self, service, running):
        await seed_binary(service, running, [(50, 50), (50, 50)])
        report = await service.get_experiment_report(running.id)
        assert report.winner is None
        assert report.confidence == 0.0
        assert report.recommended_action == "conclude_no_winner"

    @pytest.mark.asyncio
    async def test_losing_treatment_concludes_without_winner(self, service, running):
        await seed_binary(service, running, [(70, 30), (45, 55)])
        report = await service.get_experiment_report(running.id)
        assert report.test_results[0].recommended_action == "stop"
        assert report.winner is None
        assert report.recommended_action == "conclude_no_winner"

    @pytest.mark.asyncio
    async def test_continue_with_little_data(self, service, running):
        await seed_binary(service, running, [(3, 7), (5, 5)])
        report = await service.get_experiment_report(running.id)
        assert report.recommended_action == "continue"
        assert report.test_results[0].recommended_action == "continue"

    @pytest.mark.asyncio
    async def test_best_of_several_treatments(self, service):
        experiment = await service.create_experiment(
            ExperimentConfig(name="multi", min_sample_size=100),
            [VariantConfig(name="control"), VariantConfig(name="b"), VariantConfig(name="c")],
        )
        await service.start_experiment(experiment.id)
        await seed_binary(service, experiment, [(50, 50), (65, 35), (80, 20)])

        report = await service.get_experiment_report(experiment.id)
        assert [r.treatment_name for r in report.test_results] == ["b", "c"]
        assert report.winner.name == "c"

    @pytest.mark.asyncio
    async def test_report_on_draft(self, service):
        experiment = await service.create_experiment(ExperimentConfig(name="x"), two_variants())
        report = await service.get_experiment_report(experiment.id)
        assert report.status == ExperimentStatus.draft
        assert report.duration_seconds == 0.0
        assert report.recommended_action == "continue"


# ======================================================================
# Collaborator failures
# ======================================================================


class TestCollaborators:
    @pytest.mark.asyncio
    async def test_storage_timeout(self):
        service = build_service(store=SlowStore(), storage_timeout=0.05)
        with pytest.raises(CollaboratorUnavailable, match="timed out"):
            await service.get_experiment(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_storage_failure(self):
        service = build_service(store=FailingStore())
        experiment = await service.create_experiment(ExperimentConfig(name="x"), two_variants())
        await service.start_experiment(experiment.id)
        with pytest.raises(CollaboratorUnavailable, match="connection reset"):
            await service.assign_variant(experiment.id, "user-1")

    @pytest.mark.asyncio
    async def test_telemetry_failure_is_swallowed(self, caplog):
        service = build_service(telemetry=BrokenTelemetry())
        experiment = await service.create_experiment(ExperimentConfig(name="x"), two_variants())
        started = await service.start_experiment(experiment.id)
        assignment = await service.assign_variant(started.id, "user-1")
        await service.record_observation(assignment.id, "conversion", 1.0)
        assert started.status == ExperimentStatus.running
        assert "Telemetry emit failed" in caplog.text

    @pytest.mark.asyncio
    async def test_audit_trail(self, service, running, telemetry):
        assignment = await service.assign_variant(running.id, "user-1")
        await service.record_observation(assignment.id, "conversion", 1.0)
        events = [event for event, _ in telemetry.events]
        assert events == [
            "experiment_created",
            "experiment_running",
            "variant_assigned",
            "observation_recorded",
        ]
