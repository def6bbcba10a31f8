"""SqlAlchemyStore against an in-memory SQLite database (aiosqlite)."""

import uuid
from datetime import datetime, timezone

import numpy as np
import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from abengine.core.database import build_engine, init_models
from abengine.core.errors import StorageError
from abengine.schemas import (
    Assignment,
    Experiment,
    ExperimentConfig,
    ExperimentStatus,
    Observation,
    PolicyType,
    Variant,
    VariantConfig,
)
from abengine.services.lifecycle import ExperimentService
from abengine.stats.accumulator import StatsAccumulator
from abengine.stats.decisions import BayesianTester
from abengine.storage.sql import SqlAlchemyStore


@pytest_asyncio.fixture
async def store():
    engine = build_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(engine)
    yield SqlAlchemyStore(engine)
    await engine.dispose()


def now():
    return datetime.now(timezone.utc)


def make_experiment(**config):
    experiment_id = uuid.uuid4()
    return Experiment(
        id=experiment_id,
        config=ExperimentConfig(name="pricing page", **config),
        variants=[
            Variant(experiment_id=experiment_id, name="control", is_control=True, weight=0.5),
            Variant(experiment_id=experiment_id, name="annual-first", weight=0.5, config={"order": ["annual"]}),
        ],
        created_at=now(),
        updated_at=now(),
    )


def make_assignment(experiment, identity_key="user-1", variant_index=0):
    variant = experiment.variants[variant_index]
    return Assignment(
        experiment_id=experiment.id,
        variant_id=variant.id,
        variant_name=variant.name,
        identity_key=identity_key,
        assigned_at=now(),
        config=variant.config,
    )


# ======================================================================
# Experiments
# ======================================================================


class TestExperiments:
    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        experiment = make_experiment(policy=PolicyType.ucb, parameters={"c": 1.5})
        created = await store.create_experiment(experiment)

        assert created.id == experiment.id
        assert created.config == experiment.config
        assert [v.name for v in created.variants] == ["control", "annual-first"]
        assert created.variants[1].config == {"order": ["annual"]}
        assert created.control().name == "control"
        assert created.status == ExperimentStatus.draft
        assert created.created_at.tzinfo is not None
        assert all(v.stats.assignments == 0 and v.metric_stats == {} for v in created.variants)

    @pytest.mark.asyncio
    async def test_missing_experiment(self, store):
        assert await store.get_experiment(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_status_compare_and_set(self, store):
        experiment = await store.create_experiment(make_experiment())
        first_start = now()

        applied = await store.update_status(
            experiment.id, ExperimentStatus.draft, ExperimentStatus.running,
            updated_at=first_start, started_at=first_start,
        )
        assert applied
        # stale expectation loses
        assert not await store.update_status(
            experiment.id, ExperimentStatus.draft, ExperimentStatus.paused, updated_at=now()
        )

        await store.update_status(experiment.id, ExperimentStatus.running, ExperimentStatus.paused, updated_at=now())
        await store.update_status(
            experiment.id, ExperimentStatus.paused, ExperimentStatus.running,
            updated_at=now(), started_at=now(),
        )
        stored = await store.get_experiment(experiment.id)
        assert stored.status == ExperimentStatus.running
        assert stored.started_at == first_start

    @pytest.mark.asyncio
    async def test_conclude_records_winner(self, store):
        experiment = await store.create_experiment(make_experiment())
        winner = experiment.variants[1].id
        await store.update_status(
            experiment.id, ExperimentStatus.draft, ExperimentStatus.concluded,
            updated_at=now(), concluded_at=now(), winner_variant_id=winner,
        )
        stored = await store.get_experiment(experiment.id)
        assert stored.winner_variant_id == winner
        assert stored.concluded_at is not None

    @pytest.mark.asyncio
    async def test_update_weights(self, store):
        experiment = await store.create_experiment(make_experiment())
        control, treatment = experiment.variants
        await store.update_variant_weights(experiment.id, {treatment.id: 0.9}, now())
        stored = await store.get_experiment(experiment.id)
        assert [v.weight for v in stored.variants] == [0.5, 0.9]


# ======================================================================
# Assignments
# ======================================================================


class TestAssignments:
    @pytest.mark.asyncio
    async def test_conditional_insert(self, store):
        experiment = await store.create_experiment(make_experiment())
        first, created = await store.insert_assignment_if_absent(make_assignment(experiment))
        assert created

        second, created_again = await store.insert_assignment_if_absent(
            make_assignment(experiment, variant_index=1)
        )
        assert not created_again
        assert second.id == first.id
        assert second.variant_name == "control"

        found = await store.find_assignment(experiment.id, "user-1")
        assert found == first
        assert await store.get_assignment(first.id) == first
        assert await store.find_assignment(experiment.id, "user-2") is None

    @pytest.mark.asyncio
    async def test_increment_assignments(self, store):
        experiment = await store.create_experiment(make_experiment())
        control = experiment.variants[0]
        await store.increment_assignments(control.id)
        await store.increment_assignments(control.id, 4)
        stored = await store.get_experiment(experiment.id)
        assert stored.variants[0].stats.assignments == 5
        assert stored.variants[1].stats.assignments == 0

    @pytest.mark.asyncio
    async def test_increment_missing_variant(self, store):
        with pytest.raises(StorageError):
            await store.increment_assignments(uuid.uuid4())


# ======================================================================
# Observations
# ======================================================================


class TestObservations:
    @pytest.mark.asyncio
    async def test_binary_update(self, store):
        experiment = await store.create_experiment(make_experiment())
        variant_id = experiment.variants[1].id
        for value in [1.0, 0.0, 1.0, 1.0]:
            await store.apply_observation(variant_id, "conversion", value, True)

        stats = (await store.get_experiment(experiment.id)).variants[1].stats
        assert (stats.successes, stats.failures, stats.observations) == (3, 1, 4)
        assert (stats.alpha, stats.beta) == (4.0, 2.0)

    @pytest.mark.asyncio
    async def test_continuous_update_matches_welford(self, store):
        experiment = await store.create_experiment(make_experiment(primary_metric="revenue"))
        variant_id = experiment.variants[0].id
        values = [2.0, 4.0, 4.0, 4.0, 5.0, 5.0, 7.0, 9.0]
        for value in values:
            await store.apply_observation(variant_id, "revenue", value, False)

        variant = (await store.get_experiment(experiment.id)).variants[0]
        assert variant.stats.observations == 8
        assert variant.stats.mean == pytest.approx(5.0)
        assert variant.stats.variance == pytest.approx(4.0)
        assert variant.stats.sum == pytest.approx(40.0)
        assert variant.stats.sum_of_squares == pytest.approx(32.0)

    @pytest.mark.asyncio
    async def test_metrics_kept_apart(self, store):
        experiment = await store.create_experiment(make_experiment())
        variant_id = experiment.variants[0].id
        await store.apply_observation(variant_id, "conversion", 1.0, True)
        await store.apply_observation(variant_id, "revenue", 30.0, False)

        variant = (await store.get_experiment(experiment.id)).variants[0]
        assert set(variant.metric_stats) == {"conversion", "revenue"}
        assert variant.stats.successes == 1
        assert variant.metric_stats["revenue"].mean == 30.0

    @pytest.mark.asyncio
    async def test_observation_log(self, store):
        experiment = await store.create_experiment(make_experiment())
        assignment, _ = await store.insert_assignment_if_absent(make_assignment(experiment))
        for metric, value in [("click", 1.0), ("revenue", 12.0)]:
            await store.append_observation(
                Observation(
                    assignment_id=assignment.id,
                    experiment_id=experiment.id,
                    variant_id=assignment.variant_id,
                    metric=metric,
                    value=value,
                    metadata={"source": "checkout"},
                    timestamp=now(),
                )
            )
        log = await store.list_observations(assignment.id)
        assert [(o.metric, o.value) for o in log] == [("click", 1.0), ("revenue", 12.0)]
        assert log[0].metadata == {"source": "checkout"}


# ======================================================================
# Service over SQL
# ======================================================================


@pytest.mark.asyncio
async def test_service_end_to_end(store):
    service = ExperimentService(
        store,
        rng=np.random.default_rng(11),
        accumulator=StatsAccumulator(["conversion"]),
        tester=BayesianTester(n_samples=10_000),
        allocation_samples=1_000,
    )
    experiment = await service.create_experiment(
        ExperimentConfig(name="signup flow", min_sample_size=10),
        [VariantConfig(name="control"), VariantConfig(name="short-form")],
    )
    await service.start_experiment(experiment.id)

    for i in range(30):
        assignment = await service.assign_variant(experiment.id, f"user-{i}")
        again = await service.assign_variant(experiment.id, f"user-{i}")
        assert again.id == assignment.id
        await service.record_observation(assignment.id, "conversion", float(i % 3 == 0))

    report = await service.get_experiment_report(experiment.id)
    assert report.total_assignments == 30
    assert report.total_observations == 30
    assert len(report.test_results) == 1

    concluded = await service.conclude_experiment(experiment.id)
    assert concluded.status == ExperimentStatus.concluded
