"""SQLAlchemy-backed ``ExperimentStore``.

Atomic primitives map onto single SQL statements:

- conditional insert  -> ``INSERT ... ON CONFLICT DO NOTHING`` on the
  (experiment_id, identity_key) unique constraint,
- counter increment   -> ``UPDATE ... SET assignments = assignments + 1``,
- status change       -> ``UPDATE ... WHERE status = :expected``,
- stats update        -> one ``UPDATE`` whose SET clause is Welford's
  update written against the row's current values, so concurrent writers
  are serialised by the row lock instead of an application lock.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, Float, func, literal, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine

from abengine.core.database import build_session_factory
from abengine.core.errors import StorageError
from abengine.models import AssignmentRow, ExperimentRow, ObservationRow, VariantMetricRow, VariantRow
from abengine.schemas import (
    Assignment,
    Experiment,
    ExperimentConfig,
    Observation,
    Variant,
    VariantStats,
)
from abengine.storage.base import ExperimentStore


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every timestamp the engine writes is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class SqlAlchemyStore(ExperimentStore):
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = build_session_factory(engine)
        self._dialect = engine.dialect.name

    def _insert(self, model):
        if self._dialect == "postgresql":
            return postgresql.insert(model)
        if self._dialect == "sqlite":
            return sqlite.insert(model)
        raise StorageError(f"Conditional insert not supported on {self._dialect}")

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    async def create_experiment(self, experiment: Experiment) -> Experiment:
        async with self._session_factory() as session, session.begin():
            session.add(
                ExperimentRow(
                    id=experiment.id,
                    name=experiment.config.name,
                    policy=experiment.config.policy,
                    primary_metric=experiment.config.primary_metric,
                    config=experiment.config.model_dump(mode="json"),
                    status=experiment.status,
                    created_at=experiment.created_at,
                    updated_at=experiment.updated_at,
                )
            )
            # Parent row must exist before the variants reference it
            await session.flush()
            for position, variant in enumerate(experiment.variants):
                session.add(
                    VariantRow(
                        id=variant.id,
                        experiment_id=experiment.id,
                        position=position,
                        name=variant.name,
                        description=variant.description,
                        is_control=variant.is_control,
                        weight=variant.weight,
                        config=variant.config,
                        assignments=0,
                    )
                )

        created = await self.get_experiment(experiment.id)
        if created is None:
            raise StorageError(f"Experiment {experiment.id} vanished after insert")
        return created

    async def get_experiment(self, experiment_id: uuid.UUID) -> Experiment | None:
        async with self._session_factory() as session:
            row = await session.get(ExperimentRow, experiment_id)
            if row is None:
                return None
            variant_ids = [v.id for v in row.variants]
            result = await session.execute(
                select(VariantMetricRow).where(VariantMetricRow.variant_id.in_(variant_ids))
            )
            return self._to_experiment(row, result.scalars().all())

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
        values: dict = {"status": new_status, "updated_at": updated_at}
        if started_at is not None:
            values["started_at"] = func.coalesce(
                ExperimentRow.started_at, literal(started_at, DateTime(timezone=True))
            )
        if concluded_at is not None:
            values["concluded_at"] = concluded_at
        if winner_variant_id is not None:
            values["winner_variant_id"] = winner_variant_id

        stmt = (
            update(ExperimentRow)
            .where(ExperimentRow.id == experiment_id, ExperimentRow.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            applied = result.rowcount == 1
        return applied

    async def update_variant_weights(self, experiment_id, weights, updated_at: datetime) -> None:
        async with self._session_factory() as session, session.begin():
            for variant_id, weight in weights.items():
                await session.execute(
                    update(VariantRow)
                    .where(VariantRow.id == variant_id, VariantRow.experiment_id == experiment_id)
                    .values(weight=weight)
                    .execution_options(synchronize_session=False)
                )
            await session.execute(
                update(ExperimentRow)
                .where(ExperimentRow.id == experiment_id)
                .values(updated_at=updated_at)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    async def get_assignment(self, assignment_id):
        async with self._session_factory() as session:
            row = await session.get(AssignmentRow, assignment_id)
            return self._to_assignment(row) if row is not None else None

    async def find_assignment(self, experiment_id, identity_key):
        async with self._session_factory() as session:
            result = await session.execute(
                select(AssignmentRow).where(
                    AssignmentRow.experiment_id == experiment_id,
                    AssignmentRow.identity_key == identity_key,
                )
            )
            row = result.scalar_one_or_none()
            return self._to_assignment(row) if row is not None else None

    async def insert_assignment_if_absent(self, assignment: Assignment) -> tuple[Assignment, bool]:
        stmt = (
            self._insert(AssignmentRow)
            .values(
                id=assignment.id,
                experiment_id=assignment.experiment_id,
                variant_id=assignment.variant_id,
                variant_name=assignment.variant_name,
                identity_key=assignment.identity_key,
                session_id=assignment.session_id,
                context=assignment.context,
                config_snapshot=assignment.config,
                assigned_at=assignment.assigned_at,
            )
            .on_conflict_do_nothing(index_elements=["experiment_id", "identity_key"])
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(stmt)
            result = await session.execute(
                select(AssignmentRow).where(
                    AssignmentRow.experiment_id == assignment.experiment_id,
                    AssignmentRow.identity_key == assignment.identity_key,
                )
            )
            row = result.scalar_one()
            stored = self._to_assignment(row)
        return stored, stored.id == assignment.id

    async def increment_assignments(self, variant_id, delta: int = 1) -> None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(VariantRow)
                .where(VariantRow.id == variant_id)
                .values(assignments=VariantRow.assignments + delta)
                .execution_options(synchronize_session=False)
            )
            updated = result.rowcount
        if updated != 1:
            raise StorageError(f"Variant {variant_id} missing")

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    async def apply_observation(self, variant_id, metric, value, binary) -> None:
        m = VariantMetricRow
        if binary:
            success = 1 if value > 0 else 0
            values = {
                "observations": m.observations + 1,
                "successes": m.successes + success,
                "failures": m.failures + (1 - success),
            }
        else:
            # SET expressions all read the pre-update row
            x = literal(float(value), Float)
            n = m.observations
            delta = x - m.mean
            values = {
                "observations": n + 1,
                "sum": m.sum + x,
                "mean": m.mean + delta / (n + 1),
                "sum_of_squares": m.sum_of_squares + delta * delta * n / (n + 1),
            }

        seed_row = (
            self._insert(VariantMetricRow)
            .values(
                variant_id=variant_id,
                metric=metric,
                observations=0,
                successes=0,
                failures=0,
                sum=0.0,
                sum_of_squares=0.0,
                mean=0.0,
            )
            .on_conflict_do_nothing(index_elements=["variant_id", "metric"])
        )
        async with self._session_factory() as session, session.begin():
            await session.execute(seed_row)
            await session.execute(
                update(m)
                .where(m.variant_id == variant_id, m.metric == metric)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def append_observation(self, observation: Observation) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(
                ObservationRow(
                    id=observation.id,
                    assignment_id=observation.assignment_id,
                    experiment_id=observation.experiment_id,
                    variant_id=observation.variant_id,
                    metric=observation.metric,
                    value=observation.value,
                    extra=observation.metadata,
                    timestamp=observation.timestamp,
                )
            )

    async def list_observations(self, assignment_id) -> list[Observation]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ObservationRow)
                .where(ObservationRow.assignment_id == assignment_id)
                .order_by(ObservationRow.timestamp)
            )
            return [
                Observation(
                    id=row.id,
                    assignment_id=row.assignment_id,
                    experiment_id=row.experiment_id,
                    variant_id=row.variant_id,
                    metric=row.metric,
                    value=row.value,
                    metadata=row.extra or {},
                    timestamp=_aware(row.timestamp),
                )
                for row in result.scalars().all()
            ]

    # ------------------------------------------------------------------
    # Row -> record mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_stats(row: VariantMetricRow, assignments: int) -> VariantStats:
        n = row.observations
        return VariantStats(
            assignments=assignments,
            observations=n,
            successes=row.successes,
            failures=row.failures,
            alpha=1.0 + row.successes,
            beta=1.0 + row.failures,
            sum=row.sum,
            sum_of_squares=row.sum_of_squares,
            mean=row.mean,
            variance=row.sum_of_squares / n if n > 1 else 0.0,
        )

    def _to_experiment(self, row: ExperimentRow, stats_rows) -> Experiment:
        config = ExperimentConfig.model_validate(row.config)
        by_variant: dict[uuid.UUID, list[VariantMetricRow]] = {}
        for stats_row in stats_rows:
            by_variant.setdefault(stats_row.variant_id, []).append(stats_row)

        variants = []
        for v in row.variants:
            metric_stats = {
                s.metric: self._to_stats(s, v.assignments) for s in by_variant.get(v.id, [])
            }
            primary = metric_stats.get(config.primary_metric, VariantStats(assignments=v.assignments))
            variants.append(
                Variant(
                    id=v.id,
                    experiment_id=row.id,
                    name=v.name,
                    description=v.description,
                    is_control=v.is_control,
                    weight=v.weight,
                    config=v.config or {},
                    stats=primary,
                    metric_stats=metric_stats,
                )
            )

        return Experiment(
            id=row.id,
            config=config,
            variants=variants,
            status=row.status,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            started_at=_aware(row.started_at),
            concluded_at=_aware(row.concluded_at),
            winner_variant_id=row.winner_variant_id,
        )

    @staticmethod
    def _to_assignment(row: AssignmentRow) -> Assignment:
        return Assignment(
            id=row.id,
            experiment_id=row.experiment_id,
            variant_id=row.variant_id,
            variant_name=row.variant_name,
            identity_key=row.identity_key,
            session_id=row.session_id,
            context=row.context or {},
            assigned_at=_aware(row.assigned_at),
            config=row.config_snapshot or {},
        )
