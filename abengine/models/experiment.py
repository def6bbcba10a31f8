import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from abengine.models.base import Base, JSONType, TimestampMixin
from abengine.schemas import ExperimentStatus, PolicyType


class ExperimentRow(TimestampMixin, Base):
    __tablename__ = "experiments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    policy: Mapped[PolicyType] = mapped_column(Enum(PolicyType), nullable=False)
    primary_metric: Mapped[str] = mapped_column(String(255), nullable=False)
    config: Mapped[dict] = mapped_column(JSONType, nullable=False)
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(ExperimentStatus), nullable=False, default=ExperimentStatus.draft, index=True
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    concluded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    winner_variant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    variants: Mapped[list["VariantRow"]] = relationship(
        "VariantRow", back_populates="experiment", order_by="VariantRow.position", lazy="selectin"
    )


class VariantRow(Base):
    __tablename__ = "experiment_variants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("experiments.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    is_control: Mapped[bool] = mapped_column(nullable=False, default=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    assignments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    experiment: Mapped[ExperimentRow] = relationship("ExperimentRow", back_populates="variants")
