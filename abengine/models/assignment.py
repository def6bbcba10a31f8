import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from abengine.models.base import Base, JSONType


class AssignmentRow(Base):
    __tablename__ = "experiment_assignments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    experiment_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("experiments.id"), nullable=False)
    variant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("experiment_variants.id"), nullable=False)
    variant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    identity_key: Mapped[str] = mapped_column(String(255), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    config_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("experiment_id", "identity_key", name="uq_assignment_experiment_identity"),
    )
