import uuid

from sqlalchemy import Float, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from abengine.models.base import Base


class VariantMetricRow(Base):
    """Running stats for one (variant, metric) pair.

    Only the additive state is stored; alpha, beta and variance are derived
    on read.  ``sum_of_squares`` is Welford's M2.
    """

    __tablename__ = "variant_metric_stats"

    variant_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("experiment_variants.id"), primary_key=True)
    metric: Mapped[str] = mapped_column(String(255), primary_key=True)
    observations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sum: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    sum_of_squares: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    mean: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
