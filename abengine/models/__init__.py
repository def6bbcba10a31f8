from abengine.models.assignment import AssignmentRow
from abengine.models.base import Base, TimestampMixin
from abengine.models.experiment import ExperimentRow, VariantRow
from abengine.models.observation import ObservationRow
from abengine.models.variant_stats import VariantMetricRow

__all__ = [
    "Base",
    "TimestampMixin",
    "AssignmentRow",
    "ExperimentRow",
    "ObservationRow",
    "VariantMetricRow",
    "VariantRow",
]
