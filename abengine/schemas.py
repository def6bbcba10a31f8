"""Domain records shared by the engine, the stores and the HTTP binding."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class PolicyType(str, enum.Enum):
    thompson_sampling = "thompson_sampling"
    ucb = "ucb"
    epsilon_greedy = "epsilon_greedy"
    ab_test = "ab_test"
    bayesian_ab = "bayesian_ab"


class ExperimentStatus(str, enum.Enum):
    draft = "draft"
    running = "running"
    paused = "paused"
    concluded = "concluded"


Recommendation = Literal["continue", "conclude", "stop"]
OverallRecommendation = Literal["continue", "conclude_winner", "conclude_no_winner"]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ExperimentConfig(BaseModel):
    name: str
    policy: PolicyType = PolicyType.thompson_sampling
    primary_metric: str = "conversion"
    traffic_allocation: float = Field(default=1.0, gt=0.0, le=1.0)
    min_sample_size: int = Field(default=1000, ge=1)
    significance_threshold: float = Field(default=0.95, gt=0.5, lt=1.0)
    credible_interval: float = Field(default=0.95, gt=0.0, lt=1.0)
    parameters: dict[str, Any] = Field(default_factory=dict)


class VariantConfig(BaseModel):
    name: str
    description: str | None = None
    is_control: bool = False
    weight: float | None = Field(default=None, ge=0.0, le=1.0)
    config: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Experiment state
# ---------------------------------------------------------------------------


class VariantStats(BaseModel):
    """Running summary for one (variant, metric) pair.

    ``sum_of_squares`` holds Welford's M2 accumulator (sum of squared
    deviations from the running mean), not the raw sum of squares.
    """

    assignments: int = 0
    observations: int = 0
    successes: int = 0
    failures: int = 0
    alpha: float = 1.0
    beta: float = 1.0
    sum: float = 0.0
    sum_of_squares: float = 0.0
    mean: float = 0.0
    variance: float = 0.0


class Variant(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    experiment_id: uuid.UUID
    name: str
    description: str | None = None
    is_control: bool = False
    weight: float
    config: dict[str, Any] = Field(default_factory=dict)
    stats: VariantStats = Field(default_factory=VariantStats)
    metric_stats: dict[str, VariantStats] = Field(default_factory=dict)


class Experiment(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    config: ExperimentConfig
    variants: list[Variant]
    status: ExperimentStatus = ExperimentStatus.draft
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    concluded_at: datetime | None = None
    winner_variant_id: uuid.UUID | None = None

    def variant(self, variant_id: uuid.UUID) -> Variant | None:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def control(self) -> Variant:
        for variant in self.variants:
            if variant.is_control:
                return variant
        return self.variants[0]


class AssignmentContext(BaseModel):
    session_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class Assignment(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    experiment_id: uuid.UUID
    variant_id: uuid.UUID
    variant_name: str
    identity_key: str
    session_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    assigned_at: datetime
    config: dict[str, Any] = Field(default_factory=dict)


class Observation(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    assignment_id: uuid.UUID
    experiment_id: uuid.UUID
    variant_id: uuid.UUID
    metric: str
    value: float
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


# ---------------------------------------------------------------------------
# Analysis output
# ---------------------------------------------------------------------------


class TestResult(BaseModel):
    __test__ = False  # not a pytest class

    control_variant_id: uuid.UUID
    treatment_variant_id: uuid.UUID
    control_name: str
    treatment_name: str
    metric: str
    metric_type: Literal["binary", "continuous"]
    method: str
    control_samples: int
    treatment_samples: int
    control_mean: float
    treatment_mean: float
    control_interval: tuple[float, float]
    treatment_interval: tuple[float, float]
    absolute_effect: float
    relative_effect: float | None
    probability_to_be_best: float
    credible_interval: tuple[float, float] | None
    expected_loss: float | None = None
    recommended_action: Recommendation


class ExperimentResults(BaseModel):
    experiment_id: uuid.UUID
    status: ExperimentStatus
    primary_metric: str
    variants: list[Variant]
    test_results: list[TestResult]
    winner: Variant | None = None
    confidence: float = 0.0
    total_assignments: int
    total_observations: int
    pooled: VariantStats = Field(default_factory=VariantStats)
    duration_seconds: float
    recommended_action: OverallRecommendation
    suggested_allocation: dict[str, float] | None = None
    expected_loss: dict[str, float] | None = None
    generated_at: datetime
