from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from abengine.core.dependencies import get_service
from abengine.schemas import (
    Assignment,
    AssignmentContext,
    Experiment,
    ExperimentConfig,
    ExperimentResults,
    Observation,
    VariantConfig,
)
from abengine.services.lifecycle import ExperimentService

router = APIRouter(tags=["experiments"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ExperimentCreate(ExperimentConfig):
    variants: list[VariantConfig]


class WeightsUpdate(BaseModel):
    weights: dict[UUID, float]


class AssignRequest(BaseModel):
    identity_key: str = Field(min_length=1)
    session_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class ObservationCreate(BaseModel):
    assignment_id: UUID
    metric: str = Field(min_length=1)
    value: float = Field(allow_inf_nan=False)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ConcludeRequest(BaseModel):
    winner_variant_id: UUID | None = None


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------


@router.post("/experiments", response_model=Experiment, status_code=status.HTTP_201_CREATED)
async def create_experiment(
    body: ExperimentCreate,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    """Create a draft experiment."""
    config = ExperimentConfig.model_validate(body.model_dump(exclude={"variants"}))
    return await service.create_experiment(config, body.variants)


@router.get("/experiments/{experiment_id}", response_model=Experiment)
async def get_experiment(
    experiment_id: UUID,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    return await service.get_experiment(experiment_id)


@router.post("/experiments/{experiment_id}/start", response_model=Experiment)
async def start_experiment(
    experiment_id: UUID,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    return await service.start_experiment(experiment_id)


@router.post("/experiments/{experiment_id}/pause", response_model=Experiment)
async def pause_experiment(
    experiment_id: UUID,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    return await service.pause_experiment(experiment_id)


@router.post("/experiments/{experiment_id}/resume", response_model=Experiment)
async def resume_experiment(
    experiment_id: UUID,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    return await service.resume_experiment(experiment_id)


@router.put("/experiments/{experiment_id}/weights", response_model=Experiment)
async def reweight_variants(
    experiment_id: UUID,
    body: WeightsUpdate,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    """Redistribute weights among the experiment's existing variants."""
    return await service.reweight_variants(experiment_id, body.weights)


@router.post("/experiments/{experiment_id}/conclude", response_model=Experiment)
async def conclude_experiment(
    experiment_id: UUID,
    body: ConcludeRequest | None = None,
    service: ExperimentService = Depends(get_service),
) -> Experiment:
    winner = body.winner_variant_id if body is not None else None
    return await service.conclude_experiment(experiment_id, winner)


@router.get("/experiments/{experiment_id}/report", response_model=ExperimentResults)
async def get_experiment_report(
    experiment_id: UUID,
    service: ExperimentService = Depends(get_service),
) -> ExperimentResults:
    """Pairwise comparisons, winner and recommendation for the primary metric."""
    return await service.get_experiment_report(experiment_id)


# ---------------------------------------------------------------------------
# Assignment and observation
# ---------------------------------------------------------------------------


@router.post(
    "/experiments/{experiment_id}/assign",
    response_model=Assignment,
    responses={204: {"description": "Identity is outside the experiment's traffic allocation"}},
)
async def assign_variant(
    experiment_id: UUID,
    body: AssignRequest,
    service: ExperimentService = Depends(get_service),
):
    """Sticky variant assignment for one identity."""
    context = AssignmentContext(session_id=body.session_id, attributes=body.attributes)
    assignment = await service.assign_variant(experiment_id, body.identity_key, context)
    if assignment is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return assignment


@router.post("/observations", response_model=Observation, status_code=status.HTTP_201_CREATED)
async def record_observation(
    body: ObservationCreate,
    service: ExperimentService = Depends(get_service),
) -> Observation:
    return await service.record_observation(body.assignment_id, body.metric, body.value, body.metadata)


@router.get("/assignments/{assignment_id}/observations", response_model=list[Observation])
async def list_observations(
    assignment_id: UUID,
    service: ExperimentService = Depends(get_service),
) -> list[Observation]:
    return await service.list_observations(assignment_id)
