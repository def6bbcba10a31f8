import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from abengine.core.config import settings
from abengine.core.database import init_models
from abengine.core.dependencies import get_service
from abengine.core.errors import (
    AssignmentNotFound,
    CollaboratorUnavailable,
    ExperimentError,
    ExperimentNotFound,
    ExperimentNotRunning,
    InvalidObservation,
    InvalidStatusTransition,
    InvalidVariantConfiguration,
)
from abengine.routers import experiments, health
from abengine.storage.sql import SqlAlchemyStore

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[ExperimentError], int] = {
    ExperimentNotFound: status.HTTP_404_NOT_FOUND,
    AssignmentNotFound: status.HTTP_404_NOT_FOUND,
    ExperimentNotRunning: status.HTTP_409_CONFLICT,
    InvalidStatusTransition: status.HTTP_409_CONFLICT,
    InvalidObservation: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidVariantConfiguration: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CollaboratorUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = get_service().store.wrapped
    if isinstance(store, SqlAlchemyStore):
        await init_models(store.engine)
    yield
    if isinstance(store, SqlAlchemyStore):
        await store.engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ExperimentError)
async def experiment_error_handler(request: Request, exc: ExperimentError) -> JSONResponse:
    code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


# Routers
app.include_router(health.router)
app.include_router(experiments.router, prefix=settings.API_V1_PREFIX)
