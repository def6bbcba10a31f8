"""Request-scoped access to the process-wide ExperimentService."""

from functools import lru_cache

import numpy as np

from abengine.core.config import settings
from abengine.core.database import build_engine
from abengine.services.lifecycle import ExperimentService
from abengine.services.telemetry import LoggingTelemetry
from abengine.storage.base import ExperimentStore
from abengine.storage.memory import InMemoryStore
from abengine.storage.sql import SqlAlchemyStore


def build_store() -> ExperimentStore:
    """Store selected by ``STORAGE_BACKEND``."""
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryStore()
    if settings.STORAGE_BACKEND == "sql":
        return SqlAlchemyStore(build_engine(pool_pre_ping=True))
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND!r}")


@lru_cache
def get_service() -> ExperimentService:
    """Single service per process; every request shares its store."""
    return ExperimentService(
        build_store(),
        telemetry=LoggingTelemetry(),
        rng=np.random.default_rng(settings.RANDOM_SEED),
    )
