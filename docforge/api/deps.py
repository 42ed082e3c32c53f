"""Shared FastAPI dependencies: cache store, maintenance and executors.

Tests replace these through ``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends

from ..core.config import settings
from ..database import SessionLocal
from ..exceptions import BackendNotConfiguredError
from ..pipeline.backend import GenerationBackend, LiteLLMBackend
from ..pipeline.executor import PipelineExecutor
from ..pipeline.options import PipelineOptions
from ..services.cache_maintenance import CacheMaintenance
from ..services.cache_store import CacheStore


@lru_cache
def get_cache_store() -> CacheStore:
    """Process-wide store; its per-repository locks must be shared by all requests."""
    return CacheStore(SessionLocal, lock_timeout=settings.cache_lock_timeout)


def get_maintenance(store: CacheStore = Depends(get_cache_store)) -> CacheMaintenance:
    return CacheMaintenance(store)


@lru_cache
def get_backend() -> GenerationBackend:
    """Configured generation backend. Raises 503 when no model is set."""
    if not settings.generation_model:
        raise BackendNotConfiguredError()
    return LiteLLMBackend.from_settings(settings)


def get_planner(store: CacheStore = Depends(get_cache_store)) -> PipelineExecutor:
    """Executor used only for plan previews; needs no backend."""
    return PipelineExecutor(store, options=PipelineOptions.from_settings(settings))


def get_executor(
    store: CacheStore = Depends(get_cache_store),
    backend: GenerationBackend = Depends(get_backend),
) -> PipelineExecutor:
    return PipelineExecutor(store, backend, options=PipelineOptions.from_settings(settings))
