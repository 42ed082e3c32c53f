"""Pydantic schemas for API validation."""

from .cache import (
    CacheEntryResponse,
    CacheStatsResponse,
    CleanupRequest,
    CleanupResponse,
    OrphanCleanupResponse,
    RepoDeleteResponse,
    RepoStatusResponse,
)
from .generation import (
    GenerateRequest,
    PlanRequest,
    PlanResponse,
    SourceFileIn,
)

__all__ = [
    "CacheEntryResponse",
    "CacheStatsResponse",
    "CleanupRequest",
    "CleanupResponse",
    "OrphanCleanupResponse",
    "RepoDeleteResponse",
    "RepoStatusResponse",
    "GenerateRequest",
    "PlanRequest",
    "PlanResponse",
    "SourceFileIn",
]
