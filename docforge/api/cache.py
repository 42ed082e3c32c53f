"""Cache administration endpoints."""

import logging
from fastapi import APIRouter, Depends, Query
from typing import List

from ..exceptions import CacheEntryNotFoundError
from ..pipeline.executor import PipelineExecutor
from ..schemas.cache import (
    CacheEntryResponse,
    CacheStatsResponse,
    CleanupRequest,
    CleanupResponse,
    OrphanCleanupResponse,
    RepoDeleteResponse,
    RepoStatusResponse,
)
from ..schemas.generation import PlanRequest, PlanResponse
from ..services.cache_maintenance import MB, CacheMaintenance, CleanupConfig
from ..services.cache_store import CacheStore
from ..services.records import normalize_repo_id
from .deps import get_cache_store, get_maintenance, get_planner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cache", tags=["cache"])


@router.get("/stats", response_model=CacheStatsResponse)
def get_stats(store: CacheStore = Depends(get_cache_store)):
    """Entry count, total size and the oldest/newest entries."""
    stats = store.stats()
    return CacheStatsResponse(
        total_entries=stats.total_entries,
        total_bytes=stats.total_bytes,
        total_size_mb=round(stats.total_bytes / MB, 2),
        corrupt_entries=stats.corrupt_entries,
        oldest_entry=CacheEntryResponse.model_validate(stats.oldest_entry) if stats.oldest_entry else None,
        newest_entry=CacheEntryResponse.model_validate(stats.newest_entry) if stats.newest_entry else None,
    )


@router.get("/entries", response_model=List[CacheEntryResponse])
def list_entries(store: CacheStore = Depends(get_cache_store)):
    """List metadata for every cached repository, least recently used first."""
    return [CacheEntryResponse.model_validate(s) for s in store.list()]


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup(
    request: CleanupRequest,
    maintenance: CacheMaintenance = Depends(get_maintenance),
):
    """Evict entries by age, count and total size.

    Corrupt entries go first, then expired ones, then least recently used
    until the count and size bounds hold. ``dry_run`` reports without
    deleting.
    """
    result = maintenance.cleanup(CleanupConfig(**request.model_dump()))
    return CleanupResponse.model_validate(result)


@router.post("/cleanup-orphans", response_model=OrphanCleanupResponse)
def cleanup_orphans(
    dry_run: bool = Query(False),
    maintenance: CacheMaintenance = Depends(get_maintenance),
):
    """Remove fingerprint, unit and dependency rows that have no owning entry."""
    return OrphanCleanupResponse.model_validate(maintenance.cleanup_orphans(dry_run=dry_run))


@router.post("/clear-all", response_model=CleanupResponse)
def clear_all(maintenance: CacheMaintenance = Depends(get_maintenance)):
    """Remove every cache entry."""
    result = maintenance.clear_all()
    logger.warning(f"Cache cleared: {len(result.deleted_repos)} entries removed")
    return CleanupResponse.model_validate(result)


@router.get("/repos/status", response_model=RepoStatusResponse)
def repo_status(
    repo_url: str = Query(..., min_length=1),
    store: CacheStore = Depends(get_cache_store),
):
    """Cache status for one repository."""
    repo_id = normalize_repo_id(repo_url)
    summary = store.summary(repo_id)
    return RepoStatusResponse(
        repo_id=repo_id,
        cached=summary is not None,
        entry=CacheEntryResponse.model_validate(summary) if summary else None,
    )


@router.delete("/repos", response_model=RepoDeleteResponse)
def delete_repo(
    repo_url: str = Query(..., min_length=1),
    store: CacheStore = Depends(get_cache_store),
):
    """Clear the cache entry for one repository."""
    repo_id = normalize_repo_id(repo_url)
    if not store.remove(repo_id):
        raise CacheEntryNotFoundError(repo_id)
    return RepoDeleteResponse(repo_id=repo_id, deleted=True)


@router.post("/repos/plan", response_model=PlanResponse)
def plan_repo(
    request: PlanRequest,
    planner: PipelineExecutor = Depends(get_planner),
):
    """Change analysis and regeneration plan for a file set, without running it."""
    analysis, plan = planner.preview(
        request.repo_url,
        request.source_files(),
        force_full=request.force_full,
        language=request.language,
        documentation_mode=request.documentation_mode,
    )
    return PlanResponse(
        repo_id=normalize_repo_id(request.repo_url),
        analysis=analysis.to_dict(),
        plan=plan.to_dict(),
    )
