"""Cache administration schemas."""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Dict, List, Optional


class CacheEntryResponse(BaseModel):
    """Listing metadata for one cached repository."""
    repo_id: str
    repo_url: str
    captured_at: datetime
    last_accessed_at: datetime
    size_bytes: int
    file_count: int
    unit_count: int
    is_corrupt: bool = False

    class Config:
        from_attributes = True


class CacheStatsResponse(BaseModel):
    total_entries: int
    total_bytes: int
    total_size_mb: float
    corrupt_entries: int
    oldest_entry: Optional[CacheEntryResponse] = None
    newest_entry: Optional[CacheEntryResponse] = None

    class Config:
        from_attributes = True


class CleanupRequest(BaseModel):
    """Eviction bounds. Omit a bound (or send null) to disable it."""
    max_age_days: Optional[float] = Field(default=30, ge=0)
    max_size_mb: Optional[float] = Field(default=500, ge=0)
    max_entries: Optional[int] = Field(default=50, ge=0)
    min_entries_to_keep: int = Field(default=0, ge=0)
    dry_run: bool = False

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"max_age_days": 30, "max_size_mb": 500, "max_entries": 50, "dry_run": True}
            ]
        }
    }


class CleanupResponse(BaseModel):
    deleted_repos: List[str]
    freed_bytes: int
    freed_space_mb: float
    remaining_entries: int
    remaining_bytes: int
    errors: List[str] = []
    dry_run: bool = False

    class Config:
        from_attributes = True


class OrphanCleanupResponse(BaseModel):
    orphans: Dict[str, int]
    removed_rows: int
    errors: List[str] = []
    dry_run: bool = False

    class Config:
        from_attributes = True


class RepoStatusResponse(BaseModel):
    """Cache status for one repository."""
    repo_id: str
    cached: bool
    entry: Optional[CacheEntryResponse] = None


class RepoDeleteResponse(BaseModel):
    repo_id: str
    deleted: bool
