"""Change-aware regeneration services."""

from .cache_maintenance import CacheMaintenance, CleanupConfig, CleanupResult, OrphanCleanupResult
from .cache_store import CacheEntrySummary, CacheStats, CacheStore
from .change_analyzer import analyze_changes, analyze_records
from .regeneration_planner import expand_dependents, plan_regeneration

__all__ = [
    "CacheMaintenance", "CleanupConfig", "CleanupResult", "OrphanCleanupResult",
    "CacheEntrySummary", "CacheStats", "CacheStore",
    "analyze_changes", "analyze_records",
    "expand_dependents", "plan_regeneration",
]
