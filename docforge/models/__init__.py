"""Database models."""

from .cache_entry import RepoCacheRecord, FileFingerprint, CachedUnit, UnitDependency

__all__ = ["RepoCacheRecord", "FileFingerprint", "CachedUnit", "UnitDependency"]
