"""Data access repositories."""

from .base import BaseRepository
from .cache_repository import CacheRepository

__all__ = ["BaseRepository", "CacheRepository"]
