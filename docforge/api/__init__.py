"""API routes."""

from .cache import router as cache_router
from .generation import router as generation_router

__all__ = [
    "cache_router",
    "generation_router",
]
