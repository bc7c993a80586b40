"""API routes."""

from .sync import router as sync_router
from .vehicles import router as vehicles_router

__all__ = [
    "sync_router",
    "vehicles_router",
]
