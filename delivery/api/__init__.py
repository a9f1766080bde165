"""API routes package."""

from .routes_goals import router as goals_router

__all__ = [
    "goals_router",
]
