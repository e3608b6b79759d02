"""API endpoints for version 1."""

from .auth import router as auth_router
from .member import router as member_router

__all__ = ["auth_router", "member_router"]
