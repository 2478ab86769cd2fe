"""API v1 module."""

from tenanthub.app.api.v1.scheduler import router as scheduler_router

__all__ = ["scheduler_router"]
