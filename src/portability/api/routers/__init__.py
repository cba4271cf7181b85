"""API routers."""

from portability.api.routers.portability import router as portability_router

__all__ = ["portability_router"]
