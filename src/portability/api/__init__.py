"""Portability HTTP API.

FastAPI application exposing portability request creation and the
administrator transitions. The app factory lets tests build instances with
explicit settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portability.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from portability.api.routers import portability_router
from portability.db import close_engine

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from portability.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "Data Portability API"
API_DESCRIPTION = """
Data portability request lifecycle.

- **POST /api/portability-requests** - Create a request
- **GET /api/portability-requests** - Active requests of an owner
- **POST /api/portability-requests/{id}/approve|deny|cancel** - Administrator decisions

OpenAPI spec: `/api/openapi.json`
"""

DEV_ORIGINS = ["http://localhost:3000", "http://localhost:8000"]


@asynccontextmanager
async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
    yield
    await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Optional Settings instance. Without it, development
            defaults apply to the middleware.

    Returns:
        Configured FastAPI application.
    """
    version = settings.app_version if settings else "0.1.0"

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )
    app.state.settings = settings

    _add_middleware(app, settings)
    app.include_router(portability_router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("Portability API application created (version=%s)", version)
    return app


def _add_middleware(app: FastAPI, settings: Settings | None) -> None:
    # The last middleware added is the outermost
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = [] if settings and settings.is_production else DEV_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
