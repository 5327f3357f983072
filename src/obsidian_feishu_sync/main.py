"""
Sync Service Application Entry Point

This module defines the FastAPI application instance, registers all routers,
configures global exception handling, and provides a test-friendly application
factory.

Design Goals
------------
- Deterministic startup
- Centralized router registration
- Typed pipeline failures mapped to categorized responses
- Test-friendly via create_app()
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

from .config import settings
from .core.errors import SyncError, sync_error_handler, unhandled_exception_handler

from .api import (
    health_routes,
    history_routes,
    sync_routes,
)


logger = logging.getLogger("sync.app")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    if settings.debug_logging:
        logging.getLogger("sync").setLevel(logging.DEBUG)

    app = FastAPI(
        title="obsidian-feishu-sync",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(sync_routes.router)
    app.include_router(history_routes.router)

    @app.on_event("startup")
    async def _startup_validation() -> None:
        logger.info("Starting obsidian-feishu-sync")
        if not settings.feishu_app_id or not settings.feishu_app_secret.get_secret_value():
            logger.warning("Feishu app credentials are not configured")
        if not settings.feishu_folder_token:
            logger.warning("No target folder configured; new uploads will be rejected")

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn)
# ---------------------------------------------------------------------

app = create_app()
