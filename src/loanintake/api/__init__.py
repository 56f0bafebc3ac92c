"""Loan intake API service.

FastAPI application providing:
- Loan application submission (documents staged, metadata recorded,
  downstream consumers notified)
- Application status lookup through the status cache
- Document metadata listing

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from redis.asyncio import ConnectionPool
from starlette.exceptions import HTTPException as StarletteHTTPException

from loanintake.api.middleware import (
    APIError,
    CorrelationIdMiddleware,
    ErrorHandlerMiddleware,
    api_error_handler,
    http_exception_handler,
    validation_exception_handler,
)
from loanintake.api.routers import applications_router
from loanintake.core.logging import configure_logging
from loanintake.db import create_engine_from_settings, create_session_factory
from loanintake.services.event_publisher import EventPublisher
from loanintake.services.metadata_store import MetadataStore
from loanintake.services.object_stager import ObjectStager
from loanintake.services.status_cache import StatusCache, StatusLookupService
from loanintake.services.storage import ObjectStoreClient, StorageError
from loanintake.services.submission import SubmissionCoordinator

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from loanintake.core.config import Settings

logger = logging.getLogger(__name__)

# Application metadata
API_TITLE = "Loan Intake API"
API_DESCRIPTION = """
Loan application intake service.

## Endpoints

- **POST /api/loans/applications** - Submit an application with documents
- **GET /api/loans/applications/{id}** - Application status (cache or database)
- **GET /api/loans/applications/{id}/documents** - Document metadata

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""


@dataclass
class AppServices:
    """Collaborators the routes depend on."""

    coordinator: SubmissionCoordinator
    metadata_store: MetadataStore
    status_lookup: StatusLookupService


def create_app(settings: Settings | None = None, services: AppServices | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    This factory function creates a fully configured FastAPI app with:
    - The applications router mounted under /api
    - Correlation ID middleware for cross-system tracing
    - Error handling producing ``{"error": ...}`` bodies
    - A lifespan that builds the store clients once per process

    Args:
        settings: Optional Settings instance. If not provided, settings are
            loaded from the environment at startup.
        services: Prebuilt collaborators. When given, the lifespan does not
            connect to any backing store (used by tests).

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        # Production
        app = create_app()

        # For testing
        app = create_app(test_settings, services=AppServices(...))
    """
    version = settings.app_version if settings else "0.1.0"

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )

    # Store settings in app state for access in the lifespan and routes
    app.state.settings = settings
    if services is not None:
        _attach_services(app, services)

    _add_exception_handlers(app)

    # Add middleware (order matters - last added is outermost)
    _add_middleware(app)

    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Liveness endpoint for container orchestration.

        Returns:
            Status dictionary indicating the service is up.
        """
        return {"status": "healthy"}

    logger.info("Loan Intake API application created (version=%s)", version)

    return app


def _attach_services(app: FastAPI, services: AppServices) -> None:
    app.state.services = services
    app.state.coordinator = services.coordinator
    app.state.metadata_store = services.metadata_store
    app.state.status_lookup = services.status_lookup


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build collaborators at startup and release their pools at shutdown."""
    if getattr(app.state, "services", None) is not None:
        yield
        return

    settings = app.state.settings
    if settings is None:
        from loanintake.core.settings import get_settings

        settings = get_settings()
        app.state.settings = settings

    configure_logging(settings.log_level)
    logger.info("Starting Loan Intake API: %s", settings.get_startup_snapshot())

    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)

    storage = ObjectStoreClient.from_settings(settings.s3)
    if settings.s3.create_bucket:
        try:
            await asyncio.to_thread(storage.ensure_bucket, settings.s3.bucket)
        except StorageError as e:
            logger.error("Could not ensure bucket %s: %s", settings.s3.bucket, e.message)

    pool = ConnectionPool.from_url(
        settings.redis.url,
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
    )

    store = MetadataStore(session_factory)
    coordinator = SubmissionCoordinator(
        ObjectStager(storage, settings.s3.bucket),
        store,
        EventPublisher.from_settings(settings.events, pool),
        settings.submission,
    )
    status_lookup = StatusLookupService(StatusCache.from_settings(settings.cache, pool), store)
    _attach_services(app, AppServices(coordinator, store, status_lookup))

    try:
        yield
    finally:
        await pool.disconnect()
        await engine.dispose()
        logger.info("Loan Intake API stopped")


def _add_exception_handlers(app: FastAPI) -> None:
    """Map framework and API exceptions to ``{"error": ...}`` responses."""
    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)


def _add_middleware(app: FastAPI) -> None:
    """Add middleware to the application.

    Args:
        app: The FastAPI application instance.
    """
    # Error handler middleware - converts unexpected exceptions to JSON responses
    app.add_middleware(ErrorHandlerMiddleware)

    # Correlation ID middleware - outermost, so error responses carry the header too
    app.add_middleware(CorrelationIdMiddleware)


def _include_routers(app: FastAPI) -> None:
    """Include API namespace routers.

    Args:
        app: The FastAPI application instance.
    """
    app.include_router(applications_router, prefix="/api")
