"""
DeployKit — Application Runtime Shell
=======================================

What:  The process that runs inside the application container: reads its
       configuration from the environment once, waits for its datastore,
       and binds the fixed internal port.
How:   Factory pattern: create_app() returns a configured FastAPI instance;
       serve() runs it under uvicorn on settings.app_host:app_internal_port
       (0.0.0.0:8080 by default).

Lifecycle:
    Startup:
    1. Initialize logging
    2. Load the ParameterSet (a missing parameter aborts startup)
    3. Create the engine against the selected datastore container
    4. Wait for the datastore with exponential backoff

    Shutdown:
    1. Dispose the engine (close all pooled connections)
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from deploykit import __version__
from deploykit.config import load_parameters, settings
from deploykit.database import datastore_host, dispose_engine, get_engine, wait_for_datastore
from deploykit.exceptions import (
    ConfigurationError,
    DatastoreUnavailableError,
    DeployKitError,
)
from deploykit.logging_config import setup_logging
from deploykit.middleware.logging import RequestLoggingMiddleware
from deploykit.middleware.request_id import RequestIDMiddleware, request_id_var
from deploykit.routes import health
from deploykit.schemas.health import ErrorResponse

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("=" * 60)
    logger.info("DeployKit runtime shell %s starting up...", __version__)

    try:
        parameters = load_parameters()
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e.message)
        logger.error("Fix the parameter set and restart the container.")
        raise

    app.state.parameters = parameters
    app.state.datastore = datastore_host(parameters, settings.datastore_target)

    engine = get_engine(parameters)
    try:
        await wait_for_datastore(engine)

        logger.info("Server ready at http://%s:%d", settings.app_host, settings.app_internal_port)
        logger.info("=" * 60)

        yield

        logger.info("DeployKit runtime shell shutting down...")
    finally:
        # Also runs when the datastore never came up
        await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Handler hierarchy:
        DatastoreUnavailableError → 503 Service Unavailable
        DeployKitError (base)     → 500 Internal Server Error
        Exception (fallback)      → 500 Internal Server Error

    Context dicts are logged, never returned.
    """

    @app.exception_handler(DatastoreUnavailableError)
    async def handle_datastore_unavailable(request: Request, exc: DatastoreUnavailableError):
        rid = request_id_var.get("")
        logger.error("[%s] Datastore unavailable: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=503,
            content=ErrorResponse(
                error="datastore_unavailable",
                message=exc.message,
                request_id=rid,
            ).model_dump(),
        )

    @app.exception_handler(DeployKitError)
    async def handle_deploykit_error(request: Request, exc: DeployKitError):
        rid = request_id_var.get("")
        logger.error("[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="server_error",
                message=exc.message,
                request_id=rid,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="internal_server_error",
                message="An unexpected error occurred.",
                request_id=rid,
            ).model_dump(),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="DeployKit Runtime Shell",
        description="Environment-configured application process with datastore readiness.",
        version=__version__,
        lifespan=lifespan,
    )

    # Last added runs first: RequestID → Logging → route
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)

    return app


def serve() -> None:
    """Run the shell on the fixed internal port; takes no arguments."""
    setup_logging()
    uvicorn.run(
        "deploykit.main:app",
        host=settings.app_host,
        port=settings.app_internal_port,
        log_config=None,
    )


app = create_app()
