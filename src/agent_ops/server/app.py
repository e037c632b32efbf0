"""FastAPI app factory.

Endpoints are intentionally thin wrappers over the orchestrator services; the
typed orchestrator errors are mapped to HTTP status codes here, once.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent_ops import __version__
from agent_ops.orchestrator.config import OrchestratorSettings
from agent_ops.orchestrator.errors import (
    EntityDisabled,
    ExecutionAlreadyActive,
    ExecutionFinalized,
    InvalidTransition,
    NotFound,
    OrchestratorError,
    StoreError,
    TransitionContextError,
)
from agent_ops.orchestrator.services import Services, build_services
from agent_ops.server.config import ServerSettings
from agent_ops.server.router import router

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[OrchestratorError], int], ...] = (
    (NotFound, 404),
    (InvalidTransition, 409),
    (ExecutionAlreadyActive, 409),
    (EntityDisabled, 409),
    (ExecutionFinalized, 409),
    (TransitionContextError, 422),
    (StoreError, 503),
)


def status_for_error(exc: OrchestratorError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def create_app(
    *,
    services: Services | None = None,
    settings: OrchestratorSettings | None = None,
    server_settings: ServerSettings | None = None,
) -> FastAPI:
    """Build the API.

    Pass ``services`` to serve already-built components (tests, embedding);
    otherwise they are built from ``settings`` (or the environment). Either
    way the lifespan creates the schema, fails executions left in flight by
    a previous process, and runs the scheduler if it is enabled.
    """

    server_settings = server_settings or ServerSettings()
    if services is None:
        services = build_services(settings or OrchestratorSettings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services.startup()
        try:
            yield
        finally:
            services.close()

    app = FastAPI(
        title="Agent Ops",
        version=__version__,
        description="Execution scheduling, lifecycle and live progress for autonomous agents.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose settings and services for request handlers that want to read them.
    app.state.settings = server_settings
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error": str(exc), "status_code": status_code},
            )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    app.include_router(router, prefix="/api")
    return app
