# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
FastAPI Gateway Application

Main entry point for the Deliberate API.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deliberate_core import DeliberateError, ErrorKind

from ..core.async_base import Lifecycle
from ..core.orchestrator import DualStageOrchestrator
from ..core.settings import Settings, get_settings
from ..observability import init_observability
from .chat_routes import router as chat_router
from .health import router as health_router
from .request_context import RequestContextMiddleware

logger = logging.getLogger(__name__)


# HTTP status per error kind
ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.CONFIGURATION: 400,
    ErrorKind.UPSTREAM_REJECTED: 502,
    ErrorKind.UPSTREAM_PROTOCOL: 502,
    ErrorKind.UPSTREAM_UNAVAILABLE: 504,
    ErrorKind.CANCELLED: 499,
    ErrorKind.INTERNAL: 500,
}


def status_for(error: DeliberateError) -> int:
    return ERROR_STATUS_CODES.get(error.kind, 500)


# ============================================================
# APPLICATION
# ============================================================


def create_app(
    settings: Settings | None = None,
    orchestrator: DualStageOrchestrator | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings (defaults to get_settings())
        orchestrator: Prebuilt orchestrator; built from settings at startup
            when omitted
    """
    settings = settings or get_settings()

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    lifecycle = Lifecycle()

    @lifecycle.on_startup
    async def startup_observability():
        init_observability(
            log_level=settings.observability.level,
            log_format=settings.observability.format,
            mask_sensitive=settings.observability.mask_sensitive,
        )
        logger.info("Observability initialized")

    @lifecycle.on_startup
    async def startup_orchestrator():
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = DualStageOrchestrator.from_settings(settings)
        logger.info(
            f"Orchestrator ready: reasoning={settings.reasoning.provider}/{settings.reasoning.model} "
            f"synthesis={settings.synthesis.provider}/{settings.synthesis.model}"
        )

    @lifecycle.on_shutdown
    async def shutdown_orchestrator():
        current = getattr(app.state, "orchestrator", None)
        if current is not None:
            await current.close()
        logger.info("Stage adapters closed")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await lifecycle.startup()
        yield
        await lifecycle.shutdown()

    app = FastAPI(
        title=settings.app_name,
        description="Dual-stage reasoning orchestrator",
        version=settings.app_version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator

    # --------------------------------------------------------
    # MIDDLEWARE
    # --------------------------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestContextMiddleware)

    # --------------------------------------------------------
    # EXCEPTION HANDLERS
    # --------------------------------------------------------

    @app.exception_handler(DeliberateError)
    async def deliberate_error_handler(request: Request, exc: DeliberateError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"Run failed ({exc.kind}): {exc.message}")
        else:
            logger.warning(f"Request rejected ({exc.kind}): {exc.message}")

        return JSONResponse(
            status_code=status_code,
            content={
                **exc.to_dict(),
                "status_code": status_code,
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code,
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "status_code": 500,
                "request_id": getattr(request.state, "request_id", None),
            },
        )

    # --------------------------------------------------------
    # ROUTES
    # --------------------------------------------------------

    app.include_router(health_router, tags=["Health"])
    app.include_router(chat_router)

    return app


# Create app instance
app = create_app()


# ============================================================
# EXPORTS
# ============================================================

__all__ = ["app", "create_app", "ERROR_STATUS_CODES", "status_for"]
