"""keygate FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app(): testable application factory
  - lifespan: @asynccontextmanager startup/shutdown sequence

Served through uvicorn's factory mode (see run.py):
  uvicorn --factory keygate.main:create_app

Startup sequence:
  1. create_app(): load_config() → app.state.config  (SystemExit if PROXY_KEY missing)
  2. lifespan: create_http_client() → app.state.http_client
  3. lifespan: AccessGate, QuotaTracker, RouteTable, Forwarder
               → GatewayPipeline → app.state.pipeline

Shutdown: close the shared HTTP client.

Middleware (outermost first):
  AccessLogMiddleware → SecurityHeadersMiddleware → CORSMiddleware →
  BodySizeLimitMiddleware → routes

Routes:
  GET  /health                 health.py (outside the pipeline)
  *    /t/<slug>[/<rest...>]   pipeline.py
  *    any other path or method  404 {"error": "Not found"}
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.exceptions import HTTPException

from keygate import __version__
from keygate.auth.gate import AccessGate
from keygate.auth.limiter import QuotaTracker
from keygate.config import Config, load_config
from keygate.constants import CORS_ALLOW_METHODS
from keygate.health import router as health_router
from keygate.models.errors import GatewayError, NotFound, build_error_response
from keygate.pipeline import GatewayPipeline, router as pipeline_router
from keygate.proxy.engine import Forwarder, create_http_client
from keygate.proxy.middleware import (
    AccessLogMiddleware,
    BodySizeLimitMiddleware,
    SecurityHeadersMiddleware,
)
from keygate.routing.table import RouteTable
from keygate.utils.logger import configure_logging, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO" if not DEBUG else "DEBUG")
JSON_LOGS = os.getenv("JSON_LOGS", "true").lower() == "true"

configure_logging(log_level=LOG_LEVEL, json_output=JSON_LOGS)
logger = get_logger(__name__)

async def not_found(request: Request) -> Response:
    raise NotFound(request.url.path)


# Appended after every router. No method list, so it fully matches any verb
# and wins over the 405 a method-restricted route would otherwise produce.
fallback_route = Route("/{path:path}", not_found, include_in_schema=False)


# ─── Lifespan ─────────────────────────────────────────────────────────────────


def build_pipeline(config: Config, http_client: httpx.AsyncClient) -> GatewayPipeline:
    """Wire the pipeline components from one immutable Config."""
    return GatewayPipeline(
        gate=AccessGate(config.proxy_key, config.allow_origins),
        quota=QuotaTracker(config.quota),
        routes=RouteTable.from_config(config.routes),
        forwarder=Forwarder(http_client, timeout_s=config.upstream.timeout_s),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info("keygate starting up...")

    config: Config = app.state.config

    http_client: httpx.AsyncClient = create_http_client(config.upstream)
    app.state.http_client = http_client
    app.state.pipeline = build_pipeline(config, http_client)

    logger.info(
        "Proxy listening",
        host=config.server.host,
        port=config.server.port,
        routes=len(config.routes),
    )

    yield

    logger.info("keygate shutting down...")
    try:
        await http_client.aclose()
        logger.info("HTTP proxy client closed")
    except Exception as exc:
        logger.warning("HTTP proxy client close error (non-fatal)", error=str(exc))


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(config: Config | None = None) -> FastAPI:
    """Create and configure the keygate FastAPI application.

    Configuration is loaded here, not in the lifespan, because the CORS
    middleware needs the origin allow-list at construction time. A missing
    PROXY_KEY therefore raises SystemExit before uvicorn binds the port.

    Args:
        config: Pre-built configuration (tests); ``load_config()`` otherwise.
    """
    if config is None:
        config = load_config()

    application = FastAPI(
        title="keygate",
        description="Shared-key reverse proxy gateway",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.state.config = config

    # Innermost first: the body cap must run before any handler reads the body.
    application.add_middleware(BodySizeLimitMiddleware)

    # Preflight requests are answered here and never reach the pipeline.
    # Non-preflight requests from a disallowed origin pass through to the
    # pipeline, which rejects them with 403 and no CORS headers.
    application.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.allow_origins) or ["*"],
        allow_methods=list(CORS_ALLOW_METHODS),
        allow_headers=["*"],
    )

    application.add_middleware(SecurityHeadersMiddleware)

    # Outermost: request id is bound before anything else logs.
    application.add_middleware(AccessLogMiddleware)

    application.include_router(health_router)
    application.include_router(pipeline_router)
    application.router.routes.append(fallback_route)

    # Global exception handlers
    @application.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
        logger.info(
            "Gateway error",
            status_code=exc.status_code,
            reason=type(exc).__name__,
            path=str(request.url.path),
        )
        return build_error_response(exc)

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


