"""
Gatekeeper — FastAPI Application Factory
==========================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance with
       the Gatekeeper stored on app.state.
Who:   uvicorn (`uvicorn gatekeeper.main:app --proxy-headers`) and the test suite.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware Chain (outermost first):                     │
    │  RequestID → Logging → Session → CSRF cookie → CORS      │
    │                                                          │
    │  Per-route dependencies (composer.py):                   │
    │  identity attach → CSRF check → rate limit → handler     │
    │                                                          │
    │  Exception Handlers:                                     │
    │  Unauthorized→401 │ Forbidden/CSRF→403 │ RateLimit→429   │
    │  LimiterUnavailable→503 │ anything else→500              │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration validation, startup banner
    Shutdown: close the counter store, dispose the database engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from gatekeeper import __version__
from gatekeeper.composer import Gatekeeper, build_gatekeeper
from gatekeeper.config import Settings, settings as default_settings
from gatekeeper.database import dispose_engine
from gatekeeper.exceptions import (
    ForbiddenError,
    GatekeeperError,
    RateLimitExceededError,
    RateLimiterUnavailableError,
    UnauthorizedError,
    UnknownPolicyError,
)
from gatekeeper.middleware.logging import RequestLoggingMiddleware
from gatekeeper.middleware.request_id import RequestIDMiddleware, request_id_var
from gatekeeper.routes import health, session
from gatekeeper.security.csrf import CSRFCookieMiddleware

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Security events arrive on `gatekeeper.security`, access lines on
    `gatekeeper.access`; both go through the same root handler.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: Settings = app.state.settings
    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("Gatekeeper %s starting (environment=%s)", __version__, config.environment)

    try:
        config.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        if config.is_production:
            raise

    gatekeeper: Gatekeeper = app.state.gatekeeper
    logger.info(
        "Counter store: %s | User store: %s | Policies: %s",
        type(gatekeeper.counter_store).__name__,
        type(gatekeeper.user_store).__name__,
        ", ".join(gatekeeper.catalog.names()),
    )
    logger.info("Server ready at http://%s:%d", config.backend_host, config.backend_port)
    logger.info("=" * 60)

    yield

    logger.info("Gatekeeper shutting down...")
    await gatekeeper.close()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def register_exception_handlers(app: FastAPI) -> None:
    """
    Map gatekeeping exceptions to status codes and JSON bodies.

    Handler hierarchy:
        UnauthorizedError            → 401 {"error": "Unauthorized"}
        ForbiddenError / CSRF        → 403 {"error": "Forbidden" | "Invalid CSRF token"}
        RateLimitExceededError       → 429 {"error", "code", "message"} + X-RateLimit-* + Retry-After
        RateLimiterUnavailableError  → 503 {"error", "code"} + Retry-After
        UnknownPolicyError           → 404 {"error": "not_found", "message"}
        GatekeeperError (base)       → 500
        Exception (fallback)         → 500

    Exception context is logged server-side only; it never reaches the body.
    """

    @app.exception_handler(UnauthorizedError)
    async def handle_unauthorized(request: Request, exc: UnauthorizedError):
        rid = request_id_var.get("")
        return JSONResponse(
            status_code=401,
            content={"error": exc.message, "request_id": rid},
        )

    @app.exception_handler(ForbiddenError)
    async def handle_forbidden(request: Request, exc: ForbiddenError):
        rid = request_id_var.get("")
        logger.warning("[%s] Forbidden: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=403,
            content={"error": exc.message, "request_id": rid},
        )

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        """Client exceeded a rate limit: tell them when they can retry."""
        rid = request_id_var.get("")
        headers = dict(exc.headers)
        headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(
            status_code=429,
            content={
                "error": exc.message,
                "code": exc.code,
                "message": exc.message,
                "request_id": rid,
            },
            headers=headers,
        )

    @app.exception_handler(RateLimiterUnavailableError)
    async def handle_limiter_unavailable(request: Request, exc: RateLimiterUnavailableError):
        rid = request_id_var.get("")
        logger.error("[%s] Rate limiter unavailable: %s", rid, exc.context)
        return JSONResponse(
            status_code=503,
            content={
                "error": exc.message,
                "code": exc.code,
                "request_id": rid,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(UnknownPolicyError)
    async def handle_unknown_policy(request: Request, exc: UnknownPolicyError):
        rid = request_id_var.get("")
        return JSONResponse(
            status_code=404,
            content={
                "error": "not_found",
                "message": exc.message,
                "request_id": rid,
            },
        )

    @app.exception_handler(GatekeeperError)
    async def handle_gatekeeper_error(request: Request, exc: GatekeeperError):
        rid = request_id_var.get("")
        logger.error("[%s] Gatekeeper error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content={
                "error": "server_error",
                "message": "An internal error occurred. Please try again later.",
                "request_id": rid,
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all: stack trace to the log, generic message to the client."""
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again or contact support.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    config: Optional[Settings] = None,
    gatekeeper: Optional[Gatekeeper] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Settings to use (defaults to the module-level singleton).
        gatekeeper: Pre-built Gatekeeper. Tests pass one with in-memory stores,
            a recording audit sink and a fixed clock.

    The Gatekeeper is built here rather than in the lifespan so that it exists
    even when the ASGI server never sends lifespan events.
    """
    config = config or default_settings

    app = FastAPI(
        title="Gatekeeper API",
        description="Identity resolution, CSRF protection and rate limiting for the web API.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.gatekeeper = gatekeeper or build_gatekeeper(config)

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added = first to execute.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    app.add_middleware(
        CSRFCookieMiddleware,
        paths=config.csrf_issue_paths_list,
        cookie_name=config.csrf_cookie_name,
        secure=config.is_production,
        max_age=config.csrf_cookie_max_age,
    )

    app.add_middleware(
        SessionMiddleware,
        secret_key=config.session_secret,
        session_cookie=config.session_cookie_name,
        max_age=config.session_max_age,
        same_site="lax",
        https_only=config.is_production,
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(health.router)
    app.include_router(session.router)

    return app


app = create_app()
