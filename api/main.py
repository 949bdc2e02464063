"""
api/main.py -- FastAPI application entry point for the CRM identity service.

Run with:  uvicorn asgi:app --reload

Lifespan builds every service explicitly from Settings and one shared Engine
(build_services) and stores them on app.state. Route handlers and
dependencies read app.state; nothing reaches for a module-level singleton,
so tests swap in their own services by replacing the lifespan.

Lifespan also starts the maintenance loop (idle-session sweep + revocation
pruning) and cancels it symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.integrations import router as integrations_router
from auth.errors import AuthError
from auth.revocation import RevocationStore
from auth.service import AuthenticationOrchestrator
from auth.sessions import SessionRegistry
from auth.store import UserStore
from auth.tokens import TokenAuthority
from core.config import Settings, get_settings
from core.database import create_db_engine
from core.geo import build_geo_locator
from integrations.broker import ExternalTokenBroker
from integrations.store import IntegrationTokenStore

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("crmidentity.api")

# ---------------------------------------------------------------------------
# Service assembly
# ---------------------------------------------------------------------------


@dataclass
class Services:
    settings: Settings
    engine: Engine
    users: UserStore
    sessions: SessionRegistry
    tokens: TokenAuthority
    orchestrator: AuthenticationOrchestrator
    broker: ExternalTokenBroker

    def close(self) -> None:
        self.engine.dispose()


def build_services(settings: Settings, engine: Engine | None = None) -> Services:
    """Construct every service over one Engine. Shared by the API and the CLI."""
    engine = engine or create_db_engine(settings.database_url)
    users = UserStore(engine)
    sessions = SessionRegistry(
        users,
        geo=build_geo_locator(settings.geo_lookup_url, settings.geo_lookup_timeout_seconds),
        suspicious_window=timedelta(minutes=settings.suspicious_window_minutes),
        location_threshold=settings.suspicious_location_threshold,
    )
    tokens = TokenAuthority(settings, RevocationStore(engine))
    return Services(
        settings=settings,
        engine=engine,
        users=users,
        sessions=sessions,
        tokens=tokens,
        orchestrator=AuthenticationOrchestrator(users, sessions, tokens),
        broker=ExternalTokenBroker(settings, IntegrationTokenStore(engine)),
    )


def attach_services(app: FastAPI, services: Services) -> None:
    app.state.services = services
    app.state.settings = services.settings
    app.state.orchestrator = services.orchestrator
    app.state.broker = services.broker


# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


def run_maintenance(services: Services) -> tuple[int, int]:
    """Sweep idle sessions and prune expired revocations. Returns (swept, pruned)."""
    swept = services.sessions.sweep_idle(services.settings.session_idle_timeout_minutes)
    pruned = services.tokens.prune_revocations()
    return swept, pruned


async def _maintenance_loop(app: FastAPI) -> None:
    """Run maintenance every MAINTENANCE_INTERVAL_SECONDS.

    Both jobs are idempotent and only perform monotonic transitions, so a run
    overlapping live requests (or another instance's run) is harmless. The
    blocking DB work runs in a worker thread to keep the event loop free.
    A failed run is logged and retried on the next tick.
    """
    services: Services = app.state.services
    while True:
        await asyncio.sleep(services.settings.maintenance_interval_seconds)
        try:
            await asyncio.to_thread(run_maintenance, services)
        except Exception:
            logger.exception("Maintenance run failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup; stop the maintenance loop and dispose the engine on shutdown."""
    logger.info("Identity API starting up")
    services = build_services(get_settings())
    attach_services(app, services)
    if not services.settings.hubspot_configured:
        logger.warning("HUBSPOT_CLIENT_ID/SECRET not set -- partner integration endpoints will return 503")
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(app))

    yield

    app.state.maintenance_task.cancel()
    services.close()
    logger.info("Identity API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CRM Identity API",
    description="Token, session and permission control plane with partner OAuth brokering.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(integrations_router, prefix="/api/v1", tags=["Integrations"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map every domain error kind to its status code and stable error code.

    Token and credential failures get WWW-Authenticate so clients know to
    re-authenticate rather than retry.
    """
    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.code, message=exc.message, detail=exc.detail),
        ).model_dump(),
    )
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)),
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred."),
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
