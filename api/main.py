"""
api/main.py -- FastAPI application entry point for SecurePower.

Exposes the escalation engine over HTTP so device clients can set up and check
credentials, report triggers and stream locations, and operators can manage
users, devices and events.

Run with:      python main.py serve
               uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (service graph, session sweep task) and shutdown
(cancel sweep task, close DB connections) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.alerts import router as alerts_router
from api.routes.v1.credentials import router as credentials_router
from api.routes.v1.devices import router as devices_router
from api.routes.v1.tracking import router as tracking_router
from api.services import Services, build_services
from core.config import get_settings
from core.errors import InvalidCredentialFormat, SessionClosedError, SessionNotFoundError, UnrecoverableEventError

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("securepower.api")

# ---------------------------------------------------------------------------
# Background session sweep
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval_seconds: int) -> None:
    """Expire over-age tracking sessions on a fixed interval.

    Appends already run the age check, but a device that stops reporting
    would otherwise keep its session (and its "security_alert" status)
    forever. The sweep itself is blocking DB work, so it runs in a thread.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.tracking.expire_stale)
        except Exception:
            logger.exception("Session sweep failed")


def _attach_services(app: FastAPI, services: Services) -> None:
    app.state.services = services
    app.state.credential_store = services.credential_store
    app.state.alert_store = services.alert_store
    app.state.gate = services.gate
    app.state.tracking = services.tracking
    app.state.orchestrator = services.orchestrator


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The sweep task starts last because it references
    app.state.tracking.
    """
    settings = get_settings()
    logger.info("SecurePower API starting up")
    services = build_services(settings)
    _attach_services(app, services)
    logger.info(
        "Gate: threshold=%d lockout=%ds; tracking: cap=%d max_age=%dh",
        settings.failed_attempt_threshold,
        settings.lockout_seconds,
        settings.location_retention_cap,
        settings.session_max_age_hours,
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.session_sweep_interval_seconds))

    yield

    app.state.sweep_task.cancel()
    services.close()
    logger.info("SecurePower API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SecurePower API",
    description="Power-off credential gate, security alert fan-out and location tracking.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["localhost", "127.0.0.1", "*.localhost"],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-API-Key"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


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

app.include_router(credentials_router, prefix="/api/v1", tags=["Credentials"])
app.include_router(devices_router, prefix="/api/v1", tags=["Devices"])
app.include_router(alerts_router, prefix="/api/v1", tags=["Alerts"])
app.include_router(tracking_router, prefix="/api/v1", tags=["Tracking"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(InvalidCredentialFormat)
async def invalid_credential_handler(request: Request, exc: InvalidCredentialFormat) -> JSONResponse:
    return _error(422, "invalid_credential_format", str(exc))


@app.exception_handler(UnrecoverableEventError)
async def unrecoverable_event_handler(request: Request, exc: UnrecoverableEventError) -> JSONResponse:
    return _error(422, "unrecoverable_event", "The event could not be processed.", str(exc))


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError) -> JSONResponse:
    return _error(404, "not_found", f"Tracking session {exc.args[0] if exc.args else ''} not found.")


@app.exception_handler(SessionClosedError)
async def session_closed_handler(request: Request, exc: SessionClosedError) -> JSONResponse:
    return _error(409, "session_closed", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it -- str(dict) produces a Python repr,
    not JSON.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    Security note: the raw exception is written to the log only, never to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and a database round-trip check."""
    database = "ok"
    try:
        with request.app.state.alert_store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )
