"""
api/main.py -- FastAPI application entry point for App Budget.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds the one shared Engine and every store on top of it, plus
the process-local OIDC transaction store and the version checker, and
disposes of the engine on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthComponents, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.backup import router as backup_router
from api.routes.meta import router as meta_router
from api.routes.months import router as months_router
from api.routes.oidc import router as oidc_router
from api.routes.settings import router as settings_router
from api.routes.users import router as users_router
from appsettings.store import SettingsStore
from auth.oidc import InMemoryOidcStateStore, OidcBridge
from auth.store import UserStore
from budget.store import MonthStore
from core.config import get_settings
from core.db import create_db_engine
from core.errors import AppError
from core.version import VersionChecker

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("appbudget.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Application state
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, engine: Engine) -> None:
    """Attach every store and service to app.state on top of one Engine.

    Shared by the real lifespan and the test suite's replacement lifespan,
    so both wire the application the same way.
    """
    app.state.engine = engine
    app.state.user_store = UserStore(engine)
    app.state.settings_store = SettingsStore(engine)
    app.state.month_store = MonthStore(engine)
    app.state.oidc_states = InMemoryOidcStateStore(ttl_seconds=settings.oidc_state_ttl_seconds)
    app.state.oidc = OidcBridge(app.state.user_store, app.state.oidc_states)
    app.state.version_checker = VersionChecker(
        settings.app_version,
        settings.version_registry_url,
        settings.version_check_ttl_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. A store failing to create its tables aborts startup: the app
    is useless without its database.
    """
    logger.info("App Budget API starting up (version %s)", settings.app_version)
    engine = create_db_engine(settings.resolved_database_url)
    init_state(app, engine)
    logger.info(
        "Stores initialized (dialect=%s, has_users=%s)",
        engine.dialect.name,
        app.state.user_store.has_users(),
    )

    yield

    engine.dispose()
    logger.info("App Budget API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="App Budget API",
    description="Shared household budget: accounts, settings, month data, and backups.",
    version=settings.app_version,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST call ends up
# outermost. Registered innermost-first: SlowAPI -> CORS -> TrustedHost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_host_list)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every request passes through this coroutine before reaching any route
# handler. Wall-clock time before and after call_next gives the latency.
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

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(oidc_router, prefix="/api", tags=["OIDC"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(settings_router, prefix="/api", tags=["Settings"])
app.include_router(months_router, prefix="/api", tags=["Months"])
app.include_router(backup_router, prefix="/api", tags=["Backup"])
app.include_router(meta_router, prefix="/api", tags=["Meta"])

# Avatars are written under UPLOADS_DIR/avatars by api/routes/users.py.
Path(settings.uploads_dir, "avatars").mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.uploads_dir), name="uploads")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render a domain error with its own status and code.

    Server-side misconfiguration is logged at ERROR: it needs an operator,
    not a retry.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.code, exc.message, exc.detail)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when request body or query params fail validation."""
    return _error_response(400, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response
    body: query text and stack traces stay on the server.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
def health(request: Request):
    """Return liveness, version, and a database round-trip check (503 if it fails)."""
    engine: Engine = request.app.state.engine
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        body = HealthResponse(
            status="unhealthy",
            version=settings.app_version,
            components=HealthComponents(database="error"),
        )
        return JSONResponse(status_code=503, content=body.model_dump())
    return HealthResponse(version=settings.app_version)
