"""
api/main.py -- FastAPI application entry point for the BlogAPI auth service.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (store, auth components, token cleanup task) and
shutdown (cancel cleanup task, dispose engine) symmetrically.

Composition root: this is the only place that reads Settings and constructs
the auth components. Everything under auth/ receives explicit config objects
(TokenConfig, LedgerConfig, bcrypt rounds, admin role names).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from api.routes.roles import router as roles_router
from api.routes.users import router as users_router
from auth.credentials import CredentialStore
from auth.errors import AuthError, ErrorCode
from auth.ledger import LedgerConfig, RefreshTokenLedger
from auth.management import PermissionManager, PrincipalManager, RoleManager
from auth.rbac import RbacEvaluator
from auth.service import AuthService
from auth.store import AuthStore
from auth.tokens import TokenConfig, TokenIssuer
from core.config import Settings, get_settings

API_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("blogapi.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def install_services(app: FastAPI, settings: Settings, store: AuthStore) -> None:
    """Build every auth component from settings and attach it to app.state.

    Shared by the real lifespan and the test lifespan in tests/conftest.py, so
    tests exercise exactly the wiring production uses.
    """
    credentials = CredentialStore(rounds=settings.bcrypt_rounds)
    rbac = RbacEvaluator(store, settings.admin_role_names)
    issuer = TokenIssuer(
        TokenConfig(
            secret=settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            ttl=timedelta(minutes=settings.access_token_expire_minutes),
            algorithm=settings.jwt_algorithm,
        )
    )
    ledger = RefreshTokenLedger(store, LedgerConfig(ttl=timedelta(days=settings.refresh_token_expire_days)))

    app.state.store = store
    app.state.rbac = rbac
    app.state.token_issuer = issuer
    app.state.ledger = ledger
    app.state.auth_service = AuthService(store, credentials, rbac, issuer, ledger)
    app.state.role_manager = RoleManager(store)
    app.state.permission_manager = PermissionManager(store)
    app.state.principal_manager = PrincipalManager(store, credentials, ledger, rbac)


# ---------------------------------------------------------------------------
# Background token cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI, interval_seconds: int) -> None:
    """Hard-delete expired refresh tokens every interval_seconds.

    Runs as a background asyncio task started in lifespan startup. The DB work
    is pushed to a worker thread so the event loop never blocks on SQLite.
    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A database error is
    logged and the loop keeps going; the next pass retries.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(app.state.ledger.cleanup_expired)
        except SQLAlchemyError:
            logger.exception("Refresh token cleanup failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Store first -- creates the schema; every component depends on it.
      2. Components second -- wired by install_services().
      3. Cleanup task last -- references app.state.ledger.
    """
    settings = get_settings()
    logger.info("BlogAPI auth service starting up")
    store = AuthStore(settings.database_url)
    install_services(app, settings, store)
    logger.info("Auth initialized (has_users=%s)", store.has_users())
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app, settings.token_cleanup_interval_seconds))

    yield

    app.state.cleanup_task.cancel()
    store.close()
    logger.info("BlogAPI auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="BlogAPI",
    description="Blog content API -- authentication, refresh-token rotation, and role-based access control.",
    version=API_VERSION,
    lifespan=lifespan,
    # Interactive docs only in DEBUG; production exposes no schema browser.
    docs_url="/api/docs" if _settings.debug else None,
    redoc_url=None,
    openapi_url="/api/openapi.json" if _settings.debug else None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. Logs method, path, status
# and latency -- never headers or bodies, which carry tokens and passwords.
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
app.include_router(roles_router, prefix="/api", tags=["Roles & Permissions"])
app.include_router(users_router, prefix="/api", tags=["Users"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves the API in one envelope: {"error": {code, message, detail}}.
# AuthError codes come from auth/errors.py; the HTTP status is decided here.
# ---------------------------------------------------------------------------

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PRINCIPAL_NOT_FOUND: 404,
    ErrorCode.DUPLICATE_PRINCIPAL: 409,
    ErrorCode.UNAUTHORIZED: 403,
    ErrorCode.FORBIDDEN: 403,
}


def _error_response(
    status_code: int,
    code: str,
    message: str,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    envelope = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map a rejected management or authorization operation to its status code."""
    status_code = _STATUS_BY_CODE.get(exc.code, 400)
    if status_code == 403:
        logger.info("Denied %s %s: %s", request.method, request.url.path, exc.code.value)
    return _error_response(status_code, exc.code.value, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Fires for POST /api/auth/login bursts [H2]."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    retry_after = str(int(getattr(exc, "retry_after", 60)))
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        detail=str(exc),
        headers={"Retry-After": retry_after},
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema violations in the body or query string (wrong types, empty refresh token)."""
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for HTTPException raised by routes and dependencies.

    Routes raise with a {"code", "message"} dict as detail; that dict becomes
    the error field as-is. Plain string details are wrapped with an http_<status>
    code. Headers (WWW-Authenticate on 401) are passed through.
    """
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The traceback goes to the log, the client gets a generic 500."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    components = {"app": "ok", "database": "ok"}
    try:
        request.app.state.store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=API_VERSION, components=components)
