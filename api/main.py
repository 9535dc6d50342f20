"""
api/main.py -- FastAPI application entry point for OrgWarden.

Run with:      uvicorn asgi:app --reload

Middleware (Starlette wraps the last registered outermost):
  log_requests          -- one log line per request with latency, rejected requests included
  CORSMiddleware        -- adds CORS headers for allowed browser origins
  TrustedHostMiddleware -- rejects requests with unexpected Host headers

Throttling is not middleware: login is throttled inside CredentialVerifier
and every business router declares Depends(rate_limit()).

Lifespan builds every shared component once, wires them together and puts
them on app.state; routes and dependencies read them from there. Shutdown
cancels the purge task and disposes every engine.
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

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.budgets import router as budgets_router
from api.routes.v1.roles import router as roles_router
from audit.recorder import AuditRecorder
from auth.credentials import CredentialVerifier
from auth.ratelimit import RateLimiter
from auth.resolver import PermissionResolver
from auth.store import PrincipalStore
from auth.token_store import TokenStore
from auth.tokens import TokenService
from core.config import get_settings

VERSION = "0.1.0"
PURGE_INTERVAL_SECONDS = 6 * 60 * 60

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("orgwarden.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete long-expired refresh-token records every 6 hours.

    A failed pass is logged and retried on the next interval. CancelledError
    from task.cancel() during shutdown is not an Exception, so it propagates
    out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(PURGE_INTERVAL_SECONDS)
        try:
            removed = app.state.token_store.purge_expired()
        except Exception:
            logger.exception("Refresh-token purge failed; retrying in %ds", PURGE_INTERVAL_SECONDS)
            continue
        logger.info("Purged %d expired refresh tokens", removed)


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------


def wire_components(
    app: FastAPI,
    principal_store: PrincipalStore,
    token_store: TokenStore,
    audit: AuditRecorder,
    rate_limiter: RateLimiter,
) -> None:
    """Build the services on top of the given stores and put everything on app.state.

    The registry is synced before anything can resolve a permission.
    """
    settings = get_settings()
    principal_store.sync_registry()
    created = principal_store.seed_default_roles()
    if created:
        logger.info("Seeded %d default roles", created)

    app.state.audit = audit
    app.state.principal_store = principal_store
    app.state.token_store = token_store
    app.state.rate_limiter = rate_limiter
    app.state.token_service = TokenService(token_store, principal_store, settings)
    app.state.resolver = PermissionResolver(principal_store, audit)
    app.state.verifier = CredentialVerifier(principal_store, app.state.token_service, rate_limiter, audit, settings)


def build_components(app: FastAPI) -> None:
    """Create the stores from settings and wire them onto app.state."""
    settings = get_settings()
    wire_components(
        app,
        PrincipalStore(settings.database_url),
        TokenStore(settings.database_url),
        AuditRecorder(settings.database_url),
        RateLimiter.from_uri(settings.rate_limit_storage_uri),
    )


def close_components(app: FastAPI) -> None:
    app.state.token_store.close()
    app.state.principal_store.close()
    app.state.audit.close()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    logger.info("OrgWarden API starting up")
    build_components(app)
    if not app.state.principal_store.has_principals():
        logger.warning("No principals exist yet. Create one with: python manage.py create-principal")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    close_components(app)
    logger.info("OrgWarden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="OrgWarden API",
    description="Authentication, authorization and security audit for the organization management system.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", get_settings().csrf_header_name],
    max_age=3600,
)


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
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])
app.include_router(budgets_router, prefix="/api/v1", tags=["Budgets"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


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
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Dependencies raise HTTPException with a {"code", "message"} dict as
    detail; that dict becomes the error field. Headers (Retry-After,
    WWW-Authenticate) are passed through.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is logged with its traceback, never written to the
    response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit and no auth.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    database = "ok" if request.app.state.audit.ping() else "unavailable"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=VERSION,
        components={"database": database},
    )
