"""
api/routes/v1/auth.py -- Login, token rotation and session endpoints.

Routes:
  POST /api/v1/auth/login    -- identifier + secret; access token in body, refresh token in cookie
  POST /api/v1/auth/refresh  -- rotate the refresh token; cookie preferred, body fallback
  POST /api/v1/auth/logout   -- revoke the presented refresh token; always 200
  GET  /api/v1/auth/csrf     -- issue a signed CSRF token (cookie + body)
  GET  /api/v1/auth/status   -- is the Bearer token valid? never errors
  GET  /api/v1/auth/me       -- identity, role and effective permissions (requires auth)

Security:
  [C1] CredentialVerifier runs one bcrypt comparison on every path.
  [H2] Login is throttled per client IP (LOGIN_MAX_ATTEMPTS / LOGIN_WINDOW_SECONDS).
  [M5] Cache-Control: no-store on every response carrying a token.
  Every credential or token failure returns one generic body per route. The
  precise AuthError only reaches the logs.
  Refresh channel: when the cookie is present it wins and the body is
  ignored; the cookie channel additionally requires a valid CSRF header.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.models import CsrfResponse, LoginRequest, MeResponse, RefreshRequest, StatusResponse, TokenResponse
from auth.credentials import CredentialVerifier
from auth.csrf import generate_csrf_token
from auth.dependencies import (
    authenticate,
    clear_refresh_cookie,
    client_info,
    require_csrf,
    set_csrf_cookie,
    set_refresh_cookie,
    try_authenticate,
)
from auth.errors import AuthError, Err
from auth.models import RequestContext, TokenPair
from auth.tokens import TokenService
from core.config import get_settings

logger = logging.getLogger("orgwarden.api")

# Auth policy:
# - POST /auth/login:    public
# - POST /auth/refresh:  public -- the refresh token is the credential
# - POST /auth/logout:   public -- revoking needs nothing but the token itself
# - GET  /auth/csrf:     public
# - GET  /auth/status:   public
# - GET  /auth/me:       requires auth (authenticate)
router = APIRouter()

_BAD_CREDENTIALS = {"code": "invalid_credentials", "message": "Invalid identifier or secret."}
_BAD_SESSION = {"code": "invalid_session", "message": "Session is invalid or has expired."}


def _token_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=pair.access_expires_in,
            principal_id=pair.principal_id,
            identifier=pair.display_identifier,
        ).model_dump(),
    )
    set_refresh_cookie(resp, pair.refresh_token, pair.refresh_expires_in)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _error(status_code: int, error: dict, headers: Optional[dict] = None) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": error}, headers=headers)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with identifier and secret.

    Wrong identifier, wrong secret and inactive account all return the same
    401 body. A throttled client gets 429 with Retry-After before any
    credential work is done.
    """
    verifier: CredentialVerifier = request.app.state.verifier
    result = verifier.login(body.identifier, body.secret, body.remember, client_info(request))

    if isinstance(result, Err):
        if result.error is AuthError.RATE_LIMITED:
            return _error(
                429,
                {"code": "rate_limited", "message": "Too many login attempts."},
                headers={"Retry-After": str(result.retry_after)},
            )
        return _error(401, _BAD_CREDENTIALS)

    return _token_response(result.value.tokens)


# ---------------------------------------------------------------------------
# Refresh / logout
# ---------------------------------------------------------------------------


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is consumed."""
    settings = get_settings()
    presented = request.cookies.get(settings.refresh_cookie_name)
    if presented:
        require_csrf(request)
    else:
        presented = body.refresh_token if body else None
    if not presented:
        return _error(401, _BAD_SESSION)

    tokens: TokenService = request.app.state.token_service
    result = tokens.refresh(presented)
    if isinstance(result, Err):
        logger.info("Refresh failed: %s", result.error.value)
        if result.reuse_detected:
            client = client_info(request)
            request.app.state.audit.record(
                actor_id=result.detail.get("principal_id"),
                action="token_reuse_detected",
                entity_type="refresh_token_family",
                entity_id=result.detail.get("family_id"),
                metadata={"token_id": result.detail.get("token_id")},
                ip_address=client.ip_address,
                user_agent=client.user_agent,
            )
        resp = _error(401, _BAD_SESSION)
        clear_refresh_cookie(resp)
        return resp

    return _token_response(result.value)


@router.post("/auth/logout")
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the presented refresh token and clear the cookie.

    Always 200, whether the token was live, already revoked, unknown or
    missing, so the endpoint cannot be used to test tokens.
    """
    settings = get_settings()
    presented = request.cookies.get(settings.refresh_cookie_name) or (body.refresh_token if body else None)

    tokens: TokenService = request.app.state.token_service
    principal_id = tokens.revoke(presented)
    if principal_id is not None:
        client = client_info(request)
        request.app.state.audit.record(
            actor_id=principal_id,
            action="logout",
            entity_type="principal",
            entity_id=principal_id,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )

    resp = JSONResponse(content={"message": "Logged out."})
    clear_refresh_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# CSRF / status / me
# ---------------------------------------------------------------------------


@router.get("/auth/csrf", response_model=CsrfResponse)
def csrf(request: Request) -> JSONResponse:
    """Issue a fresh signed CSRF token as both a readable cookie and a body field."""
    settings = get_settings()
    token = generate_csrf_token(settings.secret_key)
    resp = JSONResponse(
        content=CsrfResponse(
            csrf_token=token,
            csrf_header=settings.csrf_header_name,
            csrf_cookie=settings.csrf_cookie_name,
            csrf_ttl=settings.csrf_ttl_seconds,
        ).model_dump()
    )
    set_csrf_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/status", response_model=StatusResponse)
def status(request: Request) -> StatusResponse:
    ctx = try_authenticate(request)
    if ctx is None:
        return StatusResponse(authenticated=False)
    return StatusResponse(authenticated=True, principal_id=ctx.principal_id, identifier=ctx.display_identifier)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, ctx: RequestContext = Depends(authenticate)) -> MeResponse:
    """Return identity, active role and effective permissions of the caller."""
    store = request.app.state.principal_store
    assignment = store.active_assignment(ctx.principal_id)
    role = store.get_role(assignment.role_id) if assignment else None
    if assignment is not None and role is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "Assigned role not found."},
        )
    return MeResponse(
        principal_id=ctx.principal_id,
        identifier=ctx.display_identifier,
        role=role.name if role else None,
        permissions=sorted(p.value for p in ctx.permissions),
    )
