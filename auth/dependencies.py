"""
auth/dependencies.py -- FastAPI Depends() helpers: the Request Gate.

Business routes declare what they need and receive an explicit
RequestContext; nothing reads the current principal from a global.

  client_info()          -- ClientInfo (IP, user agent) for audit and throttling.
  try_authenticate()     -- soft variant, returns None on any failure.
  authenticate()         -- raises HTTP 401 if the Bearer token is not valid.
  require_permission(p)  -- authenticate, then HTTP 403 unless p is granted.
  rate_limit(scope)      -- HTTP 429 + Retry-After once the scope's window is full.
  require_csrf()         -- double-submit check for cookie-channel refresh.

Only the Authorization: Bearer header is accepted for access tokens. The
refresh token travels in an httpOnly cookie scoped to /api/v1/auth and is
never accepted as an access credential.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because this module is part of the FastAPI dependency injection
system.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from fastapi import HTTPException, Request, Response

from auth.csrf import validate_csrf_token
from auth.errors import Err
from auth.models import ClientInfo, RequestContext
from auth.permissions import Permission
from core.config import get_settings

logger = logging.getLogger("orgwarden.auth")

_UNAUTHORIZED = {"code": "unauthorized", "message": "Authentication required."}
_FORBIDDEN = {"code": "forbidden", "message": "Insufficient permissions."}


def client_info(request: Request) -> ClientInfo:
    """Return where the request came from. Never raises."""
    host = request.client.host if request.client else "unknown"
    return ClientInfo(ip_address=host, user_agent=request.headers.get("User-Agent"))


def bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_authenticate(request: Request) -> Optional[RequestContext]:
    """Build a RequestContext from the Bearer token, or None.

    The token signature and expiry are checked without a store lookup. The
    principal row is still read so that a deactivated account loses access
    on its next request instead of when the access token expires.
    """
    token = bearer_token(request)
    if not token:
        return None

    result = request.app.state.token_service.verify_access(token)
    if isinstance(result, Err):
        return None
    claims = result.value

    principal = request.app.state.principal_store.get_by_id(claims.principal_id)
    if principal is None or not principal.is_active:
        logger.info("Access token for inactive or missing principal %d rejected", claims.principal_id)
        return None

    return RequestContext(
        principal_id=principal.id,
        display_identifier=principal.display_identifier,
        client=client_info(request),
        permissions=request.app.state.resolver.resolve_effective(principal.id),
    )


def authenticate(request: Request) -> RequestContext:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(ctx: RequestContext = Depends(authenticate)): ...
    """
    ctx = try_authenticate(request)
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail=_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return ctx


def require_permission(permission: Permission) -> Callable[[Request], RequestContext]:
    """Dependency factory: authenticate, then check one permission.

    The 403 body never names the missing key.

        @router.post("/budgets/{id}/review")
        def review(ctx: RequestContext = Depends(require_permission(Permission.BUDGETS_APPROVE))): ...
    """
    if not isinstance(permission, Permission):
        raise TypeError(f"require_permission() expects a Permission, got {type(permission).__name__}")

    def dependency(request: Request) -> RequestContext:
        ctx = authenticate(request)
        if not request.app.state.resolver.authorize(ctx.principal_id, permission):
            logger.info(
                "Permission denied: principal=%d permission=%s path=%s",
                ctx.principal_id,
                permission.value,
                request.url.path,
            )
            raise HTTPException(status_code=403, detail=_FORBIDDEN)
        return ctx

    return dependency


def rate_limit(scope: Optional[str] = None) -> Callable[[Request], None]:
    """Dependency factory: count one request against scope (default api:<path template>) per IP."""

    def dependency(request: Request) -> None:
        settings = get_settings()
        route = request.scope.get("route")
        name = scope or f"api:{getattr(route, 'path', request.url.path)}"
        decision = request.app.state.rate_limiter.allow(
            name,
            client_info(request).ip_address,
            settings.api_rate_limit,
            settings.api_rate_window_seconds,
        )
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail={"code": "rate_limited", "message": "Too many requests."},
                headers={"Retry-After": str(decision.retry_after)},
            )

    return dependency


def require_csrf(request: Request) -> None:
    """Raise HTTP 403 unless the CSRF header matches the signed CSRF cookie."""
    settings = get_settings()
    if not settings.csrf_protection:
        return
    valid = validate_csrf_token(
        request.headers.get(settings.csrf_header_name),
        request.cookies.get(settings.csrf_cookie_name),
        settings.secret_key,
        settings.csrf_ttl_seconds,
    )
    if not valid:
        logger.warning("CSRF validation failed on %s from %s", request.url.path, client_info(request).ip_address)
        raise HTTPException(
            status_code=403,
            detail={"code": "csrf_failed", "message": "CSRF validation failed."},
        )


# ---------------------------------------------------------------------------
# Cookies
# ---------------------------------------------------------------------------


def set_refresh_cookie(response: Response, refresh_token: str, max_age: int) -> None:
    """Attach the refresh token as an httpOnly, SameSite=strict cookie.

    Scoped to the auth path so it is not sent with ordinary API calls.
    """
    settings = get_settings()
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=refresh_token,
        max_age=max_age,
        path=settings.refresh_cookie_path,
        domain=settings.cookie_domain or None,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=settings.cookie_domain or None,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="strict",
    )


def set_csrf_cookie(response: Response, token: str) -> None:
    """Readable by script (not httpOnly) so the client can echo it in the header."""
    settings = get_settings()
    response.set_cookie(
        key=settings.csrf_cookie_name,
        value=token,
        max_age=settings.csrf_ttl_seconds,
        path="/",
        domain=settings.cookie_domain or None,
        httponly=False,
        secure=settings.secure_cookies,
        samesite="strict",
    )
