"""
auth/errors.py -- Failure taxonomy and explicit result types for auth operations.

Core auth components never raise for expected failures (wrong password,
expired token, reused refresh token). They return Ok(value) or Err(kind) so
every caller has to decide what each failure means for its response. Only
the HTTP boundary (auth/dependencies.py, api/routes/) turns an Err into an
HTTPException.

Usage:
    result = token_service.verify_access(raw)
    if isinstance(result, Err):
        logger.info("rejected: %s", result.error.value)
        ...
    claims = result.value

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class AuthError(str, Enum):
    """Every way an auth operation can fail.

    The value doubles as the log token. Response bodies never echo it to
    unauthenticated callers -- see api/routes/v1/auth.py for the generic
    messages actually returned.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_MALFORMED = "token_malformed"
    PERMISSION_DENIED = "permission_denied"
    AUDIT_WRITE_FAILURE = "audit_write_failure"  # internal only, never surfaced


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    """A failed operation.

    retry_after is only meaningful for RATE_LIMITED (seconds until the window
    resets). reuse_detected is set by TokenService.refresh() when the failure
    came from a rotated/revoked token being replayed, so the caller can write
    the security audit entry.
    """

    error: AuthError
    retry_after: int = 0
    reuse_detected: bool = False
    detail: dict = field(default_factory=dict)


Result = Union[Ok[T], Err]
