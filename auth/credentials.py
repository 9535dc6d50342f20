"""
auth/credentials.py -- Password hashing and the Credential Verifier (login).

Security design decisions:
  Passwords: bcrypt used directly (no passlib wrapper). Its cost factor makes
       brute-force of low-entropy secrets expensive.

  Timing equalization [C1]: _DUMMY_HASH is computed once at import so the
       unknown-identifier path runs exactly one bcrypt comparison, the same as
       the wrong-secret path. Response time does not reveal whether an
       identifier exists.

  Throttling: every attempt is counted with the limiter's atomic
       increment-and-check BEFORE the Credential Store is touched, so
       concurrent guesses cannot all slip in under the limit. Rejected
       attempts cost a counter increment, not a bcrypt round. A success
       clears the bucket, so only failures accumulate.

  Messages: every failure maps to INVALID_CREDENTIALS regardless of which
       part was wrong or whether the account is inactive.

Layer rule: no imports from api/. audit/ is referenced only for typing -- the
recorder instance is injected by the composition root.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import bcrypt

from auth.errors import AuthError, Err, Ok, Result
from auth.models import ClientInfo, Principal, TokenPair
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from audit.recorder import AuditRecorder
    from auth.ratelimit import RateLimiter
    from auth.store import PrincipalStore
    from auth.tokens import TokenService

logger = logging.getLogger("orgwarden.auth")

LOGIN_SCOPE = "login"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext secret.

    bcrypt truncates input beyond 72 bytes. The API layer caps secrets at
    255 characters; callers needing more should pre-hash.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext secret matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store.
        return False


_DUMMY_HASH: str = hash_password("orgwarden_timing_dummy")


# ---------------------------------------------------------------------------
# Credential Verifier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: TokenPair


class CredentialVerifier:
    """Authenticates login attempts and hands successful ones to the Token Service.

    Usage:
        verifier = CredentialVerifier(principal_store, token_service, rate_limiter, audit)
        result = verifier.login("jdoe", "correct-secret", remember=False, client=ClientInfo("203.0.113.7"))
    """

    def __init__(
        self,
        principals: PrincipalStore,
        tokens: TokenService,
        limiter: RateLimiter,
        audit: Optional[AuditRecorder] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.principals = principals
        self.tokens = tokens
        self.limiter = limiter
        self.audit = audit
        self.settings = settings or get_settings()

    def login(self, identifier: str, secret: str, remember: bool, client: ClientInfo) -> Result[LoginResult]:
        max_attempts = self.settings.login_max_attempts
        window = self.settings.login_window_seconds

        gate = self.limiter.allow(LOGIN_SCOPE, client.ip_address, max_attempts, window)
        if not gate.allowed:
            logger.warning("Login throttled for %s (retry in %ds)", client.ip_address, gate.retry_after)
            self._audit(None, "login_rate_limited", client, {"identifier": identifier})
            return Err(AuthError.RATE_LIMITED, retry_after=gate.retry_after)

        principal = self._authenticate(identifier, secret)
        if principal is None:
            logger.warning("Failed login for identifier %r from %s", identifier, client.ip_address)
            self._audit(None, "login_failed", client, {"identifier": identifier})
            return Err(AuthError.INVALID_CREDENTIALS)

        self.limiter.clear(LOGIN_SCOPE, client.ip_address)
        pair = self.tokens.issue(principal, remember=remember)
        self.principals.update_last_login(principal.id)
        self._audit(principal.id, "login", client, {"remember": remember})
        logger.info("Principal %d logged in from %s", principal.id, client.ip_address)
        return Ok(LoginResult(principal=principal, tokens=pair))

    def _authenticate(self, identifier: str, secret: str) -> Optional[Principal]:
        """Constant-work credential check [C1]. Returns the principal or None.

        Always runs bcrypt whether or not the identifier exists. The active
        flag is checked after the hash so inactive accounts take the same time
        as wrong secrets.
        """
        principal = self.principals.get_by_identifier(identifier)
        if principal is None:
            verify_password(secret, _DUMMY_HASH)
            return None
        if not verify_password(secret, principal.secret_hash):
            return None
        if not principal.is_active:
            return None
        return principal

    def _audit(self, actor_id: Optional[int], action: str, client: ClientInfo, metadata: dict) -> None:
        if self.audit is None:
            return
        self.audit.record(
            actor_id=actor_id,
            action=action,
            entity_type="principal",
            entity_id=actor_id,
            metadata=metadata,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
