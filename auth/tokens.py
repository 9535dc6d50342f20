"""
auth/tokens.py -- Token Service: access-token signing and refresh-token rotation.

Security design decisions:
  Access tokens: python-jose with HS256. Signed with SECRET_KEY and carry
       principal_id, display_identifier, iat and exp. Verification is purely
       computational -- no store lookup -- so it scales with request volume
       and stays valid until exp even if the refresh family is revoked. Keep
       ACCESS_TOKEN_TTL_SECONDS short for that reason.

  Refresh tokens: opaque "<token_id>.<secret>" strings. token_id is the
       lookup key; the secret is stored only as HMAC-SHA256(SECRET_KEY,
       secret), the same scheme used for any long random credential where
       bcrypt's slowness buys nothing. A leaked database row cannot be
       replayed.

  Rotation: every refresh consumes the presented token and issues a new one in
       the same family. Presenting a consumed (rotated) or revoked token means
       two parties hold it -- the legitimate client and a thief -- so the
       whole family is revoked and both must log in again.

  Results: every public method returns Ok/Err from auth/errors.py. The precise
       failure kind is logged here; the route layer decides what to reveal.

Layer rule: no imports from api/ or audit/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import AuthError, Err, Ok, Result
from auth.models import Claims, Principal, RefreshTokenRecord, TokenPair
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import PrincipalStore
    from auth.token_store import TokenStore

logger = logging.getLogger("orgwarden.tokens")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "access"
_REFRESH_RE = re.compile(r"^([0-9a-f]{32})\.([A-Za-z0-9_-]{20,128})$")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    principal_id: int, display_identifier: str, secret_key: str, ttl_seconds: int
) -> tuple[str, datetime]:
    """Encode a signed access token. Returns (token, expires_at)."""
    issued = datetime.now(timezone.utc)
    expires = issued + timedelta(seconds=ttl_seconds)
    payload = {
        "sub": display_identifier,
        "pid": principal_id,
        "typ": _TOKEN_TYPE,
        "iat": issued,
        "exp": expires,
    }
    return jwt.encode(payload, secret_key, algorithm=_ALGORITHM), expires


def decode_access_token(token: str, secret_key: str) -> Result[Claims]:
    """Verify signature and expiry of an access token.

    ExpiredSignatureError is a JWTError subclass, so it must be caught first
    to keep "expired" distinct from "malformed" in the logs.
    """
    try:
        payload = jwt.decode(token, secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError:
        return Err(AuthError.TOKEN_EXPIRED)
    except JWTError:
        return Err(AuthError.TOKEN_MALFORMED)
    if payload.get("typ") != _TOKEN_TYPE or not isinstance(payload.get("pid"), int) or "sub" not in payload:
        return Err(AuthError.TOKEN_MALFORMED)
    return Ok(
        Claims(
            principal_id=payload["pid"],
            display_identifier=payload["sub"],
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )
    )


# ---------------------------------------------------------------------------
# Refresh-token encoding
# ---------------------------------------------------------------------------


def hash_refresh_secret(secret: str, secret_key: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, secret) as hex.

    Deterministic, so the stored value can be compared directly; keyed, so a
    database dump alone is not enough to forge a match.
    """
    return hmac.new(secret_key.encode(), secret.encode(), hashlib.sha256).hexdigest()


def _parse_refresh_token(raw: str) -> Optional[tuple[str, str]]:
    match = _REFRESH_RE.match(raw or "")
    if match is None:
        return None
    return match.group(1), match.group(2)


def _parse_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Token Service
# ---------------------------------------------------------------------------


class TokenService:
    """Issues, verifies, rotates and revokes access/refresh token pairs.

    Usage:
        service = TokenService(token_store, principal_store)
        pair = service.issue(principal, remember=False)
        result = service.verify_access(pair.access_token)
        result = service.refresh(pair.refresh_token)
        service.revoke(pair.refresh_token)
    """

    def __init__(
        self,
        store: TokenStore,
        principals: PrincipalStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.principals = principals
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, principal: Principal, remember: bool = False) -> TokenPair:
        """Start a new refresh family for principal and sign an access token."""
        raw_refresh, record = self._new_refresh(principal.id, uuid.uuid4().hex, remember)
        self.store.insert(record)
        logger.info("Issued token family %s for principal %d", record.family_id, principal.id)
        return self._pair(principal, raw_refresh, remember)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_access(self, token: str) -> Result[Claims]:
        result = decode_access_token(token, self.settings.secret_key)
        if isinstance(result, Err):
            logger.debug("Access token rejected: %s", result.error.value)
        return result

    # ------------------------------------------------------------------
    # Refresh (rotation)
    # ------------------------------------------------------------------

    def refresh(self, presented: str) -> Result[TokenPair]:
        """Consume presented and return a new pair in the same family.

        Failure kinds:
          TOKEN_MALFORMED -- bad shape, or the secret does not match the record.
          TOKEN_REVOKED   -- unknown id, already rotated, revoked, lost a
                             concurrent rotation, or the principal is inactive.
                             reuse_detected=True when a live family was burned.
          TOKEN_EXPIRED   -- past expires_at.
        """
        parsed = _parse_refresh_token(presented)
        if parsed is None:
            logger.info("Refresh rejected: malformed token")
            return Err(AuthError.TOKEN_MALFORMED)
        token_id, secret = parsed

        record = self.store.get(token_id)
        if record is None:
            logger.info("Refresh rejected: unknown token id")
            return Err(AuthError.TOKEN_REVOKED)
        if not hmac.compare_digest(record.secret_hash, hash_refresh_secret(secret, self.settings.secret_key)):
            logger.warning("Refresh rejected: secret mismatch for token %s", token_id)
            return Err(AuthError.TOKEN_MALFORMED)

        if record.rotated_to is not None or record.revoked:
            return self._reuse_detected(record)

        if _parse_iso(record.expires_at) <= datetime.now(timezone.utc):
            logger.info("Refresh rejected: token %s expired", token_id)
            return Err(AuthError.TOKEN_EXPIRED)

        principal = self.principals.get_by_id(record.principal_id)
        if principal is None or not principal.is_active:
            self.store.revoke_family(record.family_id)
            logger.warning("Refresh rejected: principal %d inactive, family revoked", record.principal_id)
            return Err(AuthError.TOKEN_REVOKED, detail={"principal_id": record.principal_id})

        raw_refresh, successor = self._new_refresh(principal.id, record.family_id, record.remember)
        if not self.store.mark_rotated(token_id, successor):
            # Another request rotated this token between our read and our write.
            return self._reuse_detected(record)

        logger.info("Rotated token %s -> %s (family %s)", token_id, successor.token_id, record.family_id)
        return Ok(self._pair(principal, raw_refresh, record.remember))

    def _reuse_detected(self, record: RefreshTokenRecord) -> Err:
        revoked = self.store.revoke_family(record.family_id)
        logger.warning(
            "Refresh token reuse detected: token %s family %s principal %d (%d tokens revoked)",
            record.token_id,
            record.family_id,
            record.principal_id,
            revoked,
        )
        return Err(
            AuthError.TOKEN_REVOKED,
            reuse_detected=True,
            detail={"principal_id": record.principal_id, "family_id": record.family_id, "token_id": record.token_id},
        )

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, presented: Optional[str]) -> Optional[int]:
        """Logout. Always succeeds; returns the owning principal_id when a live token was revoked.

        Malformed, unknown and already-revoked tokens are silent no-ops so the
        response cannot be used to probe whether a token is valid.
        """
        parsed = _parse_refresh_token(presented or "")
        if parsed is None:
            return None
        token_id, secret = parsed
        record = self.store.get(token_id)
        if record is None:
            return None
        if not hmac.compare_digest(record.secret_hash, hash_refresh_secret(secret, self.settings.secret_key)):
            return None
        if self.store.revoke(token_id):
            logger.info("Revoked token %s (family %s)", token_id, record.family_id)
            return record.principal_id
        return None

    def revoke_all(self, principal_id: int) -> int:
        count = self.store.revoke_principal(principal_id)
        logger.info("Revoked %d refresh tokens for principal %d", count, principal_id)
        return count

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _refresh_ttl(self, remember: bool) -> int:
        if remember:
            return self.settings.refresh_token_remember_ttl_seconds
        return self.settings.refresh_token_ttl_seconds

    def _new_refresh(self, principal_id: int, family_id: str, remember: bool) -> tuple[str, RefreshTokenRecord]:
        token_id = uuid.uuid4().hex
        secret = secrets.token_urlsafe(32)
        issued = datetime.now(timezone.utc)
        record = RefreshTokenRecord(
            token_id=token_id,
            principal_id=principal_id,
            family_id=family_id,
            secret_hash=hash_refresh_secret(secret, self.settings.secret_key),
            issued_at=issued.isoformat(),
            expires_at=(issued + timedelta(seconds=self._refresh_ttl(remember))).isoformat(),
            remember=remember,
        )
        return f"{token_id}.{secret}", record

    def _pair(self, principal: Principal, raw_refresh: str, remember: bool) -> TokenPair:
        access, _expires = create_access_token(
            principal.id,
            principal.display_identifier,
            self.settings.secret_key,
            self.settings.access_token_ttl_seconds,
        )
        return TokenPair(
            access_token=access,
            access_expires_in=self.settings.access_token_ttl_seconds,
            refresh_token=raw_refresh,
            refresh_expires_in=self._refresh_ttl(remember),
            principal_id=principal.id,
            display_identifier=principal.display_identifier,
        )
