"""
auth/models.py -- Domain dataclasses for authentication and authorization entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these own the domain shape.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from auth.permissions import Permission


@dataclass
class Principal:
    """An actor that can authenticate (a member with a login).

    Principals are deactivated, never hard-deleted, while refresh tokens or
    audit entries reference them. secret_hash is a bcrypt hash.
    """

    display_identifier: str
    secret_hash: str
    id: Optional[int] = None
    is_active: bool = True
    created_at: str = ""  # ISO 8601, set by store on insert
    last_login: Optional[str] = None


@dataclass
class Role:
    name: str
    description: str = ""
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class RoleAssignment:
    """Binds a principal to a role.

    At most one row per principal has ended_at = None. Superseded rows keep
    their history (ended_at stamped) and are never deleted.
    """

    principal_id: int
    role_id: int
    assigned_at: str = ""
    assigned_by: Optional[int] = None
    ended_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class RefreshTokenRecord:
    """Server-side state for one refresh token.

    The client holds "<token_id>.<secret>". Only HMAC-SHA256(SECRET_KEY, secret)
    is stored, so a database leak does not yield usable tokens.

    States: active (rotated_to None, revoked False), rotated (rotated_to set),
    revoked (revoked True), expired (expires_at in the past). All but active
    are terminal.
    """

    token_id: str
    principal_id: int
    family_id: str
    secret_hash: str
    issued_at: str  # ISO 8601
    expires_at: str  # ISO 8601
    remember: bool = False
    rotated_to: Optional[str] = None
    revoked: bool = False


@dataclass(frozen=True)
class Claims:
    """Verified access-token payload."""

    principal_id: int
    display_identifier: str
    issued_at: int  # epoch seconds
    expires_at: int  # epoch seconds


@dataclass(frozen=True)
class TokenPair:
    """Result of issue() and refresh().

    refresh_token is the raw "<token_id>.<secret>" value. It leaves the
    process exactly once, in the Set-Cookie header.
    """

    access_token: str
    access_expires_in: int
    refresh_token: str
    refresh_expires_in: int
    principal_id: int
    display_identifier: str


@dataclass(frozen=True)
class ClientInfo:
    """Where a request came from. Threaded into audit entries and rate-limit keys."""

    ip_address: str = "unknown"
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class RequestContext:
    """Per-request identity, built once by the authenticate dependency.

    Handlers receive this explicitly via Depends(); nothing reads the current
    principal from a global. permissions is the resolved effective set at the
    moment the request was authenticated.
    """

    principal_id: int
    display_identifier: str
    client: ClientInfo
    permissions: frozenset[Permission] = field(default_factory=frozenset)

    def has(self, permission: Permission) -> bool:
        return permission in self.permissions
