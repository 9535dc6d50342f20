"""
API request and response models for OrgWarden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: auth/ and audit/ models = domain truth; api/ models = API contract.
"""

from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.permissions import parse_keys

# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    secret is capped at 255 characters so a multi-megabyte body cannot be fed
    to bcrypt.
    """

    identifier: str = Field(min_length=1, max_length=255)
    secret: str = Field(min_length=1, max_length=255)
    remember: bool = False

    @field_validator("identifier")
    @classmethod
    def strip_identifier(cls, v: str) -> str:
        return v.strip()


class RefreshRequest(BaseModel):
    """Optional body for /auth/refresh and /auth/logout when no cookie is available."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    principal_id: int
    identifier: str


class StatusResponse(BaseModel):
    authenticated: bool
    principal_id: Optional[int] = None
    identifier: Optional[str] = None


class MeResponse(BaseModel):
    principal_id: int
    identifier: str
    role: Optional[str] = None
    permissions: list[str]


class CsrfResponse(BaseModel):
    csrf_token: str
    csrf_header: str
    csrf_cookie: str
    csrf_ttl: int


class MessageResponse(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    id: int
    actor_principal_id: Optional[int] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    changes: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str


class Pagination(BaseModel):
    current_page: int
    per_page: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, per_page: int, total: int) -> "Pagination":
        total_pages = (total + per_page - 1) // per_page if total else 0
        return cls(
            current_page=page,
            per_page=per_page,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class PaginatedAuditResponse(BaseModel):
    status: str = "success"
    message: str = ""
    data: list[AuditEntryResponse]
    pagination: Pagination


class AuditListResponse(BaseModel):
    data: list[AuditEntryResponse]


class AuditSearchParams(BaseModel):
    """Query parameters for GET /api/v1/audit/search."""

    actor_id: Optional[int] = None
    action: Optional[str] = Field(default=None, max_length=100)
    entity_type: Optional[str] = Field(default=None, max_length=100)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=100)


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


class PermissionResponse(BaseModel):
    key: str
    description: str


class RoleResponse(BaseModel):
    id: int
    name: str
    description: str
    permissions: list[str]


class RoleCreate(BaseModel):
    """Request body for POST /api/v1/roles.

    Permission keys are validated against the registry here, so an unknown
    key is a 422 and never reaches the store.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    description: str = Field(default="", max_length=500)
    permissions: list[str] = Field(default_factory=list)

    @field_validator("permissions")
    @classmethod
    def known_keys(cls, v: list[str]) -> list[str]:
        parse_keys(v)
        return sorted(set(v))


class RolePermissionsUpdate(BaseModel):
    permissions: list[str]

    @field_validator("permissions")
    @classmethod
    def known_keys(cls, v: list[str]) -> list[str]:
        parse_keys(v)
        return sorted(set(v))


class RoleAssignmentRequest(BaseModel):
    role_id: int


class RoleAssignmentResponse(BaseModel):
    principal_id: int
    role_id: int
    assignment_id: int


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


class BudgetReviewRequest(BaseModel):
    decision: str = Field(pattern=r"^(approved|rejected)$")
    comment: str = Field(default="", max_length=1000)


class BudgetReviewResponse(BaseModel):
    budget_id: int
    decision: str
    reviewed_by: int


# ---------------------------------------------------------------------------
# Error and health models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
