"""
api/routes/v1/audit.py -- Read access to the audit trail.

Routes:
  GET /api/v1/audit/search                          -- filtered, paginated, newest first
  GET /api/v1/audit/entity/{entity_type}/{entity_id} -- history of one entity
  GET /api/v1/audit/user/{actor_id}                  -- everything one principal did

All routes require audit.view. There are no write routes: entries are only
created as a side effect of the actions they describe.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse, AuditListResponse, PaginatedAuditResponse, Pagination
from audit.models import AuditFilters, AuditLogEntry
from audit.recorder import MAX_PAGE_SIZE, AuditRecorder
from auth.dependencies import rate_limit, require_permission
from auth.models import RequestContext
from auth.permissions import Permission

# Auth policy: every route requires audit.view (require_permission).
router = APIRouter(dependencies=[Depends(rate_limit())])

_can_view = require_permission(Permission.AUDIT_VIEW)


def _to_response(entry: AuditLogEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        actor_principal_id=entry.actor_principal_id,
        action=entry.action,
        entity_type=entry.entity_type,
        entity_id=entry.entity_id,
        changes=entry.changes,
        metadata=entry.metadata,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=entry.created_at,
    )


@router.get("/audit/search", response_model=PaginatedAuditResponse)
def search_audit(
    request: Request,
    actor_id: Optional[int] = None,
    action: Optional[str] = Query(default=None, max_length=100),
    entity_type: Optional[str] = Query(default=None, max_length=100),
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1),
    ctx: RequestContext = Depends(_can_view),
) -> PaginatedAuditResponse:
    """Search the audit trail. Date bounds are inclusive calendar days (UTC). limit is capped at 100."""
    limit = min(limit, MAX_PAGE_SIZE)
    audit: AuditRecorder = request.app.state.audit
    filters = AuditFilters(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        start_date=start_date,
        end_date=end_date,
    )
    entries, total = audit.search(filters, page=page, limit=limit)
    return PaginatedAuditResponse(
        status="success",
        message="Audit logs retrieved.",
        data=[_to_response(e) for e in entries],
        pagination=Pagination.build(page, limit, total),
    )


@router.get("/audit/entity/{entity_type}/{entity_id}", response_model=AuditListResponse)
def entity_history(
    request: Request,
    entity_type: str,
    entity_id: str,
    limit: int = Query(default=50, ge=1),
    ctx: RequestContext = Depends(_can_view),
) -> AuditListResponse:
    audit: AuditRecorder = request.app.state.audit
    return AuditListResponse(data=[_to_response(e) for e in audit.entity_logs(entity_type, entity_id, limit=limit)])


@router.get("/audit/user/{actor_id}", response_model=AuditListResponse)
def user_activity(
    request: Request,
    actor_id: int,
    limit: int = Query(default=100, ge=1),
    ctx: RequestContext = Depends(_can_view),
) -> AuditListResponse:
    audit: AuditRecorder = request.app.state.audit
    return AuditListResponse(data=[_to_response(e) for e in audit.user_activity(actor_id, limit=limit)])
