"""
api/routes/v1/roles.py -- Permission registry and role administration.

Routes:
  GET /api/v1/permissions                   -- every registered permission key
  GET /api/v1/roles                         -- roles with their permission sets
  POST /api/v1/roles                        -- create a role
  PUT /api/v1/roles/{role_id}/permissions   -- replace a role's permission set
  PUT /api/v1/principals/{principal_id}/role -- assign a principal's single active role

All routes require roles.manage. Mutations go through PermissionResolver so
the effective-permission cache is invalidated and an audit entry is written.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    PermissionResponse,
    RoleAssignmentRequest,
    RoleAssignmentResponse,
    RoleCreate,
    RolePermissionsUpdate,
    RoleResponse,
)
from auth.dependencies import rate_limit, require_permission
from auth.models import RequestContext, Role
from auth.permissions import Permission, describe, parse_keys
from auth.resolver import PermissionResolver
from auth.store import PrincipalStore

# Auth policy: every route requires roles.manage (require_permission).
router = APIRouter(dependencies=[Depends(rate_limit())])

_can_manage = require_permission(Permission.ROLES_MANAGE)


def _role_response(store: PrincipalStore, role: Role) -> RoleResponse:
    return RoleResponse(
        id=role.id,
        name=role.name,
        description=role.description,
        permissions=sorted(p.value for p in store.role_permissions(role.id)),
    )


def _get_role_or_404(store: PrincipalStore, role_id: int) -> Role:
    role = store.get_role(role_id)
    if role is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Role not found."})
    return role


@router.get("/permissions", response_model=list[PermissionResponse])
def list_permissions(ctx: RequestContext = Depends(_can_manage)) -> list[PermissionResponse]:
    return [PermissionResponse(key=p.value, description=describe(p)) for p in Permission]


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, ctx: RequestContext = Depends(_can_manage)) -> list[RoleResponse]:
    store: PrincipalStore = request.app.state.principal_store
    return [_role_response(store, r) for r in store.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, ctx: RequestContext = Depends(_can_manage)) -> RoleResponse:
    store: PrincipalStore = request.app.state.principal_store
    resolver: PermissionResolver = request.app.state.resolver
    try:
        role_id = resolver.create_role(
            body.name,
            body.description,
            parse_keys(body.permissions),
            actor_id=ctx.principal_id,
            client=ctx.client,
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A role with that name already exists."},
        ) from exc
    return _role_response(store, _get_role_or_404(store, role_id))


@router.put("/roles/{role_id}/permissions", response_model=RoleResponse)
def update_role_permissions(
    request: Request,
    role_id: int,
    body: RolePermissionsUpdate,
    ctx: RequestContext = Depends(_can_manage),
) -> RoleResponse:
    store: PrincipalStore = request.app.state.principal_store
    resolver: PermissionResolver = request.app.state.resolver
    role = _get_role_or_404(store, role_id)
    resolver.set_role_permissions(role_id, parse_keys(body.permissions), actor_id=ctx.principal_id, client=ctx.client)
    return _role_response(store, role)


@router.put("/principals/{principal_id}/role", response_model=RoleAssignmentResponse)
def assign_role(
    request: Request,
    principal_id: int,
    body: RoleAssignmentRequest,
    ctx: RequestContext = Depends(_can_manage),
) -> RoleAssignmentResponse:
    store: PrincipalStore = request.app.state.principal_store
    resolver: PermissionResolver = request.app.state.resolver
    if store.get_by_id(principal_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Principal not found."})
    _get_role_or_404(store, body.role_id)
    assignment_id = resolver.assign_role(principal_id, body.role_id, actor_id=ctx.principal_id, client=ctx.client)
    return RoleAssignmentResponse(principal_id=principal_id, role_id=body.role_id, assignment_id=assignment_id)
