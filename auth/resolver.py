"""
auth/resolver.py -- Permission Resolver: effective permission sets and authorize().

A principal has at most one active role; its effective permissions are
exactly that role's permissions. There is no role hierarchy and no union
across roles.

Caching: effective sets change rarely and are read on every authenticated
request, so they are cached in-process per principal. Every mutation that can
change a set goes through this class and invalidates:
  - assign_role()          -> that principal
  - set_role_permissions() -> every cached principal holding that role
In a multi-instance deployment other instances keep a stale set until
cache_ttl_seconds elapses; keep the TTL short there.

Role administration lives here too (create role, edit its permissions,
assign it) so that cache invalidation and audit entries cannot be skipped by
calling the store directly from a route.

Layer rule: no imports from api/. audit/ is referenced only for typing.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Optional

from auth.models import ClientInfo, Role
from auth.permissions import Permission

if TYPE_CHECKING:
    from audit.recorder import AuditRecorder
    from auth.store import PrincipalStore

logger = logging.getLogger("orgwarden.auth")


class PermissionResolver:
    """Resolves and checks permissions for principals.

    Usage:
        resolver = PermissionResolver(principal_store, audit)
        resolver.resolve_effective(42)                       # frozenset({Permission.MEMBERS_VIEW, ...})
        resolver.authorize(42, Permission.BUDGETS_APPROVE)  # False
    """

    def __init__(
        self,
        store: PrincipalStore,
        audit: Optional[AuditRecorder] = None,
        cache_ttl_seconds: int = 300,
    ) -> None:
        self.store = store
        self.audit = audit
        self.cache_ttl_seconds = cache_ttl_seconds
        # principal_id -> (role_id, permissions, cached_at)
        self._cache: dict[int, tuple[Optional[int], frozenset[Permission], float]] = {}
        self._lock = threading.Lock()
        # Bumped by every invalidation; a lookup that raced one does not cache.
        self._generation = 0

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_effective(self, principal_id: int) -> frozenset[Permission]:
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(principal_id)
            generation = self._generation
        if cached is not None and now - cached[2] < self.cache_ttl_seconds:
            return cached[1]

        assignment = self.store.active_assignment(principal_id)
        if assignment is None:
            role_id, perms = None, frozenset()
        else:
            role_id, perms = assignment.role_id, self.store.role_permissions(assignment.role_id)
        with self._lock:
            if self._generation == generation:
                self._cache[principal_id] = (role_id, perms, now)
        return perms

    def authorize(self, principal_id: int, permission: Permission) -> bool:
        if not isinstance(permission, Permission):
            # Raw strings would bypass the registry; this is a programming error.
            raise TypeError(f"authorize() expects a Permission, got {type(permission).__name__}")
        return permission in self.resolve_effective(principal_id)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate_principal(self, principal_id: int) -> None:
        with self._lock:
            self._generation += 1
            self._cache.pop(principal_id, None)

    def invalidate_role(self, role_id: int) -> None:
        with self._lock:
            self._generation += 1
            stale = [pid for pid, (rid, _perms, _at) in self._cache.items() if rid == role_id]
            for pid in stale:
                del self._cache[pid]

    def clear_cache(self) -> None:
        with self._lock:
            self._generation += 1
            self._cache.clear()

    # ------------------------------------------------------------------
    # Role administration
    # ------------------------------------------------------------------

    def create_role(
        self,
        name: str,
        description: str,
        permissions: frozenset[Permission],
        actor_id: Optional[int] = None,
        client: Optional[ClientInfo] = None,
    ) -> int:
        """Create a role with an initial permission set. Raises IntegrityError on duplicate name."""
        role_id = self.store.create_role(Role(name=name, description=description))
        self.store.set_role_permissions(role_id, permissions)
        self._audit(
            actor_id,
            "role_created",
            "role",
            role_id,
            client,
            changes={"name": name, "permissions": sorted(p.value for p in permissions)},
        )
        logger.info("Role %d (%s) created by %s", role_id, name, actor_id)
        return role_id

    def set_role_permissions(
        self,
        role_id: int,
        permissions: frozenset[Permission],
        actor_id: Optional[int] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        before = self.store.role_permissions(role_id)
        self.store.set_role_permissions(role_id, permissions)
        self.invalidate_role(role_id)
        self._audit(
            actor_id,
            "role_permissions_updated",
            "role",
            role_id,
            client,
            changes={
                "added": sorted(p.value for p in permissions - before),
                "removed": sorted(p.value for p in before - permissions),
            },
        )

    def assign_role(
        self,
        principal_id: int,
        role_id: int,
        actor_id: Optional[int] = None,
        client: Optional[ClientInfo] = None,
    ) -> int:
        """Replace the principal's active role. Returns the new assignment ID."""
        previous = self.store.active_assignment(principal_id)
        assignment_id = self.store.assign_role(principal_id, role_id, assigned_by=actor_id)
        self.invalidate_principal(principal_id)
        self._audit(
            actor_id,
            "role_assigned",
            "principal",
            principal_id,
            client,
            changes={"role_id": {"old": previous.role_id if previous else None, "new": role_id}},
        )
        logger.info("Principal %d assigned role %d by %s", principal_id, role_id, actor_id)
        return assignment_id

    def _audit(
        self,
        actor_id: Optional[int],
        action: str,
        entity_type: str,
        entity_id: int,
        client: Optional[ClientInfo],
        changes: dict,
    ) -> None:
        if self.audit is None:
            return
        client = client or ClientInfo(ip_address="system")
        self.audit.record(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
        )
