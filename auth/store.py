"""
auth/store.py -- SQLAlchemy Core persistence for principals, roles and permissions.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_principal / _row_to_role / _row_to_assignment are the mappers.
Services and routes never touch SQL directly.

This is the Credential Store (principals + secret hashes) and the relational
half of the Permission Registry (permissions, roles, role_permissions,
role_assignments). The enum in auth/permissions.py is the authority for which
keys exist; sync_registry() mirrors it into the permissions table.

Security:
  All queries use bound parameters. No f-strings in SQL.

Invariant: at most one role_assignments row per principal has ended_at NULL.
assign_role() ends the current row and inserts the new one inside a single
transaction so concurrent assignments cannot leave two active rows.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Principal, Role, RoleAssignment
from auth.permissions import DEFAULT_ROLES, Permission, describe, validate_stored_keys
from core.config import get_settings
from core.db import make_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("display_identifier", String(255), nullable=False, unique=True),
    Column("secret_hash", Text, nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("key", String(100), nullable=False, unique=True),
    Column("description", Text),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
    Column("created_at", String(32), nullable=False),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id"), nullable=False),
    UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
)

_role_assignments = Table(
    "role_assignments",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", Integer, ForeignKey("principals.id"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id"), nullable=False),
    Column("assigned_by", Integer),  # NULL = system / CLI
    Column("assigned_at", String(32), nullable=False),
    Column("ended_at", String(32)),  # NULL = active
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal, Role, Permission and RoleAssignment rows.

    Usage:
        store = PrincipalStore()
        store.sync_registry()
        store.seed_default_roles()
        pid = store.create_principal(Principal(display_identifier="jdoe", secret_hash=hash_password("s3cret")))
        store.assign_role(pid, store.get_role_by_name("Member").id)
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Registry sync
    # ------------------------------------------------------------------

    def sync_registry(self) -> None:
        """Mirror the Permission enum into the permissions table, then validate.

        Inserts missing keys and refreshes descriptions. Raises ValueError if
        the table holds keys the enum does not define -- a role granting an
        unknown key would otherwise always deny at runtime.
        """
        with self.engine.begin() as conn:
            existing = {row.key for row in conn.execute(select(_permissions.c.key))}
            for perm in Permission:
                if perm.value in existing:
                    conn.execute(
                        _permissions.update()
                        .where(_permissions.c.key == perm.value)
                        .values(description=describe(perm))
                    )
                else:
                    conn.execute(_permissions.insert().values(key=perm.value, description=describe(perm)))
            stored = [row.key for row in conn.execute(select(_permissions.c.key))]
        validate_stored_keys(stored)

    def seed_default_roles(self) -> int:
        """Create DEFAULT_ROLES that do not exist yet. Returns the number created.

        Existing roles are left untouched -- after first start, role contents
        belong to the administrators, not to the code.
        """
        created = 0
        for name, (description, perms) in DEFAULT_ROLES.items():
            if self.get_role_by_name(name) is not None:
                continue
            role_id = self.create_role(Role(name=name, description=description))
            self.set_role_permissions(role_id, perms)
            created += 1
        return created

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def has_principals(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_principals)).scalar()
        return (result or 0) > 0

    def create_principal(self, principal: Principal) -> int:
        """Insert a new principal and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if display_identifier is taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.insert().values(
                    display_identifier=principal.display_identifier,
                    secret_hash=principal.secret_hash,
                    is_active=1 if principal.is_active else 0,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_identifier(self, display_identifier: str) -> Optional[Principal]:
        """Look up a principal by exact login name (case-sensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(_principals.c.display_identifier == display_identifier)
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_id(self, principal_id: int) -> Optional[Principal]:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def set_active(self, principal_id: int, is_active: bool) -> bool:
        """Activate or deactivate a principal. Returns False if not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _principals.update().where(_principals.c.id == principal_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, principal_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_principals.update().where(_principals.c.id == principal_id).values(last_login=now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID. Raises IntegrityError on duplicate name."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.insert().values(name=role.name, description=role.description, created_at=now_iso())
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_role(self, role_id: int) -> Optional[Role]:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
        return [_row_to_role(r) for r in rows]

    def role_permissions(self, role_id: int) -> frozenset[Permission]:
        """Return the permission set attached to a role."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions.c.key)
                .select_from(_role_permissions.join(_permissions, _role_permissions.c.permission_id == _permissions.c.id))
                .where(_role_permissions.c.role_id == role_id)
            ).fetchall()
        return frozenset(Permission(r.key) for r in rows)

    def set_role_permissions(self, role_id: int, permissions: frozenset[Permission]) -> None:
        """Replace a role's permission set in one transaction."""
        with self.engine.begin() as conn:
            ids = {
                row.key: row.id
                for row in conn.execute(
                    select(_permissions.c.id, _permissions.c.key).where(
                        _permissions.c.key.in_([p.value for p in permissions])
                    )
                )
            }
            missing = {p.value for p in permissions} - set(ids)
            if missing:
                # sync_registry() was not run against this database.
                raise ValueError(f"Permissions not registered: {sorted(missing)!r}")
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_id == role_id))
            if ids:
                conn.execute(
                    _role_permissions.insert(),
                    [{"role_id": role_id, "permission_id": pid} for pid in ids.values()],
                )

    # ------------------------------------------------------------------
    # Role assignments
    # ------------------------------------------------------------------

    def assign_role(self, principal_id: int, role_id: int, assigned_by: Optional[int] = None) -> int:
        """Make role_id the principal's single active role and return the new assignment ID.

        The current active assignment (if any) is ended, not deleted, so the
        history stays available for audit.
        """
        now = now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _role_assignments.update()
                .where((_role_assignments.c.principal_id == principal_id) & (_role_assignments.c.ended_at.is_(None)))
                .values(ended_at=now)
            )
            result = conn.execute(
                _role_assignments.insert().values(
                    principal_id=principal_id,
                    role_id=role_id,
                    assigned_by=assigned_by,
                    assigned_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def active_assignment(self, principal_id: int) -> Optional[RoleAssignment]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _role_assignments.select()
                .where((_role_assignments.c.principal_id == principal_id) & (_role_assignments.c.ended_at.is_(None)))
                .order_by(_role_assignments.c.id.desc())
            ).fetchone()
        return _row_to_assignment(row) if row is not None else None

    def assignment_history(self, principal_id: int) -> list[RoleAssignment]:
        """All assignments for a principal, newest first (ended rows included)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _role_assignments.select()
                .where(_role_assignments.c.principal_id == principal_id)
                .order_by(_role_assignments.c.id.desc())
            ).fetchall()
        return [_row_to_assignment(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        display_identifier=row.display_identifier,
        secret_hash=row.secret_hash,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        description=row.description or "",
        created_at=row.created_at,
    )


def _row_to_assignment(row) -> RoleAssignment:
    return RoleAssignment(
        id=row.id,
        principal_id=row.principal_id,
        role_id=row.role_id,
        assigned_by=row.assigned_by,
        assigned_at=row.assigned_at,
        ended_at=row.ended_at,
    )
