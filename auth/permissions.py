"""
auth/permissions.py -- Permission Registry: the closed set of capability keys.

Every permission the application can check is a member of the Permission enum.
Route code refers to Permission.MEMBERS_EDIT, never to the string
"members.edit", so a typo is an AttributeError at import time instead of a
check that silently always denies.

The registry is also the source of truth for the permissions table. At startup
PrincipalStore.sync_registry() inserts missing keys and
validate_stored_keys() refuses to boot if the database holds a key the code
does not know about (e.g. left behind by a removed feature or a manual edit).

DEFAULT_ROLES seeds a fresh install. After the first start, roles are owned by
the database and edited through the /roles API; the seed never overwrites them.

Layer rule: stdlib only.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum


class Permission(str, Enum):
    # Membership
    MEMBERS_VIEW = "members.view"
    MEMBERS_CREATE = "members.create"
    MEMBERS_EDIT = "members.edit"
    MEMBERS_DELETE = "members.delete"

    # Finances
    FINANCES_VIEW = "finances.view"
    FINANCES_EDIT = "finances.edit"
    BUDGETS_VIEW = "budgets.view"
    BUDGETS_EDIT = "budgets.edit"
    BUDGETS_APPROVE = "budgets.approve"

    # Events
    EVENTS_VIEW = "events.view"
    EVENTS_EDIT = "events.edit"

    # Visitors
    VISITORS_VIEW = "visitors.view"
    VISITORS_CREATE = "visitors.create"
    VISITORS_EDIT = "visitors.edit"
    VISITORS_DELETE = "visitors.delete"
    VISITORS_MANAGE = "visitors.manage"

    # Documents
    DOCUMENTS_VIEW = "documents.view"
    DOCUMENTS_UPLOAD = "documents.upload"
    DOCUMENTS_EDIT = "documents.edit"
    DOCUMENTS_DOWNLOAD = "documents.download"
    DOCUMENTS_DELETE = "documents.delete"

    # Administration
    SETTINGS_VIEW = "settings.view"
    SETTINGS_EDIT = "settings.edit"
    ROLES_MANAGE = "roles.manage"
    AUDIT_VIEW = "audit.view"


_DESCRIPTIONS: dict[Permission, str] = {
    Permission.MEMBERS_VIEW: "View member records",
    Permission.MEMBERS_CREATE: "Register new members",
    Permission.MEMBERS_EDIT: "Edit member records",
    Permission.MEMBERS_DELETE: "Deactivate member records",
    Permission.FINANCES_VIEW: "View contributions, pledges and expenses",
    Permission.FINANCES_EDIT: "Record contributions, pledges and expenses",
    Permission.BUDGETS_VIEW: "View budgets",
    Permission.BUDGETS_EDIT: "Draft and edit budgets",
    Permission.BUDGETS_APPROVE: "Approve or reject submitted budgets",
    Permission.EVENTS_VIEW: "View events and attendance",
    Permission.EVENTS_EDIT: "Create and edit events",
    Permission.VISITORS_VIEW: "View visitor records",
    Permission.VISITORS_CREATE: "Record visitors",
    Permission.VISITORS_EDIT: "Edit visitor records",
    Permission.VISITORS_DELETE: "Delete visitor records",
    Permission.VISITORS_MANAGE: "Assign visitor follow-ups",
    Permission.DOCUMENTS_VIEW: "List documents",
    Permission.DOCUMENTS_UPLOAD: "Upload documents",
    Permission.DOCUMENTS_EDIT: "Edit document metadata",
    Permission.DOCUMENTS_DOWNLOAD: "Download documents",
    Permission.DOCUMENTS_DELETE: "Delete documents",
    Permission.SETTINGS_VIEW: "View system settings",
    Permission.SETTINGS_EDIT: "Change system settings",
    Permission.ROLES_MANAGE: "Create roles, edit role permissions and assign roles",
    Permission.AUDIT_VIEW: "Read the audit trail",
}


def describe(permission: Permission) -> str:
    return _DESCRIPTIONS.get(permission, permission.value)


# ---------------------------------------------------------------------------
# Default roles (first-run seed)
# ---------------------------------------------------------------------------

DEFAULT_ROLES: dict[str, tuple[str, frozenset[Permission]]] = {
    "Administrator": ("Full access to every module", frozenset(Permission)),
    "Treasurer": (
        "Manages finances and approves budgets",
        frozenset(
            {
                Permission.MEMBERS_VIEW,
                Permission.FINANCES_VIEW,
                Permission.FINANCES_EDIT,
                Permission.BUDGETS_VIEW,
                Permission.BUDGETS_EDIT,
                Permission.BUDGETS_APPROVE,
            }
        ),
    ),
    "Secretary": (
        "Maintains member, event and visitor records",
        frozenset(
            {
                Permission.MEMBERS_VIEW,
                Permission.MEMBERS_CREATE,
                Permission.MEMBERS_EDIT,
                Permission.EVENTS_VIEW,
                Permission.EVENTS_EDIT,
                Permission.VISITORS_VIEW,
                Permission.VISITORS_CREATE,
                Permission.VISITORS_EDIT,
                Permission.DOCUMENTS_VIEW,
                Permission.DOCUMENTS_UPLOAD,
            }
        ),
    ),
    "Member": (
        "Read-only access to the directory and events",
        frozenset({Permission.MEMBERS_VIEW, Permission.EVENTS_VIEW}),
    ),
}


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def parse_keys(keys: Iterable[str]) -> frozenset[Permission]:
    """Convert raw permission keys to enum members.

    Raises ValueError listing every unknown key. Used by the role API (reject
    a bad request body) and by validate_stored_keys() (refuse to boot).
    """
    parsed: set[Permission] = set()
    unknown: list[str] = []
    for key in keys:
        try:
            parsed.add(Permission(key))
        except ValueError:
            unknown.append(key)
    if unknown:
        raise ValueError(f"Unknown permission keys: {sorted(unknown)!r}")
    return frozenset(parsed)


def validate_stored_keys(stored: Iterable[str]) -> None:
    """Fail fast at boot if the database references a key outside the registry."""
    parse_keys(stored)
