"""
audit/models.py -- Domain dataclasses for the security audit trail.

Pure data containers. AuditRecorder in audit/recorder.py owns persistence
and querying.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Optional


@dataclass(frozen=True)
class AuditLogEntry:
    """One immutable audit record.

    actor_principal_id is None for system actions and for unauthenticated
    events (failed logins). changes is a structured diff ({"field": {"old",
    "new"}} or a free-form dict), metadata carries context that is not a diff
    (identifier tried, remember flag, review comment).
    """

    action: str
    entity_type: str
    created_at: str  # ISO 8601 UTC
    id: Optional[int] = None
    actor_principal_id: Optional[int] = None
    entity_id: Optional[str] = None
    changes: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AuditFilters:
    """Optional search criteria. Dates are inclusive calendar days (UTC)."""

    actor_id: Optional[int] = None
    action: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
