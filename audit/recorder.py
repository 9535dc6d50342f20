"""
audit/recorder.py -- Append-only audit trail backed by SQLAlchemy Core.

Pattern: Repository + Data Mapper, same as auth/store.py.

Write policy:
  record() never raises. An audit write that fails (disk full, lock timeout,
  bad JSON) is logged at ERROR with a traceback on the "orgwarden.audit"
  logger and swallowed, so the user action that triggered it still
  completes. Operators alert on that logger; silent loss is not possible.
  append() is the raising variant for callers that must know (tests, CLI).

Immutability:
  The class exposes no update or delete. Retention is an operational job run
  against the database directly, not an application feature.

Ordering:
  Queries return newest first: created_at DESC, then id DESC so entries
  written within the same microsecond keep insertion order.

Layer rule: audit/ imports only stdlib, third-party libraries and core/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from audit.models import AuditFilters, AuditLogEntry
from core.config import get_settings
from core.db import make_engine, now_iso

logger = logging.getLogger("orgwarden.audit")

MAX_PAGE_SIZE = 100

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_log = Table(
    "audit_log",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_principal_id", Integer),  # NULL = system / unauthenticated
    Column("action", String(100), nullable=False),
    Column("entity_type", String(100), nullable=False),
    Column("entity_id", String(100)),
    Column("changes", Text),  # JSON object serialized as text
    Column("metadata_json", Text),  # JSON object serialized as text
    Column("ip_address", String(45)),
    Column("user_agent", String(500)),
    Column("created_at", String(32), nullable=False),
    Index("ix_audit_entity", "entity_type", "entity_id"),
    Index("ix_audit_actor", "actor_principal_id"),
    Index("ix_audit_created", "created_at"),
)


def _day_start(day) -> str:
    return datetime.combine(day, time.min, tzinfo=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class AuditRecorder:
    """Writes and queries audit entries.

    Usage:
        audit = AuditRecorder()
        audit.record(actor_id=1, action="login", entity_type="principal", entity_id=1, ip_address="127.0.0.1")
        entries, total = audit.search(AuditFilters(entity_type="member"), page=1, limit=50)
        audit.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        action: str,
        entity_type: str,
        entity_id: Any = None,
        actor_id: Optional[int] = None,
        changes: Optional[dict] = None,
        metadata: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Insert one entry and return its ID. Raises on any failure."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_log.insert().values(
                    actor_principal_id=actor_id,
                    action=action,
                    entity_type=entity_type,
                    entity_id=str(entity_id) if entity_id is not None else None,
                    changes=json.dumps(changes, default=str) if changes is not None else None,
                    metadata_json=json.dumps(metadata, default=str) if metadata is not None else None,
                    ip_address=ip_address,
                    user_agent=(user_agent or "")[:500] or None,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        entity_type: str,
        entity_id: Any = None,
        changes: Optional[dict] = None,
        metadata: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[int]:
        """Append an entry; on failure log loudly and return None instead of raising."""
        try:
            return self.append(
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                changes=changes,
                metadata=metadata,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except Exception:
            logger.exception(
                "audit_write_failure: action=%s entity=%s/%s actor=%s",
                action,
                entity_type,
                entity_id,
                actor_id,
            )
            return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def search(self, filters: AuditFilters, page: int = 1, limit: int = 50) -> tuple[list[AuditLogEntry], int]:
        """Filtered, paginated, newest-first. Returns (entries, total_matching)."""
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        conditions = _conditions(filters)

        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_audit_log).where(*conditions)).scalar() or 0
            rows = conn.execute(
                _audit_log.select()
                .where(*conditions)
                .order_by(_audit_log.c.created_at.desc(), _audit_log.c.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows], total

    def entity_logs(self, entity_type: str, entity_id: Any, limit: int = 50) -> list[AuditLogEntry]:
        entries, _total = self.search(
            AuditFilters(entity_type=entity_type, entity_id=str(entity_id)), page=1, limit=limit
        )
        return entries

    def user_activity(self, actor_id: int, limit: int = 100) -> list[AuditLogEntry]:
        entries, _total = self.search(AuditFilters(actor_id=actor_id), page=1, limit=limit)
        return entries

    def ping(self) -> bool:
        """Cheap connectivity check for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except Exception:
            logger.exception("Audit database unreachable")
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _conditions(filters: AuditFilters) -> list:
    conditions = []
    if filters.actor_id is not None:
        conditions.append(_audit_log.c.actor_principal_id == filters.actor_id)
    if filters.action:
        conditions.append(_audit_log.c.action == filters.action)
    if filters.entity_type:
        conditions.append(_audit_log.c.entity_type == filters.entity_type)
    if filters.entity_id is not None:
        conditions.append(_audit_log.c.entity_id == filters.entity_id)
    if filters.start_date is not None:
        conditions.append(_audit_log.c.created_at >= _day_start(filters.start_date))
    if filters.end_date is not None:
        # Inclusive end date: everything before the start of the next day.
        conditions.append(_audit_log.c.created_at < _day_start(filters.end_date + timedelta(days=1)))
    return conditions


def _loads(value: Optional[str]) -> Optional[dict]:
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError:
        return {"raw": value}


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        actor_principal_id=row.actor_principal_id,
        action=row.action,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        changes=_loads(row.changes),
        metadata=_loads(row.metadata_json),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
