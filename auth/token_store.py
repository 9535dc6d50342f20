"""
auth/token_store.py -- Refresh-token records: the revocation store behind TokenService.

Pattern: Repository + Data Mapper (same as auth/store.py).

Concurrency:
  mark_rotated() is the compare-and-swap at the heart of single-use refresh
  tokens. It issues

      UPDATE refresh_tokens SET rotated_to = :new
      WHERE token_id = :id AND rotated_to IS NULL AND revoked = 0

  and inserts the successor record in the same transaction. The database
  serializes the two UPDATEs of a race, so exactly one sees rowcount == 1;
  the loser gets False and TokenService treats it as token reuse. Never
  replace this with a read-then-write.

  revoke_family() and revoke() are plain conditional updates and are
  idempotent.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table
from sqlalchemy.engine import Engine

from auth.models import RefreshTokenRecord
from core.config import get_settings
from core.db import make_engine

_metadata = MetaData()

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("token_id", String(64), primary_key=True),
    Column("principal_id", Integer, nullable=False),
    Column("family_id", String(64), nullable=False),
    Column("secret_hash", String(64), nullable=False),  # HMAC-SHA256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("remember", Integer, nullable=False, server_default="0"),
    Column("rotated_to", String(64)),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Index("ix_refresh_tokens_family", "family_id"),
    Index("ix_refresh_tokens_principal", "principal_id"),
)


class TokenStore:
    """Repository for RefreshTokenRecord rows.

    Usage:
        store = TokenStore()
        store.insert(record)
        record = store.get(token_id)
        won = store.mark_rotated(record.token_id, successor)
        store.close()
    """

    def __init__(self, db_url: Optional[str] = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    def insert(self, record: RefreshTokenRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(_refresh_tokens.insert().values(**_record_to_values(record)))
            conn.commit()

    def get(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_id == token_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def mark_rotated(self, token_id: str, successor: RefreshTokenRecord) -> bool:
        """Atomically rotate token_id to successor. Returns False if another caller got there first.

        The successor is only inserted when the guard matched, so a losing
        caller leaves no orphan record behind.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_id == token_id)
                    & (_refresh_tokens.c.rotated_to.is_(None))
                    & (_refresh_tokens.c.revoked == 0)
                )
                .values(rotated_to=successor.token_id)
            )
            if result.rowcount != 1:
                return False
            conn.execute(_refresh_tokens.insert().values(**_record_to_values(successor)))
        return True

    def revoke(self, token_id: str) -> bool:
        """Mark one record revoked. Returns True only if it changed state."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_id == token_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_family(self, family_id: str) -> int:
        """Revoke every record in a family. Returns the number newly revoked."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.family_id == family_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
            conn.commit()
        return result.rowcount

    def revoke_principal(self, principal_id: int) -> int:
        """Revoke every record belonging to a principal (deactivation, password reset)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.principal_id == principal_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1)
            )
            conn.commit()
        return result.rowcount

    def family(self, family_id: str) -> list[RefreshTokenRecord]:
        """All records of a family in issue order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.family_id == family_id)
                .order_by(_refresh_tokens.c.issued_at, _refresh_tokens.c.token_id)
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def purge_expired(self, older_than_days: int = 7) -> int:
        """Delete records that expired more than older_than_days ago. Returns rows removed.

        Expired records carry no security value once every client holding them
        has been rejected long enough ago; keeping a week of them lets
        operators investigate recent reuse alerts.
        """
        cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).isoformat()
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Mappers
# ---------------------------------------------------------------------------


def _record_to_values(record: RefreshTokenRecord) -> dict:
    return {
        "token_id": record.token_id,
        "principal_id": record.principal_id,
        "family_id": record.family_id,
        "secret_hash": record.secret_hash,
        "issued_at": record.issued_at,
        "expires_at": record.expires_at,
        "remember": 1 if record.remember else 0,
        "rotated_to": record.rotated_to,
        "revoked": 1 if record.revoked else 0,
    }


def _row_to_record(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_id=row.token_id,
        principal_id=row.principal_id,
        family_id=row.family_id,
        secret_hash=row.secret_hash,
        issued_at=row.issued_at,
        expires_at=row.expires_at,
        remember=bool(row.remember),
        rotated_to=row.rotated_to,
        revoked=bool(row.revoked),
    )
