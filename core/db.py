"""
core/db.py -- SQLAlchemy engine factory shared by every store.

Each repository (PrincipalStore, TokenStore, AuditRecorder) owns its own
engine and tables; this module only centralizes the SQLite connection
settings so they cannot drift between stores.
"""

from datetime import datetime, timezone

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str) -> Engine:
    """Create an engine with the SQLite settings every store in this app needs."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        # FastAPI runs sync route handlers in a thread pool, so one
        # connection may be used from several threads over its lifetime.
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string (the storage format for all timestamps)."""
    return datetime.now(timezone.utc).isoformat()
