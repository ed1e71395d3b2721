"""
core/db.py -- Shared SQLAlchemy engine construction for every store.

Each repository (auth/store.py, registry/store.py, audit/store.py,
audit/flags.py) owns its tables but builds its engine here so the connection
rules are identical everywhere:

  - SQLite: check_same_thread=False (FastAPI runs sync handlers in a thread
    pool), WAL journal mode per connection, and a busy timeout equal to the
    dependency timeout so a locked database fails the request instead of
    wedging it.
  - Other backends: pool_timeout bounds the wait for a pooled connection;
    connect_timeout bounds the TCP connect where the driver supports it.

Layer rule: core/ is the kernel. No imports from other project packages.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def make_engine(db_url: str, timeout: float = 10.0) -> Engine:
    if db_url.startswith("sqlite"):
        engine = create_engine(db_url, connect_args={"check_same_thread": False, "timeout": timeout})
        event.listen(engine, "connect", _set_wal_mode)
        return engine
    connect_args: dict = {}
    if db_url.startswith("postgresql"):
        connect_args["connect_timeout"] = int(timeout)
    return create_engine(db_url, pool_timeout=timeout, pool_pre_ping=True, connect_args=connect_args)


# ---------------------------------------------------------------------------
# Timestamp helpers
#
# Timestamps are stored as ISO 8601 UTC strings with a fixed microsecond
# precision, so lexical order in SQL equals chronological order.
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
