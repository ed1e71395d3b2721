"""
audit/store.py -- SQLAlchemy Core persistence for the append-only audit trail.

Pattern: Repository + Data Mapper. AuditStore is the repository;
_row_to_entry is the mapper. The repository exposes append and read methods
only -- there is no update or delete path for audit_logs anywhere in the
codebase.

Errors: every SQLAlchemyError is re-raised as core.errors.DependencyUnavailable
so callers handle one boundary exception type regardless of backend.

Security: all queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, auth/, registry/, or selftest/.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from types import MappingProxyType
from typing import Optional

from sqlalchemy import Column, Float, Index, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from audit.models import AuditLogEntry, AuditQuery
from core.db import from_iso, make_engine, to_iso
from core.errors import DependencyUnavailable

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", String(64), nullable=False),
    Column("action", String(64), nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("error_kind", String(32)),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", String(255), nullable=False, server_default=""),
    Column("details", Text, nullable=False),  # JSON object, already masked
    Column("timestamp", String(40), nullable=False),
    Column("duration_ms", Float, nullable=False, server_default="0"),
    Index("ix_audit_actor_ts", "actor_id", "timestamp"),
    Index("ix_audit_ip_ts", "ip_address", "timestamp"),
)


class AuditStore:
    """Append-only repository for AuditLogEntry records.

    Usage:
        store = AuditStore("sqlite:///:memory:")
        entry_id = store.append(entry)
        entries = store.query(AuditQuery(actor_id="17", limit=20))
        store.close()
    """

    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def append(self, entry: AuditLogEntry) -> int:
        """Insert one entry and return its id."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _audit_logs.insert().values(
                        actor_id=entry.actor_id,
                        action=entry.action,
                        outcome=entry.outcome,
                        error_kind=entry.error_kind,
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent[:255],
                        details=json.dumps(dict(entry.details_masked), default=str, sort_keys=True),
                        timestamp=to_iso(entry.timestamp),
                        duration_ms=entry.duration_ms,
                    )
                )
                return result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("audit store append failed") from exc

    def query(self, filters: AuditQuery) -> list[AuditLogEntry]:
        """Return entries matching filters, newest first."""
        stmt = select(_audit_logs)
        if filters.actor_id is not None:
            stmt = stmt.where(_audit_logs.c.actor_id == filters.actor_id)
        if filters.action is not None:
            stmt = stmt.where(_audit_logs.c.action == filters.action)
        if filters.outcome is not None:
            stmt = stmt.where(_audit_logs.c.outcome == filters.outcome)
        if filters.ip_address is not None:
            stmt = stmt.where(_audit_logs.c.ip_address == filters.ip_address)
        if filters.since is not None:
            stmt = stmt.where(_audit_logs.c.timestamp >= to_iso(filters.since))
        if filters.until is not None:
            stmt = stmt.where(_audit_logs.c.timestamp <= to_iso(filters.until))
        stmt = stmt.order_by(_audit_logs.c.timestamp.desc(), _audit_logs.c.id.desc())
        stmt = stmt.limit(filters.limit).offset(filters.offset)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("audit store query failed") from exc
        return [_row_to_entry(r) for r in rows]

    def count_failures(
        self,
        since: datetime,
        actions: Iterable[str],
        actor_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> int:
        """Count non-success entries for one subject (actor or masked IP) since a time.

        Used by the suspicious-activity monitor. At least one of actor_id or
        ip_address must be given.
        """
        if actor_id is None and ip_address is None:
            raise ValueError("count_failures needs an actor_id or an ip_address")
        stmt = select(func.count()).select_from(_audit_logs).where(
            (_audit_logs.c.outcome != "success")
            & (_audit_logs.c.action.in_(list(actions)))
            & (_audit_logs.c.timestamp >= to_iso(since))
        )
        if actor_id is not None:
            stmt = stmt.where(_audit_logs.c.actor_id == actor_id)
        if ip_address is not None:
            stmt = stmt.where(_audit_logs.c.ip_address == ip_address)
        try:
            with self.engine.connect() as conn:
                return conn.execute(stmt).scalar() or 0
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("audit store count failed") from exc

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        outcome=row.outcome,
        error_kind=row.error_kind,
        ip_address=row.ip_address,
        user_agent=row.user_agent or "",
        details_masked=MappingProxyType(json.loads(row.details or "{}")),
        timestamp=from_iso(row.timestamp),
        duration_ms=row.duration_ms or 0.0,
    )
