"""
audit/flags.py -- Activity flags: abuse signals raised against a subject.

FlagStore is the SQLAlchemy repository; ActivityFlags is the service the
routes and the suspicious-activity monitor call. Flags are never deleted.

Status transitions:
  pending       -> investigating | resolved | false_positive
  investigating -> resolved | false_positive
  resolved, false_positive -> (terminal)

A transition is applied with a conditional UPDATE on the status the reviewer
saw (WHERE id = ? AND status = ?), so two reviewers racing on the same flag
cannot both win.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from audit.models import (
    FLAG_FALSE_POSITIVE,
    FLAG_INVESTIGATING,
    FLAG_PENDING,
    FLAG_RESOLVED,
    FLAG_TYPES,
    OPEN_FLAG_STATUSES,
    SEVERITIES,
    ActivityFlag,
)
from core.db import from_iso, make_engine, to_iso, utcnow
from core.errors import DependencyUnavailable, ErrorKind, Failure

logger = logging.getLogger("codeguard.flags")

_TRANSITIONS: dict[str, frozenset[str]] = {
    FLAG_PENDING: frozenset({FLAG_INVESTIGATING, FLAG_RESOLVED, FLAG_FALSE_POSITIVE}),
    FLAG_INVESTIGATING: frozenset({FLAG_RESOLVED, FLAG_FALSE_POSITIVE}),
    FLAG_RESOLVED: frozenset(),
    FLAG_FALSE_POSITIVE: frozenset(),
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_flags = Table(
    "activity_flags",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("subject_id", String(64), nullable=False),
    Column("flag_type", String(32), nullable=False),
    Column("severity", String(16), nullable=False),
    Column("description", String(500), nullable=False),
    Column("status", String(16), nullable=False, server_default=FLAG_PENDING),
    Column("metadata", Text, nullable=False, server_default="{}"),
    Column("created_by", String(64), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Column("resolved_by", String(64)),
    Column("resolved_at", String(40)),
    Index("ix_flags_subject_status", "subject_id", "status"),
)


def transition_allowed(current: str, new: str) -> bool:
    return new in _TRANSITIONS.get(current, frozenset())


class FlagStore:
    """Repository for ActivityFlag records."""

    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def create(self, flag: ActivityFlag, now: datetime) -> int:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _flags.insert().values(
                        subject_id=flag.subject_id,
                        flag_type=flag.flag_type,
                        severity=flag.severity,
                        description=flag.description,
                        status=flag.status,
                        metadata=json.dumps(flag.metadata, default=str),
                        created_by=flag.created_by,
                        created_at=to_iso(now),
                        updated_at=to_iso(now),
                    )
                )
                return result.inserted_primary_key[0]
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("flag store insert failed") from exc

    def get(self, flag_id: int) -> Optional[ActivityFlag]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_flags.select().where(_flags.c.id == flag_id)).fetchone()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("flag store read failed") from exc
        return _row_to_flag(row) if row is not None else None

    def list(self, status: Optional[str] = None, subject_id: Optional[str] = None, limit: int = 100) -> list[ActivityFlag]:
        stmt = select(_flags)
        if status is not None:
            stmt = stmt.where(_flags.c.status == status)
        if subject_id is not None:
            stmt = stmt.where(_flags.c.subject_id == subject_id)
        stmt = stmt.order_by(_flags.c.created_at.desc(), _flags.c.id.desc()).limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("flag store read failed") from exc
        return [_row_to_flag(r) for r in rows]

    def has_open(self, subject_id: str, flag_type: str) -> bool:
        stmt = (
            select(_flags.c.id)
            .where(
                (_flags.c.subject_id == subject_id)
                & (_flags.c.flag_type == flag_type)
                & (_flags.c.status.in_(OPEN_FLAG_STATUSES))
            )
            .limit(1)
        )
        try:
            with self.engine.connect() as conn:
                return conn.execute(stmt).first() is not None
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("flag store read failed") from exc

    def update_status(
        self, flag_id: int, from_status: str, to_status: str, reviewer_id: str, now: datetime
    ) -> bool:
        """Apply a transition if the flag is still in from_status. Returns True if a row changed."""
        values: dict = {"status": to_status, "updated_at": to_iso(now)}
        if to_status in (FLAG_RESOLVED, FLAG_FALSE_POSITIVE):
            values["resolved_by"] = reviewer_id
            values["resolved_at"] = to_iso(now)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _flags.update().where((_flags.c.id == flag_id) & (_flags.c.status == from_status)).values(**values)
                )
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("flag store update failed") from exc
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


class ActivityFlags:
    """Service wrapper: validates input, applies transitions, returns Results."""

    def __init__(self, store: FlagStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def raise_flag(
        self,
        subject_id: str,
        flag_type: str,
        severity: str,
        description: str,
        created_by: str,
        metadata: Optional[dict] = None,
    ) -> Union[ActivityFlag, Failure]:
        if flag_type not in FLAG_TYPES or severity not in SEVERITIES:
            return Failure(ErrorKind.INVALID_FORMAT, "Unknown flag type or severity.")
        flag = ActivityFlag(
            subject_id=str(subject_id),
            flag_type=flag_type,
            severity=severity,
            description=description[:500],
            created_by=str(created_by),
            metadata=dict(metadata or {}),
        )
        try:
            flag_id = self._store.create(flag, self._clock())
            created = self._store.get(flag_id)
        except DependencyUnavailable:
            logger.exception("Could not raise %s flag", flag_type)
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        logger.info("Activity flag %d raised (%s, %s)", flag_id, flag_type, severity)
        return created

    def has_open(self, subject_id: str, flag_type: str) -> Union[bool, Failure]:
        try:
            return self._store.has_open(subject_id, flag_type)
        except DependencyUnavailable:
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

    def list(self, status: Optional[str] = None, subject_id: Optional[str] = None, limit: int = 100):
        try:
            return self._store.list(status=status, subject_id=subject_id, limit=limit)
        except DependencyUnavailable:
            logger.exception("Could not list activity flags")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

    def review(self, flag_id: int, new_status: str, reviewer_id: str) -> Union[ActivityFlag, Failure]:
        """Move a flag to new_status on behalf of an authorized reviewer."""
        try:
            current = self._store.get(flag_id)
            if current is None:
                return Failure(ErrorKind.NOT_FOUND, "Activity flag not found.")
            if not transition_allowed(current.status, new_status):
                return Failure(
                    ErrorKind.INVALID_FORMAT,
                    f"Cannot move a flag from {current.status} to {new_status}.",
                )
            if not self._store.update_status(flag_id, current.status, new_status, str(reviewer_id), self._clock()):
                # Another reviewer moved it between our read and our write.
                return Failure(ErrorKind.INVALID_FORMAT, "Flag status changed concurrently; reload and retry.")
            return self._store.get(flag_id)
        except DependencyUnavailable:
            logger.exception("Could not review activity flag %d", flag_id)
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_flag(row) -> ActivityFlag:
    return ActivityFlag(
        id=row.id,
        subject_id=row.subject_id,
        flag_type=row.flag_type,
        severity=row.severity,
        description=row.description,
        status=row.status,
        metadata=json.loads(row.metadata or "{}"),
        created_by=row.created_by,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        resolved_by=row.resolved_by,
        resolved_at=from_iso(row.resolved_at),
    )
