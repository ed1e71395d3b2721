"""
auth/store.py -- The users table: admins, doctors, customers and the self-test
probe identities.

UserStore reads and writes rows; _row_to_user turns a row into the User
dataclass. The identity provider, the login route and the CLI are its only
callers. Every statement is built with SQLAlchemy Core, so values are always
bound, never interpolated.

Errors:
  A duplicate username surfaces as sqlalchemy.exc.IntegrityError so callers
  can report a conflict. Every other SQLAlchemyError is re-raised as
  DependencyUnavailable.

Layer rule: no imports from api/, registry/, audit/, or selftest/.
"""

from __future__ import annotations

import logging

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import User
from core.db import from_iso, make_engine, to_iso, utcnow
from core.errors import DependencyUnavailable

logger = logging.getLogger("codeguard.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),
    Column("role", String(30), nullable=False, server_default="customer"),
    Column("created_at", String(40), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login", String(40)),  # ISO 8601 timestamp of last successful auth
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Account lookups for login, token resolution and user administration.

    Usage:
        users = UserStore("sqlite:///codeguard.db")
        uid = users.create_user(User(username="dr-kim", role="doctor", hashed_password=hash_password(pw)))
        user = users.get_by_id(uid)
    """

    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        _metadata.create_all(self.engine)

    def has_users(self) -> bool:
        try:
            with self.engine.connect() as conn:
                result = conn.execute(select(func.count()).select_from(_users)).scalar()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("user store read failed") from exc
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert user and return the new id. A taken username raises IntegrityError."""
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _users.insert().values(
                        username=user.username,
                        hashed_password=user.hashed_password,
                        role=user.role,
                        created_at=to_iso(utcnow()),
                        is_active=1 if user.is_active else 0,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("user store insert failed") from exc

    def get_by_username(self, username: str) -> User | None:
        """Exact, case-sensitive match; None when absent."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("user store read failed") from exc
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("user store read failed") from exc
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Every account, sorted by username."""
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("user store read failed") from exc
        return [_row_to_user(r) for r in rows]

    def ensure_user(self, username: str, role: str, hashed_password: str | None = None) -> User:
        """Return the user with this username, creating it first if needed.

        Used for the self-test probe identities. A concurrent creator winning
        the insert is fine -- we re-read and return its record.
        """
        existing = self.get_by_username(username)
        if existing is not None:
            return existing
        try:
            self.create_user(User(username=username, role=role, hashed_password=hashed_password))
        except IntegrityError:
            logger.debug("Probe user %s created concurrently", username)
        user = self.get_by_username(username)
        if user is None:
            raise DependencyUnavailable(f"user {username!r} vanished after insert")
        return user

    def update_last_login(self, user_id: int) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=to_iso(utcnow())))
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("user store update failed") from exc

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


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        role=row.role,
        created_at=from_iso(row.created_at),
        is_active=bool(row.is_active),
        last_login=from_iso(row.last_login),
    )
