"""
registry/store.py -- SQLAlchemy-backed persistence for signup codes.

Uses SQLAlchemy Core (not ORM) so the dataclasses in registry/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Pattern: Repository + Data Mapper. CodeStore is the repository; the _row_to_*
functions are the mappers. Route handlers never touch SQL directly, and only
registry/registry.py calls the mutating methods.

Store-level guarantees the registry relies on:
  - One live code per owner: a partial unique index on owner_id over rows
    with is_active = 1. A second concurrent insert for the same owner fails
    with IntegrityError and insert() reports False.
  - No over-redemption: consume() increments used_count with a conditional
    UPDATE (used_count < max_uses, active, not expired) and writes the usage
    row in the same transaction. Zero rows updated means nothing changed.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = CodeStore("sqlite:///codes.db")
    store.insert(code)
    store.consume("AB12CD34", redeemer_id="17", now=utcnow(), ip_address="203.0.113.0")
    store.close()
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.db import from_iso, make_engine, to_iso
from core.errors import DependencyUnavailable
from registry.models import HospitalProfile, SignupCode, UsageRecord

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_codes = Table(
    "signup_codes",
    metadata,
    Column("code", String(8), primary_key=True),
    Column("owner_id", String(64), nullable=False),
    Column("hospital_name", String(200), nullable=False),
    Column("hospital_type", String(100), nullable=False, server_default=""),
    Column("region", String(100), nullable=False, server_default=""),
    Column("address", String(255), nullable=False, server_default=""),
    Column("phone_number", String(32), nullable=False, server_default=""),
    Column("description", Text, nullable=False, server_default=""),
    Column("max_uses", Integer, nullable=False),
    Column("used_count", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    Column("expires_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("deactivated_at", String(40)),
    Column("deactivated_by", String(64)),
)

Index(
    "uq_signup_codes_live_owner",
    _codes.c.owner_id,
    unique=True,
    sqlite_where=_codes.c.is_active == 1,
    postgresql_where=_codes.c.is_active == 1,
)

_redemptions = Table(
    "code_redemptions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(8), nullable=False, index=True),
    Column("redeemer_id", String(64), nullable=False),
    Column("redeemed_at", String(40), nullable=False),
    Column("ip_address", String(64), nullable=False),
    Column("user_agent", String(255), nullable=False, server_default=""),
)


class CodeStore:
    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        self.engine: Engine = make_engine(db_url, timeout)
        metadata.create_all(self.engine)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get(self, code: str) -> Optional[SignupCode]:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(_codes.select().where(_codes.c.code == code)).fetchone()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store read failed") from exc
        return _row_to_code(row) if row is not None else None

    def active_for_owner(self, owner_id: str) -> Optional[SignupCode]:
        stmt = _codes.select().where((_codes.c.owner_id == owner_id) & (_codes.c.is_active == 1))
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).fetchone()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store read failed") from exc
        return _row_to_code(row) if row is not None else None

    def list_for_owner(self, owner_id: str) -> list[SignupCode]:
        stmt = _codes.select().where(_codes.c.owner_id == owner_id).order_by(_codes.c.created_at.desc())
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store read failed") from exc
        return [_row_to_code(r) for r in rows]

    def usage_history(self, code: str) -> list[UsageRecord]:
        """Redemptions of code, oldest first."""
        stmt = (
            select(_redemptions)
            .where(_redemptions.c.code == code)
            .order_by(_redemptions.c.redeemed_at, _redemptions.c.id)
        )
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).fetchall()
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store read failed") from exc
        return [_row_to_usage(r) for r in rows]

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def insert(self, code: SignupCode) -> bool:
        """Insert a new code. Returns False on a uniqueness conflict.

        The conflict is either a code collision (primary key) or a live code
        already held by the owner (partial unique index); the caller decides
        which by re-reading.
        """
        p = code.profile
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _codes.insert().values(
                        code=code.code,
                        owner_id=code.owner_id,
                        hospital_name=p.hospital_name,
                        hospital_type=p.hospital_type,
                        region=p.region,
                        address=p.address,
                        phone_number=p.phone_number,
                        description=p.description,
                        max_uses=code.max_uses,
                        used_count=code.used_count,
                        is_active=1 if code.is_active else 0,
                        expires_at=to_iso(code.expires_at),
                        created_at=to_iso(code.created_at),
                    )
                )
        except IntegrityError:
            return False
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store insert failed") from exc
        return True

    def consume(
        self,
        code: str,
        redeemer_id: str,
        now: datetime,
        ip_address: str,
        user_agent: str = "",
    ) -> bool:
        """Take one use of code and record who took it, atomically.

        Returns False (and writes nothing) if the code is no longer active,
        has expired, or has no uses left at the moment of the UPDATE.
        """
        now_iso = to_iso(now)
        stmt = (
            _codes.update()
            .where(
                (_codes.c.code == code)
                & (_codes.c.is_active == 1)
                & (_codes.c.used_count < _codes.c.max_uses)
                & or_(_codes.c.expires_at.is_(None), _codes.c.expires_at > now_iso)
            )
            .values(used_count=_codes.c.used_count + 1)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
                if result.rowcount != 1:
                    return False
                conn.execute(
                    _redemptions.insert().values(
                        code=code,
                        redeemer_id=redeemer_id,
                        redeemed_at=now_iso,
                        ip_address=ip_address,
                        user_agent=user_agent[:255],
                    )
                )
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store redeem failed") from exc
        return True

    def deactivate(self, code: str, actor_id: str, now: datetime) -> bool:
        """Set is_active False. used_count and history are left untouched."""
        stmt = (
            _codes.update()
            .where((_codes.c.code == code) & (_codes.c.is_active == 1))
            .values(is_active=0, deactivated_at=to_iso(now), deactivated_by=actor_id)
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store update failed") from exc
        return result.rowcount > 0

    def deactivate_expired_for_owner(self, owner_id: str, now: datetime) -> int:
        """Retire the owner's live code if it has expired, freeing the live slot."""
        stmt = (
            _codes.update()
            .where(
                (_codes.c.owner_id == owner_id)
                & (_codes.c.is_active == 1)
                & _codes.c.expires_at.is_not(None)
                & (_codes.c.expires_at <= to_iso(now))
            )
            .values(is_active=0, deactivated_at=to_iso(now), deactivated_by="system")
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise DependencyUnavailable("code store update failed") from exc
        return result.rowcount

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
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_code(row) -> SignupCode:
    return SignupCode(
        code=row.code,
        owner_id=row.owner_id,
        profile=HospitalProfile(
            hospital_name=row.hospital_name,
            hospital_type=row.hospital_type or "",
            region=row.region or "",
            address=row.address or "",
            phone_number=row.phone_number or "",
            description=row.description or "",
        ),
        max_uses=row.max_uses,
        used_count=row.used_count,
        is_active=bool(row.is_active),
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        deactivated_at=from_iso(row.deactivated_at),
        deactivated_by=row.deactivated_by,
    )


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        id=row.id,
        redeemer_id=row.redeemer_id,
        redeemed_at=from_iso(row.redeemed_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent or "",
    )
