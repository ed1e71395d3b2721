"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in registry/models.py and audit/models.py -- dataclasses own domain shape;
stores and the enforcer do the work.

Layer rule: no imports from api/, registry/, audit/, or selftest/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """An identity that can log in and act on signup codes.

    role is one of core.models.ROLES. Doctors issue codes; customers and
    other doctors redeem them; admins review the audit trail and flags and
    run the security self-test.
    """

    username: str
    role: str  # "admin" | "doctor" | "customer"
    id: int | None = None
    hashed_password: str | None = None
    created_at: datetime | None = None
    is_active: bool = True
    last_login: datetime | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of one request, as resolved by the enforcer.

    user_id is the string form of User.id -- resource owner ids are compared
    as strings everywhere.
    """

    user_id: str
    username: str
    role: str
