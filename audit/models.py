"""
audit/models.py -- Domain dataclasses for the audit trail and activity flags.

Pattern: Data class (pure data container, zero logic). Masking happens in
audit/masking.py before an AuditLogEntry is constructed; the entry itself is
frozen so nothing downstream can alter it.

Layer rule: no imports from api/, auth/, registry/, or selftest/.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

ANONYMOUS = "anonymous"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_DENIED = "denied"
OUTCOMES: tuple[str, ...] = (OUTCOME_SUCCESS, OUTCOME_FAILURE, OUTCOME_DENIED)

FLAG_TYPES: tuple[str, ...] = ("suspicious_login", "multiple_accounts", "unusual_behavior", "policy_violation")
SEVERITIES: tuple[str, ...] = ("low", "medium", "high", "critical")

FLAG_PENDING = "pending"
FLAG_INVESTIGATING = "investigating"
FLAG_RESOLVED = "resolved"
FLAG_FALSE_POSITIVE = "false_positive"
FLAG_STATUSES: tuple[str, ...] = (FLAG_PENDING, FLAG_INVESTIGATING, FLAG_RESOLVED, FLAG_FALSE_POSITIVE)
OPEN_FLAG_STATUSES: tuple[str, ...] = (FLAG_PENDING, FLAG_INVESTIGATING)


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable record of one security-relevant decision.

    ip_address and details_masked are already masked when this object is
    built -- AuditLogger.record() is the only constructor in application code.
    details_masked is a read-only mapping.

    id is None before the record is written to the database.
    """

    actor_id: str
    action: str
    outcome: str  # "success" | "failure" | "denied"
    ip_address: str
    details_masked: Mapping[str, Any]
    timestamp: datetime
    duration_ms: float
    error_kind: Optional[str] = None
    user_agent: str = ""
    id: Optional[int] = None


@dataclass
class AuditQuery:
    """Filters accepted by AuditStore.query(). None means "any"."""

    actor_id: Optional[str] = None
    action: Optional[str] = None
    outcome: Optional[str] = None
    ip_address: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 50
    offset: int = 0


@dataclass
class ActivityFlag:
    """Abuse signal raised against a customer, doctor, or masked client address.

    status moves pending -> investigating -> resolved | false_positive.
    Resolved and false_positive are terminal.

    id is None before the record is written to the database.
    """

    subject_id: str
    flag_type: str  # see FLAG_TYPES
    severity: str  # "low" | "medium" | "high" | "critical"
    description: str
    created_by: str
    status: str = FLAG_PENDING
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None
