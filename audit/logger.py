"""
audit/logger.py -- The single writer of audit entries.

AuditLogger.record() masks PII first, then builds the frozen AuditLogEntry,
then appends it. The raw values never exist on an entry object, so nothing
downstream (store, query route, application log) can see them.

A failed append does not fail the caller. It is logged at ERROR with the
action and outcome, never with details.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Optional, Union

from audit.masking import mask_details, safe_mask_ip
from audit.models import ANONYMOUS, OUTCOMES, AuditLogEntry, AuditQuery
from audit.store import AuditStore
from core.db import utcnow
from core.errors import DependencyUnavailable, ErrorKind, Failure

logger = logging.getLogger("codeguard.audit")


class AuditLogger:
    def __init__(self, store: AuditStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def record(
        self,
        *,
        action: str,
        outcome: str,
        actor_id: Union[int, str, None] = None,
        ip_address: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        duration_ms: float = 0.0,
        error_kind: Union[ErrorKind, str, None] = None,
        user_agent: str = "",
    ) -> Optional[AuditLogEntry]:
        """Mask, build, and append one entry. Returns the stored entry, or None if the append failed."""
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown audit outcome {outcome!r}")
        entry = AuditLogEntry(
            actor_id=str(actor_id) if actor_id is not None else ANONYMOUS,
            action=action,
            outcome=outcome,
            ip_address=safe_mask_ip(ip_address),
            details_masked=MappingProxyType(mask_details(details)),
            timestamp=self._clock(),
            duration_ms=round(duration_ms, 3),
            error_kind=error_kind.value if isinstance(error_kind, ErrorKind) else error_kind,
            user_agent=(user_agent or "")[:255],
        )
        try:
            entry_id = self._store.append(entry)
        except DependencyUnavailable:
            logger.exception("Audit append failed (action=%s outcome=%s)", action, outcome)
            return None
        return replace(entry, id=entry_id)

    def query(self, filters: AuditQuery) -> Union[list[AuditLogEntry], Failure]:
        """Read-only access for reviewers. Authorization is the caller's job."""
        try:
            return self._store.query(filters)
        except DependencyUnavailable:
            logger.exception("Audit query failed")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

    def count_failures(self, since: datetime, actions, actor_id=None, ip_address=None) -> Union[int, Failure]:
        try:
            return self._store.count_failures(since, actions, actor_id=actor_id, ip_address=ip_address)
        except DependencyUnavailable:
            logger.exception("Audit failure count failed")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
