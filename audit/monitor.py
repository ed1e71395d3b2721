"""
audit/monitor.py -- Turns bursts of failed code checks into activity flags.

After a failed verify or redeem the route calls observe() for the caller's
subject (the actor id when authenticated, otherwise the masked client
address). The monitor counts that subject's failures inside the window from
the audit trail and raises one unusual_behavior flag per open episode.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from audit.flags import ActivityFlags
from audit.logger import AuditLogger
from audit.masking import safe_mask_ip
from core.db import utcnow
from core.errors import Failure

logger = logging.getLogger("codeguard.monitor")

WATCHED_ACTIONS: tuple[str, ...] = ("code.verify", "code.redeem")
FLAG_TYPE = "unusual_behavior"
SYSTEM_ACTOR = "system"


class SuspiciousActivityMonitor:
    def __init__(
        self,
        audit: AuditLogger,
        flags: ActivityFlags,
        threshold: int = 5,
        window_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if threshold < 1 or window_seconds < 1:
            raise ValueError("threshold and window_seconds must be positive")
        self._audit = audit
        self._flags = flags
        self._threshold = threshold
        self._window = timedelta(seconds=window_seconds)
        self._clock = clock

    def observe(self, actor_id: Optional[str] = None, ip_address: Optional[str] = None) -> Optional[str]:
        """Check one subject and flag it if it crossed the threshold.

        Returns the severity of a newly raised flag, or None. Store failures
        are logged; monitoring never fails the request that triggered it.
        """
        if actor_id is not None:
            subject = str(actor_id)
            count = self._audit.count_failures(self._clock() - self._window, WATCHED_ACTIONS, actor_id=subject)
        else:
            subject = safe_mask_ip(ip_address)
            count = self._audit.count_failures(self._clock() - self._window, WATCHED_ACTIONS, ip_address=subject)
        if isinstance(count, Failure) or count < self._threshold:
            return None

        has_open = self._flags.has_open(subject, FLAG_TYPE)
        if isinstance(has_open, Failure) or has_open:
            return None

        severity = "high" if count >= 2 * self._threshold else "medium"
        flag = self._flags.raise_flag(
            subject_id=subject,
            flag_type=FLAG_TYPE,
            severity=severity,
            description=f"{count} failed code checks in {int(self._window.total_seconds())}s",
            created_by=SYSTEM_ACTOR,
            metadata={"failures": count, "actions": list(WATCHED_ACTIONS)},
        )
        if isinstance(flag, Failure):
            return None
        logger.warning("Subject %s flagged for %d failed code checks", subject, count)
        return severity
