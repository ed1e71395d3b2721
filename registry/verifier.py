"""
registry/verifier.py -- Answers "is this code redeemable right now?" without using it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Union

from core.db import utcnow
from core.errors import DependencyUnavailable, ErrorKind, Failure
from core.validator import validate_format
from registry.models import Verification
from registry.registry import check_redeemable
from registry.store import CodeStore

logger = logging.getLogger("codeguard.registry")


class Verifier:
    def __init__(self, store: CodeStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock

    def verify(self, code: object) -> Union[Verification, Failure]:
        """Run the redemption checks in order; the store is not touched for a malformed code."""
        failure = validate_format(code)
        if failure is not None:
            return failure
        try:
            found = self._store.get(code)
        except DependencyUnavailable:
            logger.exception("Code store unavailable during verify")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        failure = check_redeemable(found, self._clock())
        if failure is not None:
            return failure
        return Verification(
            is_valid=True,
            hospital_data=found.profile.disclosable(),
            remaining_uses=found.remaining_uses,
            expires_at=found.expires_at,
        )
