"""
registry/registry.py -- Signup-code lifecycle: issue, look up, redeem, revoke.

CodeRegistry is the only component that changes SignupCode state. Every
public method returns its value or a core.errors.Failure; store errors are
caught here and surfaced as DEPENDENCY_UNAVAILABLE.

Redemption checks run in a fixed order and stop at the first failure:

    format -> exists -> active -> not expired -> uses remaining

The increment itself is a conditional UPDATE in the store (see
CodeStore.consume), and calls for the same code are serialised through a
per-code lock, so concurrent redeemers racing for the last use cannot both
succeed.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime
from typing import Optional, Union

from core.db import utcnow
from core.errors import DependencyUnavailable, ErrorKind, Failure
from core.models import CODE_ALPHABET, CODE_LENGTH
from core.ratelimit import KeyedLocks, RateLimiter, parse_rate
from core.validator import code_strength_issues, validate_format, validate_ownership
from registry.models import HospitalProfile, Redemption, SignupCode, UsageRecord
from registry.store import CodeStore

logger = logging.getLogger("codeguard.registry")

_MAX_ISSUE_ATTEMPTS = 5


def generate_code(choice: Callable[[str], str] = secrets.choice) -> str:
    """Return a random code that passes code_strength_issues()."""
    while True:
        code = "".join(choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
        if not code_strength_issues(code):
            return code


def check_redeemable(code: Optional[SignupCode], now: datetime) -> Optional[Failure]:
    """Apply the post-format redemption checks to a stored code.

    Shared by redeem() and the verifier so both reject for the same reason.
    """
    if code is None or not code.is_active:
        return Failure(ErrorKind.INVALID_CODE)
    if code.is_expired(now):
        return Failure(ErrorKind.CODE_EXPIRED)
    if code.used_count >= code.max_uses:
        return Failure(ErrorKind.CODE_EXHAUSTED)
    return None


class CodeRegistry:
    """Owns issue/redeem/revoke for signup codes.

    Usage:
        registry = CodeRegistry(CodeStore(url), RateLimiter())
        code = registry.issue("42", HospitalProfile("Seoul Clinic"))
        result = registry.redeem(code.code, redeemer_id="17", ip_address="203.0.113.0")
    """

    def __init__(
        self,
        store: CodeStore,
        limiter: RateLimiter,
        codegen_limit: str = "1/day",
        default_max_uses: int = 10,
        max_uses_ceiling: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self._store = store
        self._limiter = limiter
        self._codegen_amount, self._codegen_window = parse_rate(codegen_limit)
        self._default_max_uses = default_max_uses
        self._max_uses_ceiling = max_uses_ceiling
        self._clock = clock
        self._code_factory = code_factory
        self._locks = KeyedLocks()

    # -----------------------------------------------------------------------
    # Issue
    # -----------------------------------------------------------------------

    def issue(
        self,
        owner_id: Union[int, str],
        profile: HospitalProfile,
        max_uses: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Union[SignupCode, Failure]:
        owner = str(owner_id)
        now = self._clock()
        max_uses = self._default_max_uses if max_uses is None else max_uses
        if not 1 <= max_uses <= self._max_uses_ceiling:
            return Failure(ErrorKind.INVALID_FORMAT, f"max_uses must be between 1 and {self._max_uses_ceiling}.")
        if expires_at is not None and expires_at <= now:
            return Failure(ErrorKind.INVALID_FORMAT, "expires_at must be in the future.")
        if not profile.hospital_name.strip():
            return Failure(ErrorKind.INVALID_FORMAT, "hospital_name is required.")

        try:
            self._store.deactivate_expired_for_owner(owner, now)
            if self._store.active_for_owner(owner) is not None:
                return Failure(ErrorKind.ALREADY_HAS_CODE)
        except DependencyUnavailable:
            logger.exception("Code store unavailable during issue for owner %s", owner)
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

        key = f"codegen:{owner}"
        decision = self._limiter.check(key, self._codegen_amount, self._codegen_window)
        if not decision.allowed:
            return Failure(
                ErrorKind.RATE_LIMITED,
                "Only one signup code may be issued per day.",
                retry_after=decision.retry_after,
            )

        result = self._insert_new(owner, profile, max_uses, expires_at, now)
        if isinstance(result, Failure):
            # Nothing was issued, so the daily slot goes back.
            self._limiter.release(key)
        return result

    def _insert_new(
        self,
        owner: str,
        profile: HospitalProfile,
        max_uses: int,
        expires_at: Optional[datetime],
        now: datetime,
    ) -> Union[SignupCode, Failure]:
        try:
            for _ in range(_MAX_ISSUE_ATTEMPTS):
                candidate = SignupCode(
                    code=self._code_factory(),
                    owner_id=owner,
                    profile=profile,
                    max_uses=max_uses,
                    expires_at=expires_at,
                    created_at=now,
                )
                if self._store.insert(candidate):
                    logger.info("Signup code issued for owner %s", owner)
                    return candidate
                # Either a concurrent issue for this owner won the live slot,
                # or the random code collided with an existing one.
                if self._store.active_for_owner(owner) is not None:
                    return Failure(ErrorKind.ALREADY_HAS_CODE)
        except DependencyUnavailable:
            logger.exception("Code store unavailable during issue for owner %s", owner)
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

        logger.error("Could not allocate a unique signup code after %d attempts", _MAX_ISSUE_ATTEMPTS)
        return Failure(ErrorKind.INTERNAL)

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def lookup(self, code: str) -> Union[SignupCode, Failure]:
        failure = validate_format(code)
        if failure is not None:
            return failure
        try:
            found = self._store.get(code)
        except DependencyUnavailable:
            logger.exception("Code store unavailable during lookup")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        if found is None:
            return Failure(ErrorKind.NOT_FOUND, "Signup code not found.")
        return found

    def owner_of(self, code: str) -> Union[str, Failure]:
        found = self.lookup(code)
        if isinstance(found, Failure):
            return found
        return found.owner_id

    def list_for_owner(self, owner_id: Union[int, str]) -> Union[list[SignupCode], Failure]:
        try:
            return self._store.list_for_owner(str(owner_id))
        except DependencyUnavailable:
            logger.exception("Code store unavailable while listing codes")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

    def usage_history(self, code: str, actor_id: Union[int, str]) -> Union[list[UsageRecord], Failure]:
        """Redemptions of a code, visible to its owner only."""
        found = self.lookup(code)
        if isinstance(found, Failure):
            return found
        failure = validate_ownership(found.owner_id, actor_id)
        if failure is not None:
            return failure
        try:
            return self._store.usage_history(code)
        except DependencyUnavailable:
            logger.exception("Code store unavailable while reading usage history")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

    # -----------------------------------------------------------------------
    # Redeem / revoke
    # -----------------------------------------------------------------------

    def redeem(
        self,
        code: str,
        redeemer_id: Union[int, str],
        ip_address: str = "",
        user_agent: str = "",
    ) -> Union[Redemption, Failure]:
        """Consume one use of code.

        ip_address is written to the usage history as given; callers pass
        the masked address.
        """
        failure = validate_format(code)
        if failure is not None:
            return failure

        with self._locks.hold(code):
            now = self._clock()
            try:
                current = self._store.get(code)
                failure = check_redeemable(current, now)
                if failure is not None:
                    return failure
                if not self._store.consume(code, str(redeemer_id), now, ip_address, user_agent):
                    # Changed under us (another process, or revoked): report why.
                    return check_redeemable(self._store.get(code), now) or Failure(ErrorKind.CODE_EXHAUSTED)
            except DependencyUnavailable:
                logger.exception("Code store unavailable during redeem")
                return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)

        return Redemption(
            code=code,
            hospital_data=current.profile.disclosable(),
            remaining_uses=max(current.remaining_uses - 1, 0),
            expires_at=current.expires_at,
            redeemed_at=now,
        )

    def revoke(self, code: str, actor_id: Union[int, str]) -> Union[SignupCode, Failure]:
        found = self.lookup(code)
        if isinstance(found, Failure):
            return found
        failure = validate_ownership(found.owner_id, actor_id)
        if failure is not None:
            return failure
        with self._locks.hold(code):
            now = self._clock()
            try:
                self._store.deactivate(code, str(actor_id), now)
                revoked = self._store.get(code)
            except DependencyUnavailable:
                logger.exception("Code store unavailable during revoke")
                return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        logger.info("Signup code revoked by owner %s", actor_id)
        return revoked
