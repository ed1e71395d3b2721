"""
auth/enforcer.py -- The guard in front of every mutating or disclosive operation.

AccessEnforcer.authorize() runs one fixed pipeline and stops at the first
failure:

  1. bearer extraction      -> UNAUTHENTICATED if absent or malformed
  2. token validation       -> UNAUTHENTICATED if invalid, expired, or the
                               user is unknown or deactivated
  3. role check             -> FORBIDDEN if the role is not in the action's set
  4. ownership (scoped)     -> FORBIDDEN on mismatch, NOT_FOUND if the
                               resource does not exist
  5. rate limit             -> RATE_LIMITED with retry_after, keyed
                               "{action}:{actor}"

Public actions skip steps 1-4 and are rate limited per client address.

Every failure is written to the audit trail before authorize() returns it.
On success the caller performs the operation and then reports its terminal
outcome through record(), so every request leaves exactly one audit entry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from audit.logger import AuditLogger
from audit.models import ANONYMOUS, OUTCOME_DENIED, OUTCOME_FAILURE, OUTCOME_SUCCESS
from auth.identity import IdentityProvider
from auth.models import Principal
from core.config import Settings
from core.errors import ErrorKind, Failure
from core.models import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_DOCTOR, ROLES
from core.ratelimit import RateLimiter, parse_rate
from core.validator import validate_ownership

logger = logging.getLogger("codeguard.enforcer")

ANONYMOUS_PRINCIPAL = Principal(user_id=ANONYMOUS, username=ANONYMOUS, role="")

# Failures a client caused by not being allowed; everything else is a failure
# of the operation itself.
_DENIED_KINDS = frozenset({ErrorKind.UNAUTHENTICATED, ErrorKind.FORBIDDEN, ErrorKind.RATE_LIMITED})


@dataclass(frozen=True)
class RequestContext:
    """What the enforcer needs from an inbound request.

    started_at is time.perf_counter() at request entry; audit durations are
    measured from it.
    """

    authorization: str = ""
    ip_address: str = ""
    user_agent: str = ""
    started_at: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000


@dataclass(frozen=True)
class ActionPolicy:
    """Who may perform an action, and how often.

    roles empty means the action is public. scoped actions require the
    caller to own the resource.
    """

    roles: frozenset[str]
    rate_limit: str
    scoped: bool = False

    @property
    def public(self) -> bool:
        return not self.roles


def default_policies(settings: Settings) -> dict[str, ActionPolicy]:
    doctor = frozenset({ROLE_DOCTOR})
    admin = frozenset({ROLE_ADMIN})
    default = settings.default_action_rate_limit
    return {
        "code.issue": ActionPolicy(doctor, settings.code_issue_rate_limit),
        "code.list": ActionPolicy(doctor, default),
        "code.verify": ActionPolicy(frozenset(), settings.verify_rate_limit),
        "code.redeem": ActionPolicy(frozenset({ROLE_CUSTOMER, ROLE_DOCTOR}), settings.redeem_rate_limit),
        "code.revoke": ActionPolicy(doctor, default, scoped=True),
        "code.usage_history": ActionPolicy(doctor, settings.usage_history_rate_limit, scoped=True),
        "code.share_email": ActionPolicy(doctor, settings.share_email_rate_limit, scoped=True),
        "user.me": ActionPolicy(frozenset(ROLES), default),
        "user.create": ActionPolicy(admin, default),
        "user.list": ActionPolicy(admin, default),
        "audit.query": ActionPolicy(admin, default),
        "flag.create": ActionPolicy(doctor, default),
        "flag.list": ActionPolicy(admin, default),
        "flag.review": ActionPolicy(admin, default),
        "selftest.run": ActionPolicy(admin, default),
        "selftest.status": ActionPolicy(admin, default),
    }


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from "Bearer <token>", or None if absent or malformed."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        return None
    return token


class AccessEnforcer:
    def __init__(
        self,
        identity: IdentityProvider,
        limiter: RateLimiter,
        audit: AuditLogger,
        policies: Mapping[str, ActionPolicy],
    ) -> None:
        self._identity = identity
        self._limiter = limiter
        self._audit = audit
        self._policies = dict(policies)
        self._rates = {action: parse_rate(p.rate_limit) for action, p in self._policies.items()}

    def policy(self, action: str) -> ActionPolicy:
        return self._policies[action]

    def authorize(
        self,
        ctx: RequestContext,
        action: str,
        owner: Optional[Callable[[], Union[str, Failure]]] = None,
    ) -> Union[Principal, Failure]:
        """Run the pipeline for one action.

        owner is called only after the role check passes and only for scoped
        actions, so an unauthorised caller cannot probe which resources exist.
        """
        policy = self._policies.get(action)
        if policy is None:
            # Unknown action is a wiring bug; fail closed.
            logger.error("No access policy for action %s", action)
            return self._deny(ctx, action, None, Failure(ErrorKind.FORBIDDEN))

        if policy.public:
            return self._rate_limit(ctx, action, ANONYMOUS_PRINCIPAL, f"{action}:ip:{ctx.ip_address or 'unknown'}")

        token = extract_bearer(ctx.authorization)
        if token is None:
            return self._deny(ctx, action, None, Failure(ErrorKind.UNAUTHENTICATED))

        user = self._identity.resolve(token)
        if isinstance(user, Failure):
            return self._deny(ctx, action, None, user)
        principal = Principal(user_id=str(user.id), username=user.username, role=user.role)

        if principal.role not in policy.roles:
            return self._deny(ctx, action, principal, Failure(ErrorKind.FORBIDDEN))

        if policy.scoped:
            resource_owner = owner() if owner is not None else None
            if isinstance(resource_owner, Failure):
                return self._deny(ctx, action, principal, resource_owner)
            failure = validate_ownership(resource_owner, principal.user_id)
            if failure is not None:
                return self._deny(ctx, action, principal, failure)

        return self._rate_limit(ctx, action, principal, f"{action}:{principal.user_id}")

    def record(
        self,
        ctx: RequestContext,
        action: str,
        principal: Optional[Principal],
        result: Any = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Audit the terminal outcome of an operation that passed authorize()."""
        if isinstance(result, Failure):
            self._write(ctx, action, principal, _outcome_for(result), result.kind, details)
        else:
            self._write(ctx, action, principal, OUTCOME_SUCCESS, None, details)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _rate_limit(
        self, ctx: RequestContext, action: str, principal: Principal, key: str
    ) -> Union[Principal, Failure]:
        amount, window = self._rates[action]
        decision = self._limiter.check(key, amount, window)
        if not decision.allowed:
            return self._deny(
                ctx,
                action,
                principal,
                Failure(ErrorKind.RATE_LIMITED, retry_after=decision.retry_after),
            )
        return principal

    def _deny(
        self, ctx: RequestContext, action: str, principal: Optional[Principal], failure: Failure
    ) -> Failure:
        details = {"retry_after": failure.retry_after} if failure.retry_after else None
        self._write(ctx, action, principal, _outcome_for(failure), failure.kind, details)
        return failure

    def _write(
        self,
        ctx: RequestContext,
        action: str,
        principal: Optional[Principal],
        outcome: str,
        error_kind: Optional[ErrorKind],
        details: Optional[Mapping[str, Any]],
    ) -> None:
        self._audit.record(
            action=action,
            outcome=outcome,
            actor_id=principal.user_id if principal is not None else None,
            ip_address=ctx.ip_address,
            details=details,
            duration_ms=ctx.elapsed_ms(),
            error_kind=error_kind,
            user_agent=ctx.user_agent,
        )


def _outcome_for(failure: Failure) -> str:
    return OUTCOME_DENIED if failure.kind in _DENIED_KINDS else OUTCOME_FAILURE
