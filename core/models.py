"""
core/models.py -- Kernel-level domain constants and dataclasses.

Pattern: Data class (pure data container, zero logic). Each layer owns its
own models module (auth/models.py, registry/models.py, audit/models.py,
selftest/models.py); this one only holds what every layer shares.

Layer rule: no imports from other project packages.
"""

from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ROLE_ADMIN = "admin"
ROLE_DOCTOR = "doctor"
ROLE_CUSTOMER = "customer"

ROLES: tuple[str, ...] = (ROLE_ADMIN, ROLE_DOCTOR, ROLE_CUSTOMER)

# bcrypt reads at most 72 bytes of a password; longer input is refused.
PASSWORD_MAX_BYTES = 72

# Canonical signup-code shape. A domain rule -- not an API contract.
CODE_PATTERN = r"^[A-Z0-9]{8}$"
CODE_LENGTH = 8
CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


@dataclass
class RateLimitRecord:
    """Counter for one (actor, action) key inside the current window.

    window_reset_at is on the limiter's clock (monotonic seconds). It only
    moves forward: a new window starts strictly after the old one expired.
    """

    count: int
    window_reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one RateLimiter.check() call.

    retry_after is whole seconds until the window resets, 0 when allowed.
    """

    allowed: bool
    count: int
    limit: int
    reset_at: float
    retry_after: int = 0
    key: Optional[str] = None
