"""
registry/models.py -- Domain dataclasses for signup codes and their use.

Pure data containers. State transitions on SignupCode (issue, redeem, revoke)
live in registry/registry.py and nowhere else.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class HospitalProfile:
    """Metadata an owner attaches to a code at issue time.

    Only the fields in disclosable() are ever shown to a redeemer. phone_number
    stays with the owner.
    """

    hospital_name: str
    hospital_type: str = ""
    region: str = ""
    address: str = ""
    phone_number: str = ""
    description: str = ""

    def disclosable(self) -> dict[str, str]:
        return {
            "hospital_name": self.hospital_name,
            "hospital_type": self.hospital_type,
            "region": self.region,
            "address": self.address,
        }


@dataclass
class SignupCode:
    """An 8-character code one doctor/hospital issues for others to redeem.

    Invariant: 0 <= used_count <= max_uses. A code is never deleted; revoking
    it sets is_active False and records who did it.
    """

    code: str
    owner_id: str
    profile: HospitalProfile
    max_uses: int
    used_count: int = 0
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    deactivated_by: Optional[str] = None

    @property
    def remaining_uses(self) -> int:
        return max(self.max_uses - self.used_count, 0)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass(frozen=True)
class Redemption:
    """Result of one successful redeem: what the redeemer is entitled to see."""

    code: str
    hospital_data: dict
    remaining_uses: int
    expires_at: Optional[datetime]
    redeemed_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """One row of a code's usage history. ip_address is masked at insert."""

    redeemer_id: str
    redeemed_at: datetime
    ip_address: str
    user_agent: str = ""
    id: Optional[int] = None


@dataclass(frozen=True)
class Verification:
    is_valid: bool
    hospital_data: dict
    remaining_uses: int
    expires_at: Optional[datetime]
