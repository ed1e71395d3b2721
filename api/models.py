"""
API request and response models for CodeGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in registry/models.py,
audit/models.py and selftest/models.py, which own the internal domain
representation. Route handlers map between the two.

Every request body is validated here before any business logic runs; a
violation becomes 400 INVALID_FORMAT (see api/errors.py).
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.models import CODE_LENGTH, PASSWORD_MAX_BYTES

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    doctor = "doctor"
    customer = "customer"


class FlagTypeEnum(str, Enum):
    suspicious_login = "suspicious_login"
    multiple_accounts = "multiple_accounts"
    unusual_behavior = "unusual_behavior"
    policy_violation = "policy_violation"


class SeverityEnum(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class FlagStatusEnum(str, Enum):
    pending = "pending"
    investigating = "investigating"
    resolved = "resolved"
    false_positive = "false_positive"


class OutcomeEnum(str, Enum):
    success = "success"
    failure = "failure"
    denied = "denied"


class TestTypeEnum(str, Enum):
    full = "full"
    category = "category"


class CategoryEnum(str, Enum):
    role_access = "role_access"
    privilege_escalation = "privilege_escalation"
    token_validation = "token_validation"
    crud_boundary = "crud_boundary"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Error envelope returned on every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    error: str
    message: str
    retry_after: Optional[int] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    dependencies: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=72)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int
    username: str
    role: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str


class UserCreate(BaseModel):
    """Request body for POST /api/v1/auth/users (admin only)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=64, pattern=r"^[A-Za-z0-9_.@-]+$")
    password: str = Field(min_length=8, max_length=72)
    role: RoleEnum = RoleEnum.customer

    @field_validator("password")
    @classmethod
    def check_password_bytes(cls, value: str) -> str:
        # max_length counts characters; bcrypt counts UTF-8 bytes.
        if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
            raise ValueError(f"password must be at most {PASSWORD_MAX_BYTES} bytes")
        return value


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    is_active: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Signup codes
# ---------------------------------------------------------------------------


class CodeCreate(BaseModel):
    """Request body for POST /api/v1/codes -- the owner's hospital metadata."""

    model_config = ConfigDict(str_strip_whitespace=True)

    hospital_name: str = Field(min_length=1, max_length=200)
    hospital_type: str = Field(default="", max_length=100)
    region: str = Field(default="", max_length=100)
    address: str = Field(default="", max_length=255)
    phone_number: str = Field(default="", max_length=32)
    description: str = Field(default="", max_length=200)
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def require_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        """Naive timestamps are ambiguous; reject them instead of guessing UTC."""
        if value is not None and value.tzinfo is None:
            raise ValueError("expires_at must include a timezone offset")
        return value


class CodeCheck(BaseModel):
    """Request body for POST /api/v1/codes/verify and /codes/redeem.

    Only a loose length bound here: the exact code shape is checked by
    core.validator so every malformed code gets the same INVALID_FORMAT
    answer whichever route it came through.
    """

    code: str = Field(max_length=CODE_LENGTH * 8)


class HospitalData(BaseModel):
    """The subset of an owner's metadata a redeemer may see."""

    model_config = ConfigDict(frozen=True)

    hospital_name: str
    hospital_type: str = ""
    region: str = ""
    address: str = ""


class CodeResponse(BaseModel):
    """A signup code as its owner sees it."""

    model_config = ConfigDict(frozen=True)

    code: str
    hospital_name: str
    hospital_type: str
    region: str
    address: str
    phone_number: str
    description: str
    max_uses: int
    used_count: int
    remaining_uses: int
    is_active: bool
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None


class VerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    hospital_data: HospitalData
    remaining_uses: int
    expires_at: Optional[datetime] = None


class RedeemResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    hospital_data: HospitalData
    remaining_uses: int
    expires_at: Optional[datetime] = None
    redeemed_at: datetime


class UsageRecordResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    redeemer_id: str
    redeemed_at: datetime
    ip_address: str
    user_agent: str = ""


class UsageHistoryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    total: int
    redemptions: list[UsageRecordResponse]


class ShareEmailRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=254)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        if not _EMAIL_RE.fullmatch(value):
            # Do not echo the rejected address back in the error.
            raise ValueError("not a valid email address")
        return value


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Audit and activity flags
# ---------------------------------------------------------------------------


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    actor_id: str
    action: str
    outcome: str
    error_kind: Optional[str] = None
    ip_address: str
    user_agent: str = ""
    details: dict[str, Any]
    timestamp: datetime
    duration_ms: float


class AuditLogPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    entries: list[AuditLogResponse]
    limit: int
    offset: int


class FlagCreate(BaseModel):
    """Request body for POST /api/v1/customers/{customer_id}/flags."""

    model_config = ConfigDict(str_strip_whitespace=True)

    flag_type: FlagTypeEnum
    severity: SeverityEnum = SeverityEnum.medium
    description: str = Field(min_length=1, max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FlagReview(BaseModel):
    """Request body for PATCH /api/v1/activity-flags/{flag_id}."""

    status: FlagStatusEnum


class FlagResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    subject_id: str
    flag_type: str
    severity: str
    description: str
    status: str
    metadata: dict[str, Any]
    created_by: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Security self-test
# ---------------------------------------------------------------------------


class SelfTestRequest(BaseModel):
    test_type: TestTypeEnum = TestTypeEnum.full
    category: Optional[CategoryEnum] = None


class ProbeResultResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    check: str
    category: str
    severity: str
    method: str
    path: str
    expected: list[int]
    actual: Optional[int] = None
    passed: bool


class SelfTestReportResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    test_type: str
    category: Optional[str] = None
    state: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    total: int
    passed: int
    failed: int
    overall_score: float
    risk_score: int
    risk_level: str
    results: list[ProbeResultResponse]
    error: str = ""


class SelfTestStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: str
    report: Optional[SelfTestReportResponse] = None
