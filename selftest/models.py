"""
selftest/models.py -- Run state, probe definitions and reports for the security self-test.

Pattern: Data class. Scoring lives in selftest/harness.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

CATEGORIES: tuple[str, ...] = ("role_access", "privilege_escalation", "token_validation", "crud_boundary")
TEST_TYPES: tuple[str, ...] = ("full", "category")

SEVERITY_WEIGHTS: dict[str, int] = {"low": 1, "medium": 3, "high": 5, "critical": 10}


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProbeCase:
    """One request the harness sends and the statuses that count as a pass.

    credential names the Authorization header the probe carries: a role
    ("admin", "doctor", "customer"), a broken-token variant ("expired",
    "wrong_key", "garbage", "malformed", "empty_bearer", "unknown_user"),
    or "none" for no header at all.
    """

    check: str
    category: str
    credential: str
    method: str
    path: str
    expected: tuple[int, ...]
    severity: str = "high"
    body: Optional[dict[str, Any]] = None


@dataclass(frozen=True)
class ProbeResult:
    check: str
    category: str
    severity: str
    method: str
    path: str
    expected: tuple[int, ...]
    actual: Optional[int]
    passed: bool
    error: str = ""


@dataclass
class SelfTestReport:
    run_id: str
    test_type: str
    category: Optional[str]
    state: RunState
    started_at: datetime
    started_by: str
    finished_at: Optional[datetime] = None
    total: int = 0
    passed: int = 0
    failed: int = 0
    overall_score: float = 0.0
    risk_score: int = 0
    risk_level: str = "low"
    results: list[ProbeResult] = field(default_factory=list)
    error: str = ""
