"""
selftest/harness.py -- Adversarial probes against the running API.

The harness behaves exactly like a client: it mints tokens for three probe
identities, sends requests through an httpx ASGITransport bound to the live
app, and compares each status with the statuses the probe expects. It never
calls enforcer or registry code directly.

Run state machine (one harness per process):

    idle -> running -> completed | failed
    completed | failed -> running          (next start)

start() moves to running under a lock and refuses with ALREADY_RUNNING while
a run is in flight -- a second request is rejected, never queued.
reap_stuck() fails a run that has been running longer than the timeout; a
reaped run that later finishes does not overwrite the reaped state.

Scoring:
    weights           low 1, medium 3, high 5, critical 10
    risk_score        sum of weights of failed probes
    overall_score     passed / total * 100
    risk_level        low (0), medium (< 5), high (< 10),
                      critical (>= 10, or any failed critical probe)
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any, Optional, Union

import httpx

from audit.logger import AuditLogger
from audit.models import OUTCOME_FAILURE, OUTCOME_SUCCESS
from auth.store import UserStore
from auth.tokens import create_access_token
from core.db import utcnow
from core.errors import DependencyUnavailable, ErrorKind, Failure
from core.models import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_DOCTOR
from selftest.models import (
    CATEGORIES,
    SEVERITY_WEIGHTS,
    TEST_TYPES,
    ProbeCase,
    ProbeResult,
    RunState,
    SelfTestReport,
)

logger = logging.getLogger("codeguard.selftest")

PROBE_USERS: dict[str, str] = {
    ROLE_ADMIN: "selftest-admin",
    ROLE_DOCTOR: "selftest-doctor",
    ROLE_CUSTOMER: "selftest-customer",
}


class IdentityMismatch(Exception):
    """A reserved self-test username exists with another role or is disabled."""


_API = "/api/v1"
_DENIED = (401, 403)
_PROBE_CODE = "ZX7Q4K9M"

# ---------------------------------------------------------------------------
# Probe matrix
# ---------------------------------------------------------------------------

_ADMIN_ENDPOINTS: tuple[tuple[str, str, Optional[dict]], ...] = (
    ("GET", f"{_API}/audit-logs", None),
    ("GET", f"{_API}/activity-flags", None),
    ("PATCH", f"{_API}/activity-flags/1", {"status": "investigating"}),
    ("GET", f"{_API}/auth/users", None),
    ("POST", f"{_API}/auth/users", {"username": "selftest-intruder", "password": "intruder-pass-1", "role": "admin"}),
    ("GET", f"{_API}/security/self-test", None),
    ("POST", f"{_API}/security/self-test", {"test_type": "full"}),
)

_ROLE_ACCESS: tuple[ProbeCase, ...] = (
    ProbeCase("admin reads audit log", "role_access", ROLE_ADMIN, "GET", f"{_API}/audit-logs", (200,)),
    ProbeCase("admin lists activity flags", "role_access", ROLE_ADMIN, "GET", f"{_API}/activity-flags", (200,)),
    ProbeCase("admin lists users", "role_access", ROLE_ADMIN, "GET", f"{_API}/auth/users", (200,)),
    ProbeCase("doctor lists own codes", "role_access", ROLE_DOCTOR, "GET", f"{_API}/codes", (200,)),
    ProbeCase("customer reads own profile", "role_access", ROLE_CUSTOMER, "GET", f"{_API}/auth/me", (200,), "medium"),
    ProbeCase("doctor reads own profile", "role_access", ROLE_DOCTOR, "GET", f"{_API}/auth/me", (200,), "medium"),
    ProbeCase("customer cannot list codes", "role_access", ROLE_CUSTOMER, "GET", f"{_API}/codes", (403,)),
    ProbeCase("anonymous health check", "role_access", "none", "GET", f"{_API}/health", (200,), "low"),
)

_TOKEN_VALIDATION: tuple[ProbeCase, ...] = tuple(
    ProbeCase(f"{credential} token rejected", "token_validation", credential, "GET", f"{_API}/auth/me", (401,), severity)
    for credential, severity in (
        ("none", "high"),
        ("garbage", "high"),
        ("malformed", "high"),
        ("empty_bearer", "medium"),
        ("expired", "critical"),
        ("wrong_key", "critical"),
        ("unknown_user", "high"),
    )
)

_CRUD_BOUNDARY: tuple[ProbeCase, ...] = (
    ProbeCase(
        "customer cannot create code", "crud_boundary", ROLE_CUSTOMER, "POST", f"{_API}/codes", (403,),
        body={"hospital_name": "Self-test Clinic"},
    ),
    ProbeCase("customer cannot revoke code", "crud_boundary", ROLE_CUSTOMER, "DELETE", f"{_API}/codes/{_PROBE_CODE}", (403,)),
    ProbeCase(
        "customer cannot read usage history", "crud_boundary", ROLE_CUSTOMER, "GET",
        f"{_API}/codes/{_PROBE_CODE}/usage-history", (403,),
    ),
    ProbeCase(
        "customer cannot flag customers", "crud_boundary", ROLE_CUSTOMER, "POST", f"{_API}/customers/1/flags", (403,),
        "medium", {"flag_type": "unusual_behavior", "severity": "low", "description": "self-test probe"},
    ),
    ProbeCase(
        "doctor cannot review flags", "crud_boundary", ROLE_DOCTOR, "PATCH", f"{_API}/activity-flags/1", (403,),
        body={"status": "resolved"},
    ),
    ProbeCase(
        "anonymous cannot redeem", "crud_boundary", "none", "POST", f"{_API}/codes/redeem", (401,),
        body={"code": _PROBE_CODE},
    ),
)


def build_cases(categories: Iterable[str]) -> list[ProbeCase]:
    wanted = set(categories)
    cases: list[ProbeCase] = []
    if "role_access" in wanted:
        cases.extend(_ROLE_ACCESS)
    if "privilege_escalation" in wanted:
        for role in (ROLE_CUSTOMER, ROLE_DOCTOR):
            for method, path, body in _ADMIN_ENDPOINTS:
                cases.append(
                    ProbeCase(
                        f"{role} on admin {method} {path}",
                        "privilege_escalation",
                        role,
                        method,
                        path,
                        _DENIED,
                        "critical",
                        body,
                    )
                )
    if "token_validation" in wanted:
        cases.extend(_TOKEN_VALIDATION)
    if "crud_boundary" in wanted:
        cases.extend(_CRUD_BOUNDARY)
    return cases


def score(results: list[ProbeResult]) -> tuple[float, int, str]:
    """Return (overall_score, risk_score, risk_level) for a finished run."""
    total = len(results)
    passed = sum(1 for r in results if r.passed)
    failed = [r for r in results if not r.passed]
    overall = round(passed / total * 100, 1) if total else 0.0
    risk = sum(SEVERITY_WEIGHTS.get(r.severity, 1) for r in failed)
    if risk >= 10 or any(r.severity == "critical" for r in failed):
        level = "critical"
    elif risk >= 5:
        level = "high"
    elif risk > 0:
        level = "medium"
    else:
        level = "low"
    return overall, risk, level


class SecurityTestHarness:
    def __init__(
        self,
        user_store: UserStore,
        audit: AuditLogger,
        secret_key: str,
        timeout_seconds: float = 300,
        base_url: str = "http://localhost",
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._users = user_store
        self._audit = audit
        self._secret_key = secret_key
        self._timeout = timeout_seconds
        self._base_url = base_url
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._state = RunState.IDLE
        self._current: Optional[SelfTestReport] = None
        self._last: Optional[SelfTestReport] = None
        self._started_mono = 0.0

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        with self._lock:
            return self._state

    def status(self) -> tuple[RunState, Optional[SelfTestReport]]:
        """Current state plus the running report, or the last finished one."""
        with self._lock:
            return self._state, self._current or self._last

    def start(self, test_type: str, category: Optional[str], started_by: str) -> Union[SelfTestReport, Failure]:
        if test_type not in TEST_TYPES:
            return Failure(ErrorKind.INVALID_FORMAT, f"test_type must be one of {', '.join(TEST_TYPES)}.")
        if test_type == "category" and category not in CATEGORIES:
            return Failure(ErrorKind.INVALID_FORMAT, f"category must be one of {', '.join(CATEGORIES)}.")
        with self._lock:
            if self._state is RunState.RUNNING:
                return Failure(ErrorKind.ALREADY_RUNNING)
            report = SelfTestReport(
                run_id=uuid.uuid4().hex,
                test_type=test_type,
                category=category if test_type == "category" else None,
                state=RunState.RUNNING,
                started_at=self._clock(),
                started_by=str(started_by),
            )
            self._state = RunState.RUNNING
            self._current = report
            self._started_mono = self._monotonic()
        logger.info("Security self-test %s started (%s)", report.run_id, test_type)
        return report

    def reap_stuck(self, timeout: Optional[float] = None) -> bool:
        """Fail the current run if it has been running longer than timeout. Returns True if reaped."""
        limit = self._timeout if timeout is None else timeout
        with self._lock:
            if self._state is not RunState.RUNNING or self._current is None:
                return False
            if self._monotonic() - self._started_mono <= limit:
                return False
            report = self._current
            report.state = RunState.FAILED
            report.error = "timed out"
            report.finished_at = self._clock()
            self._state = RunState.FAILED
            self._last = report
            self._current = None
        logger.warning("Security self-test %s reaped after %ss", report.run_id, limit)
        return True

    def _finish(self, report: SelfTestReport, state: RunState, error: str = "") -> bool:
        with self._lock:
            if self._current is not report:
                # Reaped while we were running; the reaped state stands.
                return False
            report.state = state
            report.error = error
            report.finished_at = self._clock()
            self._state = state
            self._last = report
            self._current = None
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self, app: Any, test_type: str, category: Optional[str], started_by: str
    ) -> Union[SelfTestReport, Failure]:
        report = self.start(test_type, category, started_by)
        if isinstance(report, Failure):
            return report
        return await self.execute(app, report)

    async def execute(self, app: Any, report: SelfTestReport) -> SelfTestReport:
        categories = CATEGORIES if report.test_type == "full" else (report.category,)
        try:
            headers = await asyncio.to_thread(self._prepare_credentials)
            results = await self._probe_all(app, build_cases(categories), headers)
        except DependencyUnavailable:
            logger.exception("Security self-test %s could not prepare probe identities", report.run_id)
            self._finish(report, RunState.FAILED, "dependency unavailable")
        except IdentityMismatch as exc:
            logger.error("Security self-test %s refused: %s", report.run_id, exc)
            self._finish(report, RunState.FAILED, "identity role mismatch")
        except Exception:
            logger.exception("Security self-test %s crashed", report.run_id)
            self._finish(report, RunState.FAILED, "internal error")
        else:
            report.results = results
            report.total = len(results)
            report.passed = sum(1 for r in results if r.passed)
            report.failed = report.total - report.passed
            report.overall_score, report.risk_score, report.risk_level = score(results)
            self._finish(report, RunState.COMPLETED)
        await asyncio.to_thread(self._persist, report)
        logger.info(
            "Security self-test %s %s: %d/%d passed, risk %s",
            report.run_id,
            report.state.value,
            report.passed,
            report.total,
            report.risk_level,
        )
        return report

    def _prepare_credentials(self) -> dict[str, dict[str, str]]:
        """Authorization headers keyed by ProbeCase.credential."""
        headers: dict[str, dict[str, str]] = {"none": {}}
        admin_id = None
        for role, username in PROBE_USERS.items():
            user = self._users.ensure_user(username, role)
            if user.role != role or not user.is_active:
                raise IdentityMismatch(f"{username} is {user.role}, active={user.is_active}; expected active {role}")
            token = create_access_token(user.id, user.username, user.role, secret_key=self._secret_key)
            headers[role] = {"Authorization": f"Bearer {token}"}
            if role == ROLE_ADMIN:
                admin_id = user.id
        expired = create_access_token(admin_id, PROBE_USERS[ROLE_ADMIN], ROLE_ADMIN, -60, self._secret_key)
        wrong_key = create_access_token(admin_id, PROBE_USERS[ROLE_ADMIN], ROLE_ADMIN, secret_key=secrets.token_hex(32))
        unknown = create_access_token(0, "selftest-ghost", ROLE_ADMIN, secret_key=self._secret_key)
        headers["expired"] = {"Authorization": f"Bearer {expired}"}
        headers["wrong_key"] = {"Authorization": f"Bearer {wrong_key}"}
        headers["unknown_user"] = {"Authorization": f"Bearer {unknown}"}
        headers["garbage"] = {"Authorization": "Bearer invalid-token"}
        headers["malformed"] = {"Authorization": "Token abc.def"}
        headers["empty_bearer"] = {"Authorization": "Bearer "}
        return headers

    async def _probe_all(
        self, app: Any, cases: list[ProbeCase], headers: dict[str, dict[str, str]]
    ) -> list[ProbeResult]:
        transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
        results: list[ProbeResult] = []
        async with httpx.AsyncClient(transport=transport, base_url=self._base_url, timeout=30) as client:
            for case in cases:
                actual: Optional[int] = None
                error = ""
                try:
                    resp = await client.request(case.method, case.path, headers=headers[case.credential], json=case.body)
                    actual = resp.status_code
                except httpx.HTTPError as exc:
                    error = type(exc).__name__
                results.append(
                    ProbeResult(
                        check=case.check,
                        category=case.category,
                        severity=case.severity,
                        method=case.method,
                        path=case.path,
                        expected=case.expected,
                        actual=actual,
                        passed=actual in case.expected,
                        error=error,
                    )
                )
        return results

    def _persist(self, report: SelfTestReport) -> None:
        self._audit.record(
            action="selftest.result",
            outcome=OUTCOME_SUCCESS if report.state is RunState.COMPLETED else OUTCOME_FAILURE,
            actor_id=report.started_by,
            details={
                "run_id": report.run_id,
                "test_type": report.test_type,
                "category": report.category,
                "state": report.state.value,
                "total": report.total,
                "passed": report.passed,
                "failed": report.failed,
                "overall_score": report.overall_score,
                "risk_score": report.risk_score,
                "risk_level": report.risk_level,
                "error": report.error,
                "results": [
                    {
                        "check": r.check,
                        "category": r.category,
                        "severity": r.severity,
                        "method": r.method,
                        "path": r.path,
                        "expected": list(r.expected),
                        "actual": r.actual,
                        "passed": r.passed,
                    }
                    for r in report.results
                ],
            },
        )
