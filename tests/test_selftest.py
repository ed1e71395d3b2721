"""Unit tests for selftest/harness.py.

Covers:
- Probe matrix composition per category
- Scoring: overall score, risk score, risk level
- Run state machine: start, ALREADY_RUNNING, reaping a stuck run, and a
  reaped run that finishes late
- Probe identities are created once and reused, and a run refuses a
  reserved username that carries the wrong role

The full probe run against the live app is exercised in test_api_routes.py.
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import FakeMonotonic, make_user

from audit.logger import AuditLogger
from audit.models import AuditQuery
from audit.store import AuditStore
from auth.store import UserStore
from core.config import get_settings
from core.errors import ErrorKind, Failure
from selftest.harness import PROBE_USERS, SecurityTestHarness, build_cases, score
from selftest.models import CATEGORIES, ProbeResult, RunState, SelfTestReport


def _result(severity: str, passed: bool) -> ProbeResult:
    return ProbeResult(
        check="probe",
        category="role_access",
        severity=severity,
        method="GET",
        path="/api/v1/auth/me",
        expected=(200,),
        actual=200 if passed else 500,
        passed=passed,
    )


@pytest.fixture
def harness(db_url: str, monotonic: FakeMonotonic):
    users = UserStore(db_url)
    audit_store = AuditStore(db_url)
    h = SecurityTestHarness(
        users, AuditLogger(audit_store), get_settings().secret_key, timeout_seconds=60, monotonic=monotonic
    )
    yield h
    users.close()
    audit_store.close()


class TestProbeMatrix:
    def test_category_sizes(self) -> None:
        assert len(build_cases(["role_access"])) == 8
        assert len(build_cases(["privilege_escalation"])) == 14
        assert len(build_cases(["token_validation"])) == 7
        assert len(build_cases(["crud_boundary"])) == 6
        assert len(build_cases(CATEGORIES)) == 35

    def test_privilege_escalation_never_uses_admin(self) -> None:
        cases = build_cases(["privilege_escalation"])
        assert {c.credential for c in cases} == {"customer", "doctor"}
        assert all(c.expected == (401, 403) and c.severity == "critical" for c in cases)

    def test_unknown_category_is_empty(self) -> None:
        assert build_cases(["nonsense"]) == []


class TestScore:
    def test_all_passed(self) -> None:
        assert score([_result("high", True), _result("low", True)]) == (100.0, 0, "low")

    def test_empty_run(self) -> None:
        assert score([]) == (0.0, 0, "low")

    @pytest.mark.parametrize(
        "failed,risk,level",
        [
            (["low"], 1, "medium"),
            (["low", "medium"], 4, "medium"),
            (["high"], 5, "high"),
            (["medium", "medium", "medium"], 9, "high"),
            (["high", "high"], 10, "critical"),
            (["critical"], 10, "critical"),
        ],
    )
    def test_risk_levels(self, failed: list[str], risk: int, level: str) -> None:
        results = [_result(s, False) for s in failed] + [_result("low", True)]
        overall, risk_score, risk_level = score(results)
        assert overall == round(1 / len(results) * 100, 1)
        assert (risk_score, risk_level) == (risk, level)


class TestStateMachine:
    def test_idle_until_started(self, harness: SecurityTestHarness) -> None:
        assert harness.status() == (RunState.IDLE, None)

    @pytest.mark.parametrize("test_type,category", [("partial", None), ("category", None), ("category", "bogus")])
    def test_invalid_request(self, harness: SecurityTestHarness, test_type: str, category) -> None:
        result = harness.start(test_type, category, "1")
        assert isinstance(result, Failure)
        assert result.kind is ErrorKind.INVALID_FORMAT
        assert harness.state is RunState.IDLE

    def test_second_start_is_rejected_not_queued(self, harness: SecurityTestHarness) -> None:
        report = harness.start("full", None, "1")
        assert isinstance(report, SelfTestReport)
        assert harness.state is RunState.RUNNING
        second = harness.start("category", "role_access", "1")
        assert isinstance(second, Failure)
        assert second.kind is ErrorKind.ALREADY_RUNNING

    def test_category_report(self, harness: SecurityTestHarness) -> None:
        report = harness.start("category", "token_validation", "1")
        assert report.category == "token_validation"
        full = SecurityTestHarness(MagicMock(), MagicMock(), "k" * 32).start("full", "token_validation", "1")
        assert full.category is None

    def test_reap_stuck_run(self, harness: SecurityTestHarness, monotonic: FakeMonotonic) -> None:
        report = harness.start("full", None, "1")
        monotonic.advance(30)
        assert harness.reap_stuck() is False
        monotonic.advance(31)
        assert harness.reap_stuck() is True
        assert harness.state is RunState.FAILED
        assert report.error == "timed out"
        assert report.finished_at is not None
        # A new run may start after a reap.
        assert isinstance(harness.start("full", None, "1"), SelfTestReport)

    def test_reaped_run_finishing_late_does_not_overwrite(
        self, harness: SecurityTestHarness, monotonic: FakeMonotonic
    ) -> None:
        report = harness.start("category", "token_validation", "1")
        monotonic.advance(61)
        harness.reap_stuck()

        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 401, "headers": []})
            await send({"type": "http.response.body", "body": b"{}"})

        asyncio.run(harness.execute(app, report))
        state, last = harness.status()
        assert state is RunState.FAILED
        assert last.error == "timed out"


class TestExecute:
    def test_probe_identities_reused(self, harness: SecurityTestHarness) -> None:
        headers = harness._prepare_credentials()
        again = harness._prepare_credentials()
        assert set(headers) >= {"none", "admin", "doctor", "customer", "expired", "wrong_key", "unknown_user"}
        assert headers["none"] == {}
        users = harness._users.list_users()
        assert sorted(u.username for u in users) == sorted(PROBE_USERS.values())
        assert again["malformed"] == headers["malformed"]

    def test_run_against_stub_app_is_scored_and_persisted(self, harness: SecurityTestHarness) -> None:
        async def app(scope, receive, send):
            # Every request is rejected as unauthenticated.
            await send({"type": "http.response.start", "status": 401, "headers": []})
            await send({"type": "http.response.body", "body": b"{}"})

        report = asyncio.run(harness.run(app, "category", "token_validation", "1"))
        assert report.state is RunState.COMPLETED
        assert (report.total, report.passed, report.failed) == (7, 7, 0)
        assert report.risk_level == "low"
        assert harness.state is RunState.COMPLETED

        [entry] = harness._audit.query(AuditQuery(action="selftest.result"))
        assert entry.outcome == "success"
        assert entry.details_masked["passed"] == 7
        assert len(entry.details_masked["results"]) == 7

    def test_stub_app_that_lets_everyone_in_scores_critical(self, harness: SecurityTestHarness) -> None:
        async def app(scope, receive, send):
            await send({"type": "http.response.start", "status": 200, "headers": []})
            await send({"type": "http.response.body", "body": b"{}"})

        report = asyncio.run(harness.run(app, "category", "token_validation", "1"))
        assert report.passed == 0
        assert report.risk_level == "critical"

    def test_reserved_name_with_wrong_role_fails_the_run(self, harness: SecurityTestHarness) -> None:
        make_user(harness._users, PROBE_USERS["admin"], "customer")
        app = MagicMock()

        report = asyncio.run(harness.run(app, "full", None, "1"))
        assert report.state is RunState.FAILED
        assert report.error == "identity role mismatch"
        assert report.results == []
        app.assert_not_called()
        assert harness._users.get_by_username(PROBE_USERS["admin"]).role == "customer"

    def test_disabled_reserved_name_fails_the_run(self, harness: SecurityTestHarness) -> None:
        make_user(harness._users, PROBE_USERS["doctor"], "doctor", is_active=False)
        report = asyncio.run(harness.run(MagicMock(), "category", "role_access", "1"))
        assert report.state is RunState.FAILED
        assert report.error == "identity role mismatch"
