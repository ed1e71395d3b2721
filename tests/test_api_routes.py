"""
tests/test_api_routes.py -- Integration tests for the CodeGuard REST API.

These tests exercise the full stack: FastAPI routing -> request validation ->
AccessEnforcer -> registry/audit/flags services -> response serialization.

Coverage:
  - Auth routes: login, /me, user management (admin only)
  - Signup-code lifecycle: issue, verify, redeem, usage history, revoke, share
  - Error envelope: status codes, error kinds, Retry-After, no input echo
  - Audit log and activity-flag routes
  - Security self-test run and status

Fixtures used (from conftest.py):
  - api_env: ApiEnv(client, services, ids, headers) with users
    testadmin, testdoctor, testdoctor2, testcustomer, testcustomer2
    (password "testpass123").
"""

from __future__ import annotations

from conftest import ApiEnv, make_user

from selftest.models import RunState

_CODE_BODY = {
    "hospital_name": "Seoul Clinic",
    "hospital_type": "clinic",
    "region": "Seoul",
    "address": "1 Main St",
    "phone_number": "010-1234-5678",
    "description": "Family practice",
    "max_uses": 2,
}


def _new_doctor(env: ApiEnv, name: str) -> dict[str, str]:
    _, headers = make_user(env.services.user_store, name, "doctor")
    return headers


def _issue(env: ApiEnv, headers: dict[str, str], **overrides) -> dict:
    resp = env.client.post("/api/v1/codes", json={**_CODE_BODY, **overrides}, headers=headers)
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestAuthRoutes:
    def test_login_valid_credentials(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post("/api/v1/auth/login", json={"username": "testdoctor", "password": "testpass123"})
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["role"] == "doctor"
        assert resp.headers["Cache-Control"] == "no-store"

        me = api_env.client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"})
        assert me.status_code == 200
        assert me.json()["username"] == "testdoctor"

    def test_login_wrong_password_and_unknown_user_look_the_same(self, api_env: ApiEnv) -> None:
        wrong = api_env.client.post("/api/v1/auth/login", json={"username": "testdoctor", "password": "nope-nope"})
        unknown = api_env.client.post("/api/v1/auth/login", json={"username": "nobody", "password": "nope-nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"] == "UNAUTHENTICATED"

    def test_me_requires_token(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json() == {"error": "UNAUTHENTICATED", "message": "Authentication required.", "retry_after": None}

    def test_admin_creates_and_lists_users(self, api_env: ApiEnv) -> None:
        admin = api_env.headers["admin"]
        resp = api_env.client.post(
            "/api/v1/auth/users",
            json={"username": "newcustomer", "password": "longenough1", "role": "customer"},
            headers=admin,
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["role"] == "customer"
        assert "hashed_password" not in resp.json()

        dupe = api_env.client.post(
            "/api/v1/auth/users",
            json={"username": "newcustomer", "password": "longenough1", "role": "customer"},
            headers=admin,
        )
        assert dupe.status_code == 400

        listed = api_env.client.get("/api/v1/auth/users", headers=admin)
        assert "newcustomer" in {u["username"] for u in listed.json()}

    def test_password_limit_counts_utf8_bytes(self, api_env: ApiEnv) -> None:
        admin = api_env.headers["admin"]
        # 30 characters but 90 bytes: bcrypt cannot take it.
        too_long = api_env.client.post(
            "/api/v1/auth/users",
            json={"username": "hangul-long", "password": "가" * 30, "role": "customer"},
            headers=admin,
        )
        assert too_long.status_code == 400, too_long.text
        assert too_long.json()["error"] == "INVALID_FORMAT"
        assert "password" in too_long.json()["message"]

        exact = api_env.client.post(
            "/api/v1/auth/users",
            json={"username": "hangul-exact", "password": "가" * 24, "role": "customer"},
            headers=admin,
        )
        assert exact.status_code == 201, exact.text

    def test_non_admin_cannot_create_users(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post(
            "/api/v1/auth/users",
            json={"username": "sneaky", "password": "longenough1", "role": "admin"},
            headers=api_env.headers["doctor"],
        )
        assert resp.status_code == 403
        assert resp.json()["error"] == "FORBIDDEN"


# ---------------------------------------------------------------------------
# Signup codes
# ---------------------------------------------------------------------------


class TestCodeLifecycle:
    def test_issue_verify_redeem_history_revoke(self, api_env: ApiEnv) -> None:
        client = api_env.client
        doctor = _new_doctor(api_env, "lifecycle-doc")
        issued = _issue(api_env, doctor)
        code = issued["code"]
        assert len(code) == 8
        assert issued["remaining_uses"] == 2
        assert issued["phone_number"] == "010-1234-5678"

        # Public verify discloses only the redeemer-facing fields.
        verify = client.post("/api/v1/codes/verify", json={"code": code})
        assert verify.status_code == 200, verify.text
        assert verify.json()["hospital_data"] == {
            "hospital_name": "Seoul Clinic",
            "hospital_type": "clinic",
            "region": "Seoul",
            "address": "1 Main St",
        }
        assert "010-1234-5678" not in verify.text

        first = client.post("/api/v1/codes/redeem", json={"code": code}, headers=api_env.headers["customer"])
        assert first.status_code == 200, first.text
        assert first.json()["remaining_uses"] == 1
        second = client.post("/api/v1/codes/redeem", json={"code": code}, headers=api_env.headers["customer2"])
        assert second.json()["remaining_uses"] == 0
        third = client.post("/api/v1/codes/redeem", json={"code": code}, headers=api_env.headers["doctor2"])
        assert third.status_code == 400
        assert third.json()["error"] == "CODE_EXHAUSTED"

        history = client.get(f"/api/v1/codes/{code}/usage-history", headers=doctor)
        assert history.status_code == 200, history.text
        data = history.json()
        assert data["total"] == 2
        assert [r["redeemer_id"] for r in data["redemptions"]] == [
            str(api_env.ids["customer"]),
            str(api_env.ids["customer2"]),
        ]
        # TestClient's peer address is not an IP, so it is stored redacted.
        assert all(r["ip_address"] == "[redacted]" for r in data["redemptions"])

        revoked = client.delete(f"/api/v1/codes/{code}", headers=doctor)
        assert revoked.status_code == 200
        assert revoked.json()["is_active"] is False
        assert revoked.json()["used_count"] == 2

        after = client.post("/api/v1/codes/verify", json={"code": code})
        assert after.status_code == 400
        assert after.json()["error"] == "INVALID_CODE"

        listed = client.get("/api/v1/codes", headers=doctor)
        assert [c["code"] for c in listed.json()] == [code]

    def test_usage_history_reads_do_not_change_it(self, api_env: ApiEnv) -> None:
        doctor = _new_doctor(api_env, "history-doc")
        code = _issue(api_env, doctor)["code"]
        redeemed = api_env.client.post("/api/v1/codes/redeem", json={"code": code}, headers=api_env.headers["customer"])
        assert redeemed.status_code == 200, redeemed.text

        first = api_env.client.get(f"/api/v1/codes/{code}/usage-history", headers=doctor)
        second = api_env.client.get(f"/api/v1/codes/{code}/usage-history", headers=doctor)
        assert first.status_code == second.status_code == 200
        assert first.json() == second.json()
        assert first.json()["total"] == 1

        listed = api_env.client.get("/api/v1/codes", headers=doctor).json()
        assert [(c["used_count"], c["remaining_uses"]) for c in listed] == [(1, 1)]

    def test_one_live_code_then_daily_limit(self, api_env: ApiEnv) -> None:
        doctor = _new_doctor(api_env, "limit-doc")
        code = _issue(api_env, doctor)["code"]

        again = api_env.client.post("/api/v1/codes", json=_CODE_BODY, headers=doctor)
        assert again.status_code == 403
        assert again.json()["error"] == "ALREADY_HAS_CODE"

        api_env.client.delete(f"/api/v1/codes/{code}", headers=doctor)
        limited = api_env.client.post("/api/v1/codes", json=_CODE_BODY, headers=doctor)
        assert limited.status_code == 429
        assert limited.json()["error"] == "RATE_LIMITED"
        assert int(limited.headers["Retry-After"]) > 0
        assert limited.json()["retry_after"] == int(limited.headers["Retry-After"])

    def test_customer_cannot_issue(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post("/api/v1/codes", json=_CODE_BODY, headers=api_env.headers["customer"])
        assert resp.status_code == 403

    def test_owner_scoped_routes_refuse_strangers(self, api_env: ApiEnv) -> None:
        owner = _new_doctor(api_env, "scoped-owner")
        stranger = _new_doctor(api_env, "scoped-stranger")
        code = _issue(api_env, owner)["code"]

        for method, path in (
            ("GET", f"/api/v1/codes/{code}/usage-history"),
            ("DELETE", f"/api/v1/codes/{code}"),
        ):
            resp = api_env.client.request(method, path, headers=stranger)
            assert resp.status_code == 403, f"{method} {path}: {resp.status_code}"
            resp = api_env.client.request(method, path, headers=api_env.headers["customer"])
            assert resp.status_code == 403

        share = api_env.client.post(
            f"/api/v1/codes/{code}/share-email", json={"email": "invitee@example.com"}, headers=stranger
        )
        assert share.status_code == 403

    def test_unknown_and_malformed_codes(self, api_env: ApiEnv) -> None:
        doctor = api_env.headers["doctor"]
        missing = api_env.client.get("/api/v1/codes/ZX7Q4K9M/usage-history", headers=doctor)
        assert missing.status_code == 404
        malformed = api_env.client.get("/api/v1/codes/not-a-code/usage-history", headers=doctor)
        assert malformed.status_code == 400
        assert malformed.json()["error"] == "INVALID_FORMAT"

        verify = api_env.client.post("/api/v1/codes/verify", json={"code": "<script>x"})
        assert verify.status_code == 400
        assert "<script>" not in verify.text

        redeem = api_env.client.post("/api/v1/codes/redeem", json={"code": "ZX7Q4K9M"}, headers=api_env.headers["customer"])
        assert redeem.status_code == 400
        assert redeem.json()["error"] == "INVALID_CODE"

    def test_redeem_requires_authentication(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post("/api/v1/codes/redeem", json={"code": "ZX7Q4K9M"})
        assert resp.status_code == 401

    def test_share_email(self, api_env: ApiEnv) -> None:
        doctor = _new_doctor(api_env, "share-doc")
        code = _issue(api_env, doctor)["code"]
        resp = api_env.client.post(
            f"/api/v1/codes/{code}/share-email", json={"email": "invitee@example.com"}, headers=doctor
        )
        assert resp.status_code == 200, resp.text
        sent = api_env.services.mailer._transport.sent[-1]
        assert sent.recipient == "invitee@example.com"
        assert code in sent.body

        bad = api_env.client.post(f"/api/v1/codes/{code}/share-email", json={"email": "nope"}, headers=doctor)
        assert bad.status_code == 400
        assert "nope" not in bad.json()["message"]

    def test_validation_errors_are_invalid_format(self, api_env: ApiEnv) -> None:
        doctor = _new_doctor(api_env, "validation-doc")
        resp = api_env.client.post("/api/v1/codes", json={**_CODE_BODY, "max_uses": 0}, headers=doctor)
        assert resp.status_code == 400
        assert resp.json()["error"] == "INVALID_FORMAT"
        assert "max_uses" in resp.json()["message"]

        naive = api_env.client.post(
            "/api/v1/codes", json={**_CODE_BODY, "expires_at": "2030-01-01T00:00:00"}, headers=doctor
        )
        assert naive.status_code == 400

    def test_unknown_route_uses_error_envelope(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# Audit log and activity flags
# ---------------------------------------------------------------------------


class TestAuditRoutes:
    def test_admin_reads_masked_entries(self, api_env: ApiEnv) -> None:
        api_env.client.post("/api/v1/codes/verify", json={"code": "QW8E7R6T"})
        resp = api_env.client.get("/api/v1/audit-logs?action=code.verify&limit=5", headers=api_env.headers["admin"])
        assert resp.status_code == 200, resp.text
        entries = resp.json()["entries"]
        assert entries
        assert entries[0]["details"]["code"] == "QW******"
        assert "QW8E7R6T" not in resp.text

    def test_denials_are_audited(self, api_env: ApiEnv) -> None:
        api_env.client.get("/api/v1/audit-logs", headers=api_env.headers["customer"])
        resp = api_env.client.get(
            f"/api/v1/audit-logs?action=audit.query&outcome=denied&actor_id={api_env.ids['customer']}",
            headers=api_env.headers["admin"],
        )
        assert resp.json()["entries"][0]["error_kind"] == "FORBIDDEN"

    def test_non_admin_forbidden(self, api_env: ApiEnv) -> None:
        assert api_env.client.get("/api/v1/audit-logs", headers=api_env.headers["doctor"]).status_code == 403

    def test_limit_bounds(self, api_env: ApiEnv) -> None:
        resp = api_env.client.get("/api/v1/audit-logs?limit=500", headers=api_env.headers["admin"])
        assert resp.status_code == 400


class TestFlagRoutes:
    def test_doctor_flags_customer_and_admin_reviews(self, api_env: ApiEnv) -> None:
        customer_id = api_env.ids["customer2"]
        body = {"flag_type": "multiple_accounts", "severity": "high", "description": "Same phone as customer 1"}
        created = api_env.client.post(
            f"/api/v1/customers/{customer_id}/flags", json=body, headers=api_env.headers["doctor"]
        )
        assert created.status_code == 201, created.text
        flag = created.json()
        assert flag["status"] == "pending"
        assert flag["subject_id"] == str(customer_id)
        assert flag["created_by"] == str(api_env.ids["doctor"])

        admin = api_env.headers["admin"]
        listed = api_env.client.get(f"/api/v1/activity-flags?subject_id={customer_id}", headers=admin)
        assert flag["id"] in {f["id"] for f in listed.json()}

        moved = api_env.client.patch(
            f"/api/v1/activity-flags/{flag['id']}", json={"status": "investigating"}, headers=admin
        )
        assert moved.status_code == 200
        backwards = api_env.client.patch(f"/api/v1/activity-flags/{flag['id']}", json={"status": "pending"}, headers=admin)
        assert backwards.status_code == 400
        done = api_env.client.patch(f"/api/v1/activity-flags/{flag['id']}", json={"status": "resolved"}, headers=admin)
        assert done.json()["resolved_by"] == str(api_env.ids["admin"])

    def test_only_customers_can_be_flagged(self, api_env: ApiEnv) -> None:
        body = {"flag_type": "policy_violation", "description": "x"}
        resp = api_env.client.post(
            f"/api/v1/customers/{api_env.ids['doctor2']}/flags", json=body, headers=api_env.headers["doctor"]
        )
        assert resp.status_code == 404
        missing = api_env.client.post("/api/v1/customers/99999/flags", json=body, headers=api_env.headers["doctor"])
        assert missing.status_code == 404

    def test_role_boundaries(self, api_env: ApiEnv) -> None:
        body = {"flag_type": "policy_violation", "description": "x"}
        customer_id = api_env.ids["customer"]
        assert (
            api_env.client.post(
                f"/api/v1/customers/{customer_id}/flags", json=body, headers=api_env.headers["customer2"]
            ).status_code
            == 403
        )
        assert api_env.client.get("/api/v1/activity-flags", headers=api_env.headers["doctor"]).status_code == 403

    def test_review_missing_flag(self, api_env: ApiEnv) -> None:
        resp = api_env.client.patch(
            "/api/v1/activity-flags/99999", json={"status": "resolved"}, headers=api_env.headers["admin"]
        )
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Security self-test
# ---------------------------------------------------------------------------


class TestSelfTestRoutes:
    def test_full_run_passes_every_check(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post("/api/v1/security/self-test", json={"test_type": "full"}, headers=api_env.headers["admin"])
        assert resp.status_code == 200, resp.text
        report = resp.json()
        failed = [r for r in report["results"] if not r["passed"]]
        assert failed == [], failed
        assert report["state"] == "completed"
        assert report["total"] == 35
        assert report["overall_score"] == 100.0
        assert report["risk_level"] == "low"

        status = api_env.client.get("/api/v1/security/self-test", headers=api_env.headers["admin"])
        assert status.json()["state"] == "completed"
        assert status.json()["report"]["run_id"] == report["run_id"]

    def test_category_run(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post(
            "/api/v1/security/self-test",
            json={"test_type": "category", "category": "token_validation"},
            headers=api_env.headers["admin"],
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["total"] == 7

    def test_category_run_needs_category(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post(
            "/api/v1/security/self-test", json={"test_type": "category"}, headers=api_env.headers["admin"]
        )
        assert resp.status_code == 400

    def test_non_admin_forbidden(self, api_env: ApiEnv) -> None:
        resp = api_env.client.post(
            "/api/v1/security/self-test", json={"test_type": "full"}, headers=api_env.headers["doctor"]
        )
        assert resp.status_code == 403

    def test_post_while_running_is_conflict(self, api_env: ApiEnv) -> None:
        harness = api_env.services.harness
        held = harness.start("full", None, str(api_env.ids["admin"]))
        try:
            resp = api_env.client.post(
                "/api/v1/security/self-test", json={"test_type": "full"}, headers=api_env.headers["admin"]
            )
            assert resp.status_code == 409, resp.text
            assert resp.json()["error"] == "ALREADY_RUNNING"
            assert harness.status() == (RunState.RUNNING, held)
        finally:
            harness.reap_stuck(timeout=-1)
