"""
api/routes/v1/security.py -- On-demand security self-test (admin only).

Routes:
  POST /api/v1/security/self-test  -- run the probe suite now and return the report
  GET  /api/v1/security/self-test  -- current run state plus the latest report

Only one run may be in flight; a second POST while running gets 409
ALREADY_RUNNING instead of being queued.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from api.context import request_context
from api.errors import failure_response
from api.models import ProbeResultResponse, SelfTestReportResponse, SelfTestRequest, SelfTestStatusResponse
from api.services import Services, get_services
from auth.enforcer import RequestContext
from core.errors import Failure
from selftest.models import RunState, SelfTestReport

router = APIRouter()


def _report_response(report: SelfTestReport) -> SelfTestReportResponse:
    return SelfTestReportResponse(
        run_id=report.run_id,
        test_type=report.test_type,
        category=report.category,
        state=report.state.value,
        started_at=report.started_at,
        finished_at=report.finished_at,
        total=report.total,
        passed=report.passed,
        failed=report.failed,
        overall_score=report.overall_score,
        risk_score=report.risk_score,
        risk_level=report.risk_level,
        results=[
            ProbeResultResponse(
                check=r.check,
                category=r.category,
                severity=r.severity,
                method=r.method,
                path=r.path,
                expected=list(r.expected),
                actual=r.actual,
                passed=r.passed,
            )
            for r in report.results
        ],
        error=report.error,
    )


@router.post("/security/self-test", response_model=SelfTestReportResponse)
async def run_self_test(
    request: Request,
    body: SelfTestRequest,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    """Probe the live API with admin, doctor, customer and forged credentials.

    The probes go through the same middleware and enforcer as real traffic.
    """
    # authorize() touches the user store; keep blocking I/O off the event loop.
    principal = await run_in_threadpool(svc.enforcer.authorize, ctx, "selftest.run")
    if isinstance(principal, Failure):
        return failure_response(principal)

    category: Optional[str] = body.category.value if body.category is not None else None
    result = await svc.harness.run(request.app, body.test_type.value, category, principal.user_id)
    details = {"test_type": body.test_type.value, "category": category}
    if isinstance(result, SelfTestReport):
        details.update(run_id=result.run_id, state=result.state.value, risk_level=result.risk_level)
    await run_in_threadpool(svc.enforcer.record, ctx, "selftest.run", principal, result, details)
    if isinstance(result, Failure):
        return failure_response(result)
    return _report_response(result)


@router.get("/security/self-test", response_model=SelfTestStatusResponse)
def self_test_status(ctx: RequestContext = Depends(request_context), svc: Services = Depends(get_services)):
    principal = svc.enforcer.authorize(ctx, "selftest.status")
    if isinstance(principal, Failure):
        return failure_response(principal)
    state, report = svc.harness.status()
    svc.enforcer.record(ctx, "selftest.status", principal, None, {"state": state.value})
    return SelfTestStatusResponse(
        state=state.value,
        report=_report_response(report) if report is not None and state is not RunState.IDLE else None,
    )
