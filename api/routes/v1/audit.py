"""
api/routes/v1/audit.py -- Read-only access to the audit trail (admin only).

Routes:
  GET /api/v1/audit-logs  -- filter by actor_id, action, outcome, since, until;
                             newest first, paginated with limit/offset

There is no write, update or delete route for audit entries.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.context import request_context
from api.errors import failure_response
from api.models import AuditLogPage, AuditLogResponse, OutcomeEnum
from api.services import Services, get_services
from audit.models import AuditQuery
from auth.enforcer import RequestContext
from core.errors import Failure

router = APIRouter()


@router.get("/audit-logs", response_model=AuditLogPage)
def query_audit_logs(
    actor_id: Optional[str] = Query(default=None, max_length=64),
    action: Optional[str] = Query(default=None, max_length=64),
    outcome: Optional[OutcomeEnum] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "audit.query")
    if isinstance(principal, Failure):
        return failure_response(principal)

    filters = AuditQuery(
        actor_id=actor_id,
        action=action,
        outcome=outcome.value if outcome is not None else None,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    result = svc.audit.query(filters)
    svc.enforcer.record(
        ctx,
        "audit.query",
        principal,
        result,
        None if isinstance(result, Failure) else {"returned": len(result)},
    )
    if isinstance(result, Failure):
        return failure_response(result)
    return AuditLogPage(
        entries=[
            AuditLogResponse(
                id=e.id,
                actor_id=e.actor_id,
                action=e.action,
                outcome=e.outcome,
                error_kind=e.error_kind,
                ip_address=e.ip_address,
                user_agent=e.user_agent,
                details=dict(e.details_masked),
                timestamp=e.timestamp,
                duration_ms=e.duration_ms,
            )
            for e in result
        ],
        limit=limit,
        offset=offset,
    )
