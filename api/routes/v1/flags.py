"""
api/routes/v1/flags.py -- Activity flags: raising and reviewing abuse signals.

Routes:
  POST  /api/v1/customers/{customer_id}/flags  -- a doctor flags a customer
  GET   /api/v1/activity-flags                 -- list flags (admin)
  PATCH /api/v1/activity-flags/{flag_id}       -- move a flag along its
                                                  status workflow (admin)
"""

from __future__ import annotations

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Path, Query

from api.context import request_context
from api.errors import failure_response
from api.models import FlagCreate, FlagResponse, FlagReview, FlagStatusEnum
from api.services import Services, get_services
from audit.models import ActivityFlag
from auth.enforcer import RequestContext
from core.errors import DependencyUnavailable, ErrorKind, Failure
from core.models import ROLE_CUSTOMER

router = APIRouter()


def _flag_response(flag: ActivityFlag) -> FlagResponse:
    return FlagResponse(
        id=flag.id,
        subject_id=flag.subject_id,
        flag_type=flag.flag_type,
        severity=flag.severity,
        description=flag.description,
        status=flag.status,
        metadata=flag.metadata,
        created_by=flag.created_by,
        created_at=flag.created_at,
        updated_at=flag.updated_at,
        resolved_by=flag.resolved_by,
        resolved_at=flag.resolved_at,
    )


@router.post("/customers/{customer_id}/flags", response_model=FlagResponse, status_code=201)
def flag_customer(
    customer_id: Annotated[int, Path(ge=1)],
    body: FlagCreate,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "flag.create")
    if isinstance(principal, Failure):
        return failure_response(principal)

    try:
        customer = svc.user_store.get_by_id(customer_id)
    except DependencyUnavailable:
        customer = Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
    if customer is None or (not isinstance(customer, Failure) and customer.role != ROLE_CUSTOMER):
        customer = Failure(ErrorKind.NOT_FOUND, "Customer not found.")
    if isinstance(customer, Failure):
        svc.enforcer.record(ctx, "flag.create", principal, customer, {"customer_id": customer_id})
        return failure_response(customer)

    result = svc.flags.raise_flag(
        subject_id=str(customer.id),
        flag_type=body.flag_type.value,
        severity=body.severity.value,
        description=body.description,
        created_by=principal.user_id,
        metadata=body.metadata,
    )
    svc.enforcer.record(
        ctx,
        "flag.create",
        principal,
        result,
        {"customer_id": customer_id, "flag_type": body.flag_type.value, "severity": body.severity.value},
    )
    if isinstance(result, Failure):
        return failure_response(result)
    return _flag_response(result)


@router.get("/activity-flags", response_model=list[FlagResponse])
def list_flags(
    status: Optional[FlagStatusEnum] = None,
    subject_id: Optional[str] = Query(default=None, max_length=64),
    limit: int = Query(default=100, ge=1, le=500),
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "flag.list")
    if isinstance(principal, Failure):
        return failure_response(principal)
    result = svc.flags.list(status=status.value if status else None, subject_id=subject_id, limit=limit)
    svc.enforcer.record(ctx, "flag.list", principal, result)
    if isinstance(result, Failure):
        return failure_response(result)
    return [_flag_response(f) for f in result]


@router.patch("/activity-flags/{flag_id}", response_model=FlagResponse)
def review_flag(
    flag_id: Annotated[int, Path(ge=1)],
    body: FlagReview,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "flag.review")
    if isinstance(principal, Failure):
        return failure_response(principal)
    result = svc.flags.review(flag_id, body.status.value, principal.user_id)
    svc.enforcer.record(ctx, "flag.review", principal, result, {"flag_id": flag_id, "status": body.status.value})
    if isinstance(result, Failure):
        return failure_response(result)
    return _flag_response(result)
