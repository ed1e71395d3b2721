"""
api/routes/v1/codes.py -- Signup-code REST endpoints.

Routes:
  POST   /api/v1/codes                        -- issue a code (doctor)
  GET    /api/v1/codes                        -- list the caller's codes (doctor)
  POST   /api/v1/codes/verify                 -- check a code without using it (public)
  POST   /api/v1/codes/redeem                 -- consume one use (customer, doctor)
  DELETE /api/v1/codes/{code}                 -- revoke (owner)
  GET    /api/v1/codes/{code}/usage-history   -- redemptions of a code (owner)
  POST   /api/v1/codes/{code}/share-email     -- email the code to an invitee (owner)

Every handler follows the same shape: authorize through the enforcer, run the
operation, report the terminal outcome with enforcer.record(), then map the
result to a response. Failed verify and redeem attempts are also fed to the
suspicious-activity monitor.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Path

from api.context import request_context
from api.errors import failure_response
from api.models import (
    CodeCheck,
    CodeCreate,
    CodeResponse,
    HospitalData,
    MessageResponse,
    RedeemResponse,
    ShareEmailRequest,
    UsageHistoryResponse,
    UsageRecordResponse,
    VerifyResponse,
)
from api.services import Services, get_services
from audit.masking import safe_mask_ip
from auth.enforcer import RequestContext
from core.errors import ErrorKind, Failure
from registry.models import HospitalProfile, SignupCode

# Auth policy (see auth.enforcer.default_policies):
# - POST   /codes                       doctor            "code.issue"
# - GET    /codes                       doctor            "code.list"
# - POST   /codes/verify                public, per IP    "code.verify"
# - POST   /codes/redeem                customer, doctor  "code.redeem"
# - DELETE /codes/{code}                owning doctor     "code.revoke"
# - GET    /codes/{code}/usage-history  owning doctor     "code.usage_history"
# - POST   /codes/{code}/share-email    owning doctor     "code.share_email"
router = APIRouter()

# Path parameter bound: long enough that a malformed code still reaches the
# validator (and gets INVALID_FORMAT), short enough to keep junk out of logs.
CodeParam = Annotated[str, Path(max_length=64)]

# Failures that count towards the suspicious-activity threshold.
_SUSPICIOUS_KINDS = frozenset(
    {ErrorKind.INVALID_FORMAT, ErrorKind.INVALID_CODE, ErrorKind.CODE_EXPIRED, ErrorKind.CODE_EXHAUSTED}
)


def _code_response(code: SignupCode) -> CodeResponse:
    p = code.profile
    return CodeResponse(
        code=code.code,
        hospital_name=p.hospital_name,
        hospital_type=p.hospital_type,
        region=p.region,
        address=p.address,
        phone_number=p.phone_number,
        description=p.description,
        max_uses=code.max_uses,
        used_count=code.used_count,
        remaining_uses=code.remaining_uses,
        is_active=code.is_active,
        expires_at=code.expires_at,
        created_at=code.created_at,
        deactivated_at=code.deactivated_at,
    )


# ---------------------------------------------------------------------------
# Issue and list
# ---------------------------------------------------------------------------


@router.post("/codes", response_model=CodeResponse, status_code=201)
def issue_code(
    body: CodeCreate,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "code.issue")
    if isinstance(principal, Failure):
        return failure_response(principal)

    profile = HospitalProfile(
        hospital_name=body.hospital_name,
        hospital_type=body.hospital_type,
        region=body.region,
        address=body.address,
        phone_number=body.phone_number,
        description=body.description,
    )
    result = svc.registry.issue(principal.user_id, profile, body.max_uses, body.expires_at)
    details = {"code": result.code, "max_uses": result.max_uses} if isinstance(result, SignupCode) else None
    svc.enforcer.record(ctx, "code.issue", principal, result, details)
    if isinstance(result, Failure):
        return failure_response(result)
    return _code_response(result)


@router.get("/codes", response_model=list[CodeResponse])
def list_codes(ctx: RequestContext = Depends(request_context), svc: Services = Depends(get_services)):
    principal = svc.enforcer.authorize(ctx, "code.list")
    if isinstance(principal, Failure):
        return failure_response(principal)
    result = svc.registry.list_for_owner(principal.user_id)
    svc.enforcer.record(ctx, "code.list", principal, result)
    if isinstance(result, Failure):
        return failure_response(result)
    return [_code_response(c) for c in result]


# ---------------------------------------------------------------------------
# Verify and redeem
# ---------------------------------------------------------------------------


@router.post("/codes/verify", response_model=VerifyResponse)
def verify_code(
    body: CodeCheck,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    """Report whether a code is redeemable right now, and for which hospital."""
    principal = svc.enforcer.authorize(ctx, "code.verify")
    if isinstance(principal, Failure):
        return failure_response(principal)

    result = svc.verifier.verify(body.code)
    svc.enforcer.record(ctx, "code.verify", principal, result, {"code": body.code})
    if isinstance(result, Failure):
        if result.kind in _SUSPICIOUS_KINDS:
            svc.monitor.observe(ip_address=ctx.ip_address)
        return failure_response(result)
    return VerifyResponse(
        is_valid=result.is_valid,
        hospital_data=HospitalData(**result.hospital_data),
        remaining_uses=result.remaining_uses,
        expires_at=result.expires_at,
    )


@router.post("/codes/redeem", response_model=RedeemResponse)
def redeem_code(
    body: CodeCheck,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "code.redeem")
    if isinstance(principal, Failure):
        return failure_response(principal)

    result = svc.registry.redeem(body.code, principal.user_id, safe_mask_ip(ctx.ip_address), ctx.user_agent)
    svc.enforcer.record(ctx, "code.redeem", principal, result, {"code": body.code})
    if isinstance(result, Failure):
        if result.kind in _SUSPICIOUS_KINDS:
            svc.monitor.observe(actor_id=principal.user_id)
        return failure_response(result)
    return RedeemResponse(
        code=result.code,
        hospital_data=HospitalData(**result.hospital_data),
        remaining_uses=result.remaining_uses,
        expires_at=result.expires_at,
        redeemed_at=result.redeemed_at,
    )


# ---------------------------------------------------------------------------
# Owner-scoped operations
# ---------------------------------------------------------------------------


@router.delete("/codes/{code}", response_model=CodeResponse)
def revoke_code(
    code: CodeParam,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "code.revoke", owner=lambda: svc.registry.owner_of(code))
    if isinstance(principal, Failure):
        return failure_response(principal)
    result = svc.registry.revoke(code, principal.user_id)
    svc.enforcer.record(ctx, "code.revoke", principal, result, {"code": code})
    if isinstance(result, Failure):
        return failure_response(result)
    return _code_response(result)


@router.get("/codes/{code}/usage-history", response_model=UsageHistoryResponse)
def usage_history(
    code: CodeParam,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    """Redemptions of one code, oldest first. Client addresses are already masked."""
    principal = svc.enforcer.authorize(ctx, "code.usage_history", owner=lambda: svc.registry.owner_of(code))
    if isinstance(principal, Failure):
        return failure_response(principal)
    result = svc.registry.usage_history(code, principal.user_id)
    svc.enforcer.record(ctx, "code.usage_history", principal, result, {"code": code})
    if isinstance(result, Failure):
        return failure_response(result)
    return UsageHistoryResponse(
        code=code,
        total=len(result),
        redemptions=[
            UsageRecordResponse(
                redeemer_id=r.redeemer_id,
                redeemed_at=r.redeemed_at,
                ip_address=r.ip_address,
                user_agent=r.user_agent,
            )
            for r in result
        ],
    )


@router.post("/codes/{code}/share-email", response_model=MessageResponse)
def share_code(
    body: ShareEmailRequest,
    code: CodeParam,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "code.share_email", owner=lambda: svc.registry.owner_of(code))
    if isinstance(principal, Failure):
        return failure_response(principal)

    found = svc.registry.lookup(code)
    result = found if isinstance(found, Failure) else svc.mailer.share(found, body.email)
    svc.enforcer.record(ctx, "code.share_email", principal, result, {"code": code, "email": body.email})
    if isinstance(result, Failure):
        return failure_response(result)
    return MessageResponse(message="Invitation sent.")
