"""
api/routes/v1/auth.py -- Login and user management REST endpoints.

Routes:
  POST /api/v1/auth/login   -- password login; returns a bearer JWT
  GET  /api/v1/auth/me      -- current user info (any role)
  POST /api/v1/auth/users   -- create user (admin only)
  GET  /api/v1/auth/users   -- list all users (admin only)

Security:
  POST /login is rate-limited per client IP by slowapi (LOGIN_RATE_LIMIT).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.context import request_context
from api.errors import failure_response
from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MeResponse, UserCreate, UserResponse
from api.services import Services, get_services
from auth.enforcer import RequestContext
from auth.models import Principal, User
from auth.tokens import authenticate_user, create_access_token, hash_password
from core.config import get_settings
from core.errors import DependencyUnavailable, ErrorKind, Failure

# Auth policy:
# - POST /api/v1/auth/login:  public -- login endpoint must be unauthenticated
# - GET  /api/v1/auth/me:     any authenticated role ("user.me")
# - POST /api/v1/auth/users:  admin ("user.create")
# - GET  /api/v1/auth/users:  admin ("user.list")
router = APIRouter()
logger = logging.getLogger("codeguard.api")

_settings = get_settings()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        is_active=user.is_active,
        created_at=user.created_at,
        last_login=user.last_login,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    body: LoginRequest,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
) -> JSONResponse:
    """Authenticate with username and password; return a bearer token.

    Wrong username and wrong password get the same UNAUTHENTICATED answer so
    the response does not reveal which usernames exist.
    """
    try:
        user = authenticate_user(svc.user_store, body.username, body.password)
    except DependencyUnavailable:
        result: Failure = Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        svc.enforcer.record(ctx, "auth.login", None, result, {"username": body.username})
        return failure_response(result)

    if user is None:
        result = Failure(ErrorKind.UNAUTHENTICATED, "Invalid username or password.")
        svc.enforcer.record(ctx, "auth.login", None, result, {"username": body.username})
        resp = failure_response(result)
        resp.headers["Cache-Control"] = "no-store"
        return resp

    try:
        svc.user_store.update_last_login(user.id)
    except DependencyUnavailable:
        # Login still succeeds; last_login is informational.
        logger.warning("Could not stamp last_login for user %s", user.id)
    expire = svc.settings.token_expire_seconds
    token = create_access_token(user.id, user.username, user.role, expire, secret_key=svc.settings.secret_key)
    principal = Principal(user_id=str(user.id), username=user.username, role=user.role)
    svc.enforcer.record(ctx, "auth.login", principal, None, {"username": user.username})
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            expires_in=expire,
            username=user.username,
            role=user.role,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(ctx: RequestContext = Depends(request_context), svc: Services = Depends(get_services)):
    principal = svc.enforcer.authorize(ctx, "user.me")
    if isinstance(principal, Failure):
        return failure_response(principal)
    svc.enforcer.record(ctx, "user.me", principal)
    return MeResponse(id=int(principal.user_id), username=principal.username, role=principal.role)


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    body: UserCreate,
    ctx: RequestContext = Depends(request_context),
    svc: Services = Depends(get_services),
):
    principal = svc.enforcer.authorize(ctx, "user.create")
    if isinstance(principal, Failure):
        return failure_response(principal)

    details = {"username": body.username, "role": body.role.value}
    try:
        uid = svc.user_store.create_user(
            User(username=body.username, role=body.role.value, hashed_password=hash_password(body.password))
        )
        user = svc.user_store.get_by_id(uid)
    except IntegrityError:
        result = Failure(ErrorKind.INVALID_FORMAT, "Username is already taken.")
        svc.enforcer.record(ctx, "user.create", principal, result, details)
        return failure_response(result)
    except DependencyUnavailable:
        result = Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        svc.enforcer.record(ctx, "user.create", principal, result, details)
        return failure_response(result)

    svc.enforcer.record(ctx, "user.create", principal, user, {**details, "user_id": uid})
    return _user_response(user)


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(ctx: RequestContext = Depends(request_context), svc: Services = Depends(get_services)):
    principal = svc.enforcer.authorize(ctx, "user.list")
    if isinstance(principal, Failure):
        return failure_response(principal)
    try:
        users = svc.user_store.list_users()
    except DependencyUnavailable:
        result = Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        svc.enforcer.record(ctx, "user.list", principal, result)
        return failure_response(result)
    svc.enforcer.record(ctx, "user.list", principal, users, {"returned": len(users)})
    return [_user_response(u) for u in users]
