"""
api/limiter.py -- Edge limiter for the password login route.

Only POST /api/v1/auth/login is limited here: it runs before any identity
exists, so the key is the peer address. Every other per-action limit lives in
auth.enforcer.AccessEnforcer, keyed by actor, where denials are audited.

api/main.py mounts SlowAPIMiddleware with this same instance; a second
Limiter would keep its own counters and never trigger.
"""

from slowapi import Limiter
from starlette.requests import Request

from api.context import client_ip


def login_key(request: Request) -> str:
    # Same address the audit trail records; X-Forwarded-For is not trusted.
    return f"login:{client_ip(request)}"


limiter = Limiter(key_func=login_key, storage_uri="memory://", strategy="fixed-window")
