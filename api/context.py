"""
api/context.py -- Builds the enforcer's RequestContext from a FastAPI Request.

Use as a dependency so the start time is taken as early as possible:

    @router.post("/codes/redeem")
    def redeem(body: CodeCheck, ctx: RequestContext = Depends(request_context)): ...
"""

from __future__ import annotations

from fastapi import Request

from auth.enforcer import RequestContext


def client_ip(request: Request) -> str:
    """The peer address as seen by the server. X-Forwarded-For is not trusted."""
    return request.client.host if request.client else "unknown"


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        authorization=request.headers.get("Authorization", ""),
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent", "")[:255],
    )
