"""
api/main.py -- FastAPI application entry point for CodeGuard.

Run with:  uvicorn asgi:app --reload
           python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces the per-IP login limit from api.limiter

Per-action limits (verify, redeem, issue, ...) are not slowapi's job: they
live in core.ratelimit and are applied by the AccessEnforcer so every denial
lands in the audit trail.

Lifespan builds the Services container on startup, starts the sweep task,
and tears both down symmetrically on shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from slowapi.middleware import SlowAPIMiddleware

from api.context import client_ip
from api.errors import register_exception_handlers
from api.limiter import limiter
from api.models import HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.codes import router as codes_router
from api.routes.v1.flags import router as flags_router
from api.routes.v1.security import router as security_router
from api.services import Services, build_services, get_services
from audit.masking import mask_code, safe_mask_ip
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("codeguard.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


def sweep(services: Services) -> tuple[int, bool]:
    """Drop expired rate-limit windows and fail a stuck self-test run.

    Returns (purged_windows, reaped_run).
    """
    purged = services.limiter.purge_expired()
    reaped = services.harness.reap_stuck()
    if purged or reaped:
        logger.info("Sweep: purged %d rate-limit windows, reaped stuck self-test=%s", purged, reaped)
    return purged, reaped


async def _sweep_loop(app: FastAPI) -> None:
    """Run sweep() every SWEEP_INTERVAL_SECONDS until cancelled at shutdown.

    CancelledError from task.cancel() propagates out of asyncio.sleep and
    unwinds the coroutine cleanly.
    """
    services: Services = app.state.services
    while True:
        await asyncio.sleep(services.settings.sweep_interval_seconds)
        sweep(services)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. Services must exist before the sweep task references them.
    """
    logger.info("CodeGuard API starting up")
    app.state.services = build_services(_settings)
    logger.info(
        "Services initialized (users present=%s)",
        app.state.services.user_store.has_users(),
    )
    app.state.sweep_task = asyncio.create_task(_sweep_loop(app))

    yield

    app.state.sweep_task.cancel()
    app.state.services.close()
    logger.info("CodeGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CodeGuard API",
    description="Signup-code issuance, verification and abuse prevention.",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logged: method, path with any signup code masked, status, latency and the
# masked client address. Query strings and bodies are never logged.
# ---------------------------------------------------------------------------

_CODE_SEGMENT = re.compile(r"/codes/(?!(?:verify|redeem)$)([^/]+)")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms client=%s",
        request.method,
        _CODE_SEGMENT.sub(lambda m: "/codes/" + mask_code(m.group(1)), request.url.path),
        response.status_code,
        ms,
        safe_mask_ip(client_ip(request)),
    )
    return response


# ---------------------------------------------------------------------------
# Exception handlers and routers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(codes_router, prefix="/api/v1", tags=["Signup Codes"])
app.include_router(flags_router, prefix="/api/v1", tags=["Activity Flags"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined on the app itself, outside the routers, and never rate limited.
# ---------------------------------------------------------------------------


def _dependency_status(services: Services) -> dict[str, str]:
    return {
        "users": "ok" if services.user_store.ping() else "unavailable",
        "codes": "ok" if services.code_store.ping() else "unavailable",
        "audit": "ok" if services.audit_store.ping() else "unavailable",
    }


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health(svc: Services = Depends(get_services)) -> HealthResponse:
    """Return liveness, version, and the reachability of each store."""
    deps = await run_in_threadpool(_dependency_status, svc)
    status = "ok" if all(v == "ok" for v in deps.values()) else "degraded"
    return HealthResponse(status=status, version=__version__, dependencies=deps)
