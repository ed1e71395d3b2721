"""
api/services.py -- Explicit wiring of every CodeGuard component.

build_services() constructs each collaborator once and hands it to the
components that need it; nothing below the API layer reaches for a global.
The lifespan in api/main.py stores the result on app.state.services, and
tests build their own with isolated databases.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from audit.flags import ActivityFlags, FlagStore
from audit.logger import AuditLogger
from audit.monitor import SuspiciousActivityMonitor
from audit.store import AuditStore
from auth.enforcer import AccessEnforcer, default_policies
from auth.identity import IdentityProvider
from auth.store import UserStore
from core.config import Settings
from core.ratelimit import RateLimiter
from registry.email import EmailTransport, InviteMailer, LogEmailTransport, WebhookEmailTransport
from registry.registry import CodeRegistry
from registry.store import CodeStore
from registry.verifier import Verifier
from selftest.harness import SecurityTestHarness


@dataclass
class Services:
    settings: Settings
    limiter: RateLimiter
    user_store: UserStore
    code_store: CodeStore
    audit_store: AuditStore
    flag_store: FlagStore
    audit: AuditLogger
    flags: ActivityFlags
    monitor: SuspiciousActivityMonitor
    enforcer: AccessEnforcer
    registry: CodeRegistry
    verifier: Verifier
    mailer: InviteMailer
    harness: SecurityTestHarness

    def close(self) -> None:
        for store in (self.user_store, self.code_store, self.audit_store, self.flag_store):
            store.close()


def build_services(
    settings: Settings,
    db_url: Optional[str] = None,
    transport: Optional[EmailTransport] = None,
    limiter: Optional[RateLimiter] = None,
) -> Services:
    """Construct every component. db_url overrides settings.database_url (tests)."""
    url = db_url or settings.database_url
    timeout = settings.dependency_timeout_seconds
    limiter = limiter or RateLimiter()

    user_store = UserStore(url, timeout)
    code_store = CodeStore(url, timeout)
    audit_store = AuditStore(url, timeout)
    flag_store = FlagStore(url, timeout)

    audit = AuditLogger(audit_store)
    flags = ActivityFlags(flag_store)
    if transport is None:
        if settings.email_webhook_url:
            transport = WebhookEmailTransport(settings.email_webhook_url, timeout)
        else:
            transport = LogEmailTransport()

    return Services(
        settings=settings,
        limiter=limiter,
        user_store=user_store,
        code_store=code_store,
        audit_store=audit_store,
        flag_store=flag_store,
        audit=audit,
        flags=flags,
        monitor=SuspiciousActivityMonitor(
            audit,
            flags,
            threshold=settings.suspicious_failure_threshold,
            window_seconds=settings.suspicious_failure_window_seconds,
        ),
        enforcer=AccessEnforcer(
            IdentityProvider(user_store, settings.secret_key),
            limiter,
            audit,
            default_policies(settings),
        ),
        registry=CodeRegistry(
            code_store,
            limiter,
            codegen_limit=settings.codegen_rate_limit,
            default_max_uses=settings.code_default_max_uses,
            max_uses_ceiling=settings.code_max_uses_ceiling,
        ),
        verifier=Verifier(code_store),
        mailer=InviteMailer(transport, settings.email_sender, settings.app_base_url),
        harness=SecurityTestHarness(
            user_store,
            audit,
            settings.secret_key,
            timeout_seconds=settings.selftest_timeout_seconds,
        ),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the Services installed by the lifespan."""
    return request.app.state.services
