"""
registry/email.py -- Sending a signup code to an invitee by email.

Delivery is an external collaborator. Two transports ship:

  LogEmailTransport      -- default; writes a log line (recipient domain
                            only) and delivers nothing. Fine for development.
  WebhookEmailTransport  -- POSTs the message as JSON to a mail relay
                            (EMAIL_WEBHOOK_URL) with a bounded timeout.

Transports raise DependencyUnavailable on delivery failure; InviteMailer
converts that into Failure(DEPENDENCY_UNAVAILABLE).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol
from urllib.parse import quote

import requests

from core.db import utcnow
from core.errors import DependencyUnavailable, ErrorKind, Failure
from registry.models import SignupCode

logger = logging.getLogger("codeguard.email")


@dataclass(frozen=True)
class EmailMessage:
    sender: str
    recipient: str
    subject: str
    body: str


class EmailTransport(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class LogEmailTransport:
    """Delivers nothing and keeps nothing; one log line per message."""

    def send(self, message: EmailMessage) -> None:
        logger.info("Email to *@%s queued (log transport): %s", message.recipient.rpartition("@")[2], message.subject)


class WebhookEmailTransport:
    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self._url = url
        self._timeout = timeout
        # Relay endpoint is fixed configuration; do not follow long redirect chains.
        self._session = requests.Session()
        self._session.max_redirects = 3

    def send(self, message: EmailMessage) -> None:
        payload = {
            "from": message.sender,
            "to": message.recipient,
            "subject": message.subject,
            "text": message.body,
        }
        try:
            resp = self._session.post(self._url, json=payload, timeout=self._timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise DependencyUnavailable("email relay request failed") from e


class InviteMailer:
    """Compose and send the invitation for one code.

    Ownership is checked by the caller; this only refuses codes that can no
    longer be redeemed.
    """

    def __init__(
        self,
        transport: EmailTransport,
        sender: str,
        app_base_url: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._transport = transport
        self._sender = sender
        self._base_url = app_base_url.rstrip("/")
        self._clock = clock

    def compose(self, code: SignupCode, recipient: str) -> EmailMessage:
        name = code.profile.hospital_name
        link = f"{self._base_url}/signup?code={code.code}&hospital={quote(name)}"
        lines = [
            f"{name} has invited you to sign up.",
            "",
            f"Your signup code: {code.code}",
        ]
        if code.profile.description:
            lines.append(code.profile.description)
        if code.expires_at is not None:
            lines.append(f"The code expires at {code.expires_at:%Y-%m-%d %H:%M} UTC.")
        lines += ["", f"Sign up here: {link}"]
        return EmailMessage(
            sender=self._sender,
            recipient=recipient,
            subject=f"{name} signup invitation",
            body="\n".join(lines),
        )

    def share(self, code: SignupCode, recipient: str) -> Optional[Failure]:
        if not code.is_active:
            return Failure(ErrorKind.INVALID_CODE)
        if code.is_expired(self._clock()):
            return Failure(ErrorKind.CODE_EXPIRED)
        try:
            self._transport.send(self.compose(code, recipient))
        except DependencyUnavailable:
            logger.exception("Email delivery failed")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        return None
