"""
auth/identity.py -- Turns a bearer token into an active User.

This is the boundary to the identity provider: signature and expiry checks
(python-jose) plus a lookup of the user the token names. Every invalid token
and every unknown or deactivated user yields UNAUTHENTICATED; only a store
failure yields DEPENDENCY_UNAVAILABLE.
"""

from __future__ import annotations

import logging
from typing import Union

from auth.models import User
from auth.store import UserStore
from auth.tokens import decode_access_token
from core.errors import DependencyUnavailable, ErrorKind, Failure

logger = logging.getLogger("codeguard.auth")


class IdentityProvider:
    def __init__(self, user_store: UserStore, secret_key: str | None = None) -> None:
        self._users = user_store
        self._secret_key = secret_key

    def resolve(self, token: str) -> Union[User, Failure]:
        payload = decode_access_token(token, self._secret_key)
        if payload is None:
            return Failure(ErrorKind.UNAUTHENTICATED, "Invalid or expired token.")
        try:
            user_id = int(payload["user_id"])
        except (TypeError, ValueError):
            return Failure(ErrorKind.UNAUTHENTICATED, "Invalid or expired token.")
        try:
            user = self._users.get_by_id(user_id)
        except DependencyUnavailable:
            logger.exception("User store unavailable while resolving token")
            return Failure(ErrorKind.DEPENDENCY_UNAVAILABLE)
        if user is None or not user.is_active:
            return Failure(ErrorKind.UNAUTHENTICATED, "Invalid or expired token.")
        return user
