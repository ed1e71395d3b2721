"""
auth/tokens.py -- JWT and password hashing utilities.

Tokens:
  HS256 bearer tokens (python-jose). Claims: sub = username, user_id, role,
  exp. A token that fails to decode for any reason yields None, and the
  identity provider answers UNAUTHENTICATED without saying why.

Passwords:
  bcrypt hashes, no passlib layer. Login always pays for one bcrypt check,
  against _DUMMY_HASH when the username is unknown, so the response time
  does not reveal which usernames exist.

Signing key:
  Settings.secret_key by default. Callers that hold their own Settings (the
  identity provider, the self-test harness, the CLI) pass secret_key
  explicitly.

Layer rule: no imports from api/, registry/, audit/, or selftest/. Import from
core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.models import PASSWORD_MAX_BYTES

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """bcrypt-hash plain.

    Raises ValueError past PASSWORD_MAX_BYTES of UTF-8 rather than hashing a
    truncated secret. UserCreate and the create-user command check first.
    """
    raw = plain.encode("utf-8")
    if len(raw) > PASSWORD_MAX_BYTES:
        raise ValueError(f"password longer than {PASSWORD_MAX_BYTES} bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a mismatch, never as a match.
        return False


# Hashed once at import so the first unknown-username login costs the same as later ones.
_DUMMY_HASH: str = hash_password("codeguard_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(
    user_id: int | str,
    username: str,
    role: str,
    expire_seconds: int = 0,
    secret_key: str | None = None,
) -> str:
    """Encode a signed JWT with user identity and expiry.

    Args:
        user_id:        User id stored in the DB.
        username:       Stored as the JWT subject claim.
        role:           "admin" | "doctor" | "customer".
        expire_seconds: Token lifetime. 0 (default) uses
                        Settings.token_expire_seconds; a negative value
                        produces an already-expired token (self-test probes).
        secret_key:     Signing key. Defaults to Settings.secret_key.
    """
    duration = expire_seconds if expire_seconds != 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": username,
        "user_id": str(user_id),
        "role": role,
        "exp": expire,
    }
    return jwt.encode(payload, secret_key or _settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str, secret_key: str | None = None) -> dict | None:
    """Payload of a valid token carrying user_id and role, else None.

    Expired, tampered, wrong-key and structurally broken tokens all come back
    as None; the caller cannot and need not tell them apart.
    """
    try:
        payload = jwt.decode(token, secret_key or _settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "role" not in payload:
        return None
    return payload


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Unknown usernames, probe accounts without a password and wrong passwords
    all cost one bcrypt check.

    Returns the User on success, None on any failure. Store failures
    propagate as DependencyUnavailable.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
