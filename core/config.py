"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CodeGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). List fields accept JSON
      (ALLOWED_HOSTS='["localhost","example.org"]').

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Enforces the SECRET_KEY policy and checks every rate-limit
      string parses before the app accepts traffic.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies on
  key entropy -- a short key weakens every bearer token we issue.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
registry/, audit/, or selftest/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from limits import parse
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("codeguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'codeguard.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # Every call that leaves the process (store connection, email webhook)
    # is bounded by this many seconds.
    dependency_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Per-action rate limits ("<amount>/<granularity>", limits syntax)
    # ------------------------------------------------------------------

    codegen_rate_limit: str = "1/day"
    code_issue_rate_limit: str = "5/hour"
    verify_rate_limit: str = "5/minute"
    redeem_rate_limit: str = "10/minute"
    usage_history_rate_limit: str = "10/minute"
    share_email_rate_limit: str = "5/5minute"
    default_action_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Signup codes
    # ------------------------------------------------------------------

    code_default_max_uses: int = 10
    code_max_uses_ceiling: int = 1000

    # ------------------------------------------------------------------
    # Background sweep and self-test
    # ------------------------------------------------------------------

    sweep_interval_seconds: int = 300
    selftest_timeout_seconds: int = 300

    # ------------------------------------------------------------------
    # Abuse monitoring
    # ------------------------------------------------------------------

    suspicious_failure_threshold: int = 5
    suspicious_failure_window_seconds: int = 300

    # ------------------------------------------------------------------
    # Email (optional -- empty webhook URL means log-only delivery)
    # ------------------------------------------------------------------

    email_webhook_url: str = ""
    email_sender: str = "no-reply@codeguard.local"
    app_base_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_rate_limits(self) -> "Settings":
        """Fail at startup, not on the first request, if a limit string is malformed."""
        for name in (
            "login_rate_limit",
            "codegen_rate_limit",
            "code_issue_rate_limit",
            "verify_rate_limit",
            "redeem_rate_limit",
            "usage_history_rate_limit",
            "share_email_rate_limit",
            "default_action_rate_limit",
        ):
            try:
                parse(getattr(self, name))
            except ValueError as exc:
                raise ValueError(f"{name.upper()} is not a valid rate limit: {getattr(self, name)!r}") from exc
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
