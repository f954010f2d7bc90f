"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TokenGate happen here. No module should
call os.getenv() or os.environ.get() directly.

Design patterns used:
  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Implements the DEBUG-conditional
      SECRET_KEY logic: dev mode generates a key with a warning, production
      mode refuses to start without one.

  AuthConfig (frozen dataclass): the immutable subset of settings the token
      subsystem needs. Built once at startup by to_auth_config() and passed
      explicitly into the codec, issuer and gate. Nothing under auth/ reads
      settings on its own.

Security notes:
  SECRET_KEY shorter than 32 chars (256 bits) is rejected outright. HS256
  signing relies on key entropy -- a short key weakens every token.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. A random key in production would silently invalidate every
  token on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or revocation/.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokengate.config")

MIN_SECRET_LENGTH = 32

DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokengate_users.db'}"


class ConfigurationError(ValueError):
    """Fatal startup misconfiguration. Never raised while serving requests."""


@dataclass(frozen=True)
class AuthConfig:
    """Immutable token-subsystem configuration, constructed once at startup."""

    secret_key: str
    issuer: str
    access_ttl_seconds: int
    refresh_ttl_seconds: int
    clock_skew_seconds: float = 0.0
    revoke_all_on_replay: bool = True


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings(debug=True) can be instantiated in
    test environments without a real .env file.
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

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "tokengate"
    # Access tokens stay short: logout-all does not blacklist outstanding
    # access tokens, so this ttl is the exposure window after a global logout.
    access_token_expire_seconds: int = 1800
    refresh_token_expire_seconds: int = 14 * 24 * 3600
    clock_skew_seconds: float = 0.0
    revoke_all_on_replay: bool = True

    # ------------------------------------------------------------------
    # Revocation store (Redis)
    # ------------------------------------------------------------------

    redis_url: str = "redis://localhost:6379/0"
    revocation_store_timeout_seconds: float = 0.5
    revocation_scan_batch_size: int = 500

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    database_url: str = DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"
    login_max_failures_per_user: int = 5
    login_max_failures_per_ip: int = 20
    login_failure_window_seconds: int = 900

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < MIN_SECRET_LENGTH:
            raise ValueError(f"SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters.")
        return self

    @model_validator(mode="after")
    def validate_lifetimes(self) -> "Settings":
        """Refresh tokens must outlive access tokens; both must be positive."""
        if self.access_token_expire_seconds <= 0 or self.refresh_token_expire_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.refresh_token_expire_seconds <= self.access_token_expire_seconds:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must exceed ACCESS_TOKEN_EXPIRE_SECONDS.")
        if self.revocation_store_timeout_seconds <= 0:
            raise ValueError("REVOCATION_STORE_TIMEOUT_SECONDS must be positive; the store lookup must be bounded.")
        return self

    def to_auth_config(self) -> AuthConfig:
        return AuthConfig(
            secret_key=self.secret_key,
            issuer=self.token_issuer,
            access_ttl_seconds=self.access_token_expire_seconds,
            refresh_ttl_seconds=self.refresh_token_expire_seconds,
            clock_skew_seconds=self.clock_skew_seconds,
            revoke_all_on_replay=self.revoke_all_on_replay,
        )


def load_settings(**overrides) -> Settings:
    """Build Settings, converting validation failures into ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only the application assembly (api/main.py, main.py) calls this. Library
    code receives an AuthConfig instead.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return load_settings()
