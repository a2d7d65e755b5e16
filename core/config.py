"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for StepGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY).

  @model_validator(mode="after"): Cross-field production-safety rules. Dev mode
      (DEBUG=true) fills in missing secrets and the demo seed password with a
      warning; production mode refuses to start without them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It keys the HMAC
       used for verification codes and opaque token digests.

  [M7] In production mode a missing SECRET_KEY or SMTP_HOST is a hard startup
       failure. Email codes must never silently go nowhere.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from urllib.parse import urlparse

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("stepgate.config")

DEMO_SEED_PASSWORD = "ChangeMe#12345"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true).
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
    secret_key: str = ""
    # Canonical deployment origin. The WebAuthn rpId is its hostname.
    app_url: str = "http://localhost:5173"
    db_url: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver"]
    trust_proxy_headers: bool = False

    # ------------------------------------------------------------------
    # Seed user (created on startup if missing)
    # ------------------------------------------------------------------

    seed_username: str = "admin"
    seed_email: str = "admin@example.com"
    seed_password: str = ""

    # ------------------------------------------------------------------
    # SMTP (verification code delivery)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""

    # ------------------------------------------------------------------
    # Step lifetimes (seconds)
    # ------------------------------------------------------------------

    temp_session_ttl_seconds: int = 10 * 60
    verification_code_ttl_seconds: int = 5 * 60
    step2_token_ttl_seconds: int = 10 * 60
    challenge_ttl_seconds: int = 5 * 60
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 30 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting and lockouts
    # ------------------------------------------------------------------

    step1_rate_limit: str = "20/minute"
    step2_verify_rate_limit: str = "30/minute"
    code_send_rate_limit: str = "5/minute"
    username_max_failures: int = 5
    username_lockout_seconds: int = 10 * 60
    session_max_failures: int = 8
    session_failure_window_seconds: int = 10 * 60
    session_lockout_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    cleanup_interval_seconds: float = 60.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_production_safety(self) -> "Settings":
        """Enforce SECRET_KEY, SMTP and seed-password policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate SECRET_KEY, allow the logging email
            transport, and seed the demo password if none is configured.

        Production mode: SECRET_KEY and SMTP_HOST are required. The seed user is
            only created when SEED_PASSWORD is set explicitly.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Issued tokens will not survive a restart.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.smtp_host and not self.debug:
            raise ValueError(
                "SMTP_HOST is required in production mode. "
                "Verification codes cannot be delivered without an email transport."
            )
        if not self.seed_password and self.debug:
            self.seed_password = DEMO_SEED_PASSWORD
            logger.warning("Seeding user %r with the demo password.", self.seed_username)
        if not urlparse(self.app_url).hostname:
            raise ValueError(f"APP_URL must be an absolute origin, got {self.app_url!r}")
        return self

    @property
    def rp_id(self) -> str:
        """WebAuthn relying-party id: the hostname of the canonical origin."""
        return urlparse(self.app_url).hostname or ""

    @property
    def origin(self) -> str:
        """APP_URL reduced to scheme://host[:port], the form clientDataJSON carries."""
        parsed = urlparse(self.app_url)
        return f"{parsed.scheme}://{parsed.netloc}"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
