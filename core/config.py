"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Hanashi happen here. No module should call
os.getenv() or os.environ.get() directly.

Only the process edges call get_settings(): the API lifespan (api/main.py),
the user-control CLI (main.py), and the rate-limit callables in
api/limiter.py, which slowapi invokes per request without the request
object. The lifespan and the CLI build the store and services once and
hand each component the values it needs (pepper, site name, cooldowns) as
explicit constructor or call parameters. auth/ and notify/ never import
this module.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from HANASHI_* environment
      variables and an optional .env file. Type coercion and validation are
      built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Used for the RUNTIME_PEPPER policy: dev mode generates a
      pepper with a warning, production mode refuses to start without one.

Security notes:
  The pepper is mixed into every password hash and is never stored next to
  the credentials. Losing or changing it invalidates every stored password,
  so a generated dev pepper is only acceptable with DEBUG=true.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or notify/.
"""

import base64
import binascii
import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("hanashi.config")

PEPPER_BYTES = 32


class Settings(BaseSettings):
    """Application settings loaded from HANASHI_* environment variables and .env.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces the
    pepper policy at startup.

    Environment variable name mapping: field names are uppercased and
    prefixed. E.g. `runtime_pepper` reads from HANASHI_RUNTIME_PEPPER.
    """

    model_config = SettingsConfigDict(
        env_prefix="HANASHI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = "sqlite:///hanashi.db"
    # base64 of exactly 32 random bytes. Empty string is the sentinel for
    # "not configured"; the validator fills it in or raises.
    runtime_pepper: str = ""

    # ------------------------------------------------------------------
    # Site
    # ------------------------------------------------------------------

    site_name: str = "hanashi"
    site_link: str = "http://localhost:8000"
    site_domain: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = "session_id"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Rate limiting (per client IP, slowapi syntax)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    reset_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Outbound email
    # ------------------------------------------------------------------

    email_server: str = ""  # empty = log instead of sending
    email_port: int = 587
    email_username: str = ""
    email_password: str = ""
    email_starttls: bool = True  # False = implicit TLS (SMTP_SSL, usually port 465)
    email_from_address: str = "noreply@localhost"
    email_from_name: str = "hanashi"

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    pending_confirm_max_age_days: int = 14
    nag_inactive_days: int = 3
    nag_grace_days: int = 7

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_pepper(self) -> "Settings":
        """Enforce the RUNTIME_PEPPER policy.

        Dev mode (DEBUG=true): auto-generate a random pepper with a warning.
            Passwords set in this process will not verify after a restart.

        Production mode: refuse to start without a pepper.

        Both modes: the value must be base64 that decodes to exactly 32 bytes.
        """
        if not self.runtime_pepper:
            if self.debug:
                self.runtime_pepper = base64.b64encode(secrets.token_bytes(PEPPER_BYTES)).decode("ascii")
                logger.warning(
                    "WARNING: Using auto-generated RUNTIME_PEPPER. " "Passwords will not verify across restarts."
                )
            else:
                raise ValueError(
                    "HANASHI_RUNTIME_PEPPER is required in production mode "
                    "(format: 256-bit random value encoded as base64). "
                    "To run in development mode, set HANASHI_DEBUG=true."
                )
        try:
            decoded = base64.b64decode(self.runtime_pepper, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("HANASHI_RUNTIME_PEPPER isn't valid base64.") from exc
        if len(decoded) != PEPPER_BYTES:
            raise ValueError("HANASHI_RUNTIME_PEPPER must decode to exactly 32 bytes.")
        return self

    @property
    def pepper(self) -> bytes:
        """The decoded pepper. Validated at construction, so this cannot fail."""
        return base64.b64decode(self.runtime_pepper)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings instance.

    Call this only at process start (API lifespan, CLI main) and pass the
    resulting values down. In tests: call get_settings.cache_clear() between
    cases if you need to inject different environment variables.
    """
    return Settings()
