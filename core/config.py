"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The app
      lifespan stores it on app.state.settings so request handlers read the
      value resolved at startup instead of module-level globals.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. auth_bearer_tokens -> AUTH_BEARER_TOKENS, a JSON array).

  @model_validator(mode="after"): Normalizes the URL base and the bearer
      allow-list once, after all fields are resolved.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or oauth2/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gptauth.config")


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
    db_url: str = "sqlite:///gptauth.db"

    # Public base URL used to build links in outgoing emails.
    url_base: str = "http://localhost:8000"
    route_verify: str = "/web/signup.html?token={code}"
    route_update: str = "/web/update.html?token={code}"
    default_locale: str = "en"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # Static allow-list for service-to-service Bearer auth.
    auth_bearer_tokens: list[str] = []

    session_cookie_name: str = "gptauth_session"
    session_lifetime_seconds: int = 365 * 24 * 3600
    secure_cookies: bool = False
    cookie_samesite: str = "lax"

    # ------------------------------------------------------------------
    # OAuth2
    # ------------------------------------------------------------------

    auth_code_ttl_seconds: int = 10 * 60
    access_token_ttl_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Email (SMTP is used only when smtp_host is set)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "noreply@localhost"
    smtp_use_tls: bool = True

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def normalize(self) -> "Settings":
        """Strip the trailing slash from url_base and blanks from the bearer list.

        An empty allow-list is legal (every service request is refused with
        403) but almost always a deployment mistake outside debug mode.
        """
        self.url_base = self.url_base.rstrip("/")
        self.auth_bearer_tokens = [t.strip() for t in self.auth_bearer_tokens if t and t.strip()]
        if not self.auth_bearer_tokens and not self.debug:
            logger.warning("AUTH_BEARER_TOKENS is empty -- service API requests will be rejected")
        return self

    def verify_link(self, code: str) -> str:
        return self.url_base + self.route_verify.format(code=code)

    def update_link(self, code: str) -> str:
        return self.url_base + self.route_update.format(code=code)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
