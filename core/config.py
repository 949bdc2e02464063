"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the identity service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
or accept a Settings instance instead.

Design patterns used:
  Cached factory via lru_cache: get_settings() instantiates Settings once at
      first call and returns the cached instance afterwards. Services never
      read it implicitly: api/main.py and main.py pass the instance into every
      constructor, so tests build their own Settings(...) without touching
      process-wide state.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Dev mode (DEBUG=true) generates missing signing secrets with a
      warning; production refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.
  [M7] Access and refresh tokens are signed with two different secrets. A
       refresh token can never be replayed as an access token (or vice versa)
       because the signature check fails under the other key.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or integrations/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("crmidentity.config")

_SECRET_FIELDS = ("access_token_secret", "refresh_token_secret", "oauth_state_secret")


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
    database_url: str = "sqlite:///./crm_identity.db"

    # ------------------------------------------------------------------
    # Token signing -- empty string is the "not configured" sentinel
    # ------------------------------------------------------------------

    access_token_secret: str = ""
    refresh_token_secret: str = ""
    oauth_state_secret: str = ""

    access_token_expire_minutes: int = 15
    refresh_token_expire_days: int = 7
    oauth_state_expire_seconds: int = 600

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_idle_timeout_minutes: int = 30
    suspicious_window_minutes: int = 60
    # More than this many distinct locations inside the window is suspicious.
    suspicious_location_threshold: int = 2
    # Empty string disables remote lookups; every session gets "unknown".
    geo_lookup_url: str = ""
    geo_lookup_timeout_seconds: float = 2.0

    # ------------------------------------------------------------------
    # Partner integration (HubSpot)
    # ------------------------------------------------------------------

    hubspot_client_id: str = ""
    hubspot_client_secret: str = ""
    hubspot_redirect_uri: str = "http://localhost:8000/api/v1/integrations/hubspot/callback"
    hubspot_scopes: str = "contacts content timeline"
    hubspot_auth_url: str = "https://app.hubspot.com/oauth/authorize"
    hubspot_token_url: str = "https://api.hubapi.com/oauth/v1/token"  # noqa: S105 -- URL, not a password

    partner_refresh_ahead_seconds: int = 300
    partner_http_timeout_seconds: float = 10.0
    partner_lock_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Comma-separated peer addresses (reverse proxies) whose X-Forwarded-For
    # header is believed. "*" trusts any peer. Empty: the socket address is
    # the client IP and X-Forwarded-For is ignored.
    forwarded_allow_ips: str = ""
    # How often the API process runs sweep_idle + prune_revocations.
    maintenance_interval_seconds: int = 300

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing secret policy [M6][M7].

        Dev mode (DEBUG=true): missing secrets are generated with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start if any secret is missing.

        Both modes: reject secrets shorter than 32 characters, and reject an
            access secret equal to the refresh secret.
        """
        for field in _SECRET_FIELDS:
            value = getattr(self, field)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, field, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field.upper())
            elif len(value) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return self

    @property
    def hubspot_configured(self) -> bool:
        return bool(self.hubspot_client_id and self.hubspot_client_secret)

    @property
    def trusted_proxies(self) -> frozenset[str]:
        return frozenset(ip.strip() for ip in self.forwarded_allow_ips.split(",") if ip.strip())


@lru_cache
def get_settings() -> Settings:
    """Return the process Settings instance.

    Only entry points (api/main.py, main.py) call this. Library code receives
    Settings through its constructor.

    In tests: call get_settings.cache_clear() if you need to re-read the
    environment.
    """
    return Settings()
