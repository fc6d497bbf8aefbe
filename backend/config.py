"""
Application settings loaded from environment variables via pydantic-settings.

.env file resolution order (first match wins):
  1. backend/.env          (set values here for per-checkout overrides)
  2. carepanel/.env        (project root, most convenient for local dev)

DEV MODE: If auth0_domain or supabase_url are not set, the server still
starts but endpoints that need them return a 503 with a clear message. Set
CAREPANEL_DEV_MODE=true to also bypass JWT verification and use a fixed dev
identity (safe only for local testing).
"""

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

_BACKEND_DIR = Path(__file__).parent
_PROJECT_ROOT = _BACKEND_DIR.parent

_ENV_FILES = [
    str(_BACKEND_DIR / ".env"),       # backend/.env  (takes precedence)
    str(_PROJECT_ROOT / ".env"),      # carepanel/.env  (project root)
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_ENV_FILES,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Auth0 ---
    auth0_domain: str = ""
    auth0_audience: str = ""

    # --- Supabase ---
    supabase_url: str = ""
    supabase_service_key: str = ""    # Service role, NEVER expose to frontend

    patients_table: str = "patients"
    notifications_table: str = "notifications"

    # --- Optimistic updates ---
    # Restore the pre-mutation row when a remote update fails.
    optimistic_revert_on_error: bool = True
    # Write roster toasts into the notifications table instead of only logging them.
    persist_notifications: bool = False
    toast_history: int = 20

    # --- Dev / runtime config ---
    environment: str = "development"
    log_level: str = "INFO"
    carepanel_dev_mode: bool = False  # Set to true to bypass JWT in local dev

    # -------------------------------------------------------------------------
    # Computed properties
    # -------------------------------------------------------------------------

    @property
    def jwks_uri(self) -> str:
        return f"https://{self.auth0_domain}/.well-known/jwks.json"

    @property
    def auth0_issuer(self) -> str:
        return f"https://{self.auth0_domain}/"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def auth_configured(self) -> bool:
        return bool(self.auth0_domain and self.auth0_audience)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)

    def require_supabase(self) -> None:
        """Call before any DB call. Raises 503 if Supabase is not configured."""
        if not self.supabase_configured:
            from fastapi import HTTPException
            raise HTTPException(
                status_code=503,
                detail=(
                    "Supabase is not configured. "
                    "Set SUPABASE_URL and SUPABASE_SERVICE_KEY in your .env file."
                ),
            )


@lru_cache()
def get_settings() -> Settings:
    s = Settings()
    # Startup diagnostics, logged once
    missing = []
    if not s.auth0_domain:      missing.append("AUTH0_DOMAIN")
    if not s.auth0_audience:    missing.append("AUTH0_AUDIENCE")
    if not s.supabase_url:      missing.append("SUPABASE_URL")
    if not s.supabase_service_key: missing.append("SUPABASE_SERVICE_KEY")
    if missing:
        import logging
        log = logging.getLogger("carepanel.config")
        log.warning(
            "CarePanel starting in PARTIAL mode, missing env vars: %s. "
            "Copy .env.example to .env and fill in values. "
            "Set CAREPANEL_DEV_MODE=true to bypass auth for local testing.",
            ", ".join(missing),
        )
    return s
