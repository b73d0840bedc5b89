"""
Application configuration using Pydantic Settings.
All settings are loaded from environment variables.
"""

import logging
from functools import lru_cache
from typing import List, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

from guardian.errors import InitializationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_ORIGINS = ",".join(
    [
        "https://wiznote.app",
        "https://stripe.webcap.media",
        "https://webcap.media",
        "http://localhost:8081",
        "http://localhost:3000",
        "http://localhost:3001",
        "http://127.0.0.1:8081",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:3001",
    ]
)

SECRET_KEY_PREFIX = "sb_secret_"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    port: int = 8080
    node_env: str = "development"
    log_level: str = "INFO"

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_publishable_key: str = ""
    stripe_api_version: str = "2024-06-20"

    # Supabase (plans, and profiles unless WizNote is configured)
    supabase_url: str = ""
    supabase_secret_key: str = ""
    supabase_service_role_key: str = ""

    # Supabase project holding user_profiles
    wiznote_supabase_url: str = ""
    wiznote_supabase_secret_key: str = ""
    wiznote_supabase_service_key: str = ""

    # CORS
    allowed_origins: str = DEFAULT_ALLOWED_ORIGINS

    # Periodic sync
    sync_enabled: bool = True
    sync_interval_minutes: int = 60
    sync_active_limit: int = 100
    sync_canceled_limit: int = 50
    sync_replay_events: bool = False

    # Webhooks
    webhook_refetch_subscriptions: bool = True

    @property
    def cors_origins(self) -> List[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.node_env.lower() == "production"

    @property
    def uses_wiznote_project(self) -> bool:
        return bool(self.wiznote_supabase_url)

    @property
    def profiles_supabase_url(self) -> str:
        """Supabase URL of the project holding user_profiles."""
        return self.wiznote_supabase_url or self.supabase_url

    def admin_key(self, wiznote: bool = False) -> str:
        """
        Pick the Supabase admin key for a project.

        New-format secret keys win over legacy service-role keys.

        Args:
            wiznote: Select the key for the WizNote project.

        Returns:
            The admin key to send to PostgREST.

        Raises:
            InitializationError: If neither key is configured.
        """
        if wiznote and self.uses_wiznote_project:
            secret, legacy = self.wiznote_supabase_secret_key, self.wiznote_supabase_service_key
            names = ("WIZNOTE_SUPABASE_SECRET_KEY", "WIZNOTE_SUPABASE_SERVICE_KEY")
        else:
            secret, legacy = self.supabase_secret_key, self.supabase_service_role_key
            names = ("SUPABASE_SECRET_KEY", "SUPABASE_SERVICE_ROLE_KEY")

        if secret:
            if not secret.startswith(SECRET_KEY_PREFIX):
                logger.warning(f"{names[0]} does not look like a {SECRET_KEY_PREFIX}* key")
            return secret
        if legacy:
            logger.warning(f"Using legacy {names[1]}; migrate to {names[0]}")
            return legacy
        raise InitializationError(
            "Missing Supabase admin key",
            details=f"Set {names[0]} (recommended) or {names[1]} (legacy)",
        )

    def admin_key_type(self, wiznote: bool = False) -> str:
        """Report which kind of admin key is configured: secret, service_role or none."""
        try:
            key = self.admin_key(wiznote=wiznote)
        except InitializationError:
            return "none"
        return "secret" if key.startswith(SECRET_KEY_PREFIX) else "service_role"

    def required_env(self) -> List[Tuple[str, bool]]:
        """Presence of every variable the service needs to do useful work."""
        return [
            ("STRIPE_SECRET_KEY", bool(self.stripe_secret_key)),
            ("STRIPE_WEBHOOK_SECRET", bool(self.stripe_webhook_secret)),
            ("SUPABASE_URL", bool(self.supabase_url)),
            (
                "SUPABASE_SECRET_KEY",
                bool(self.supabase_secret_key or self.supabase_service_role_key),
            ),
        ]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
