"""
Application configuration.

Loads settings from environment variables with sensible defaults.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # ==========================================================================
    # Environment
    # ==========================================================================

    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    # ==========================================================================
    # API Server
    # ==========================================================================

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # ==========================================================================
    # Authentication (token claims source)
    # ==========================================================================

    jwt_secret_key: str = "dev-jwt-secret-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 60

    # ==========================================================================
    # Access gates
    # ==========================================================================

    # Trusted-device ceilings per subscription tier
    device_limit_free: int = 1
    device_limit_paid: int = 5

    # Paths reachable before the caller's device row exists
    device_allowlist_paths: str = "/auth/complete-login"

    # Current-subscription resolution pages newest-first, bounded
    subscription_page_size: int = 25
    subscription_max_pages: int = 20

    # Activity log
    audit_list_limit: int = 50

    # Free accounts may own at most this many profiles
    profile_limit_free: int = 2

    # ==========================================================================
    # AWS
    # ==========================================================================

    aws_region: str = "us-east-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""

    devices_table_name: str = "kinvault-devices"
    subscriptions_table_name: str = "kinvault-subscriptions"
    profiles_table_name: str = "kinvault-profiles"
    shares_table_name: str = "kinvault-share-invites"
    vaccines_table_name: str = "kinvault-vaccines"
    vaccine_share_links_table_name: str = "kinvault-vaccine-share-links"
    audit_events_table_name: str = "kinvault-audit-events"

    cognito_user_pool_id: str = ""

    # ==========================================================================
    # Optional Services
    # ==========================================================================

    sentry_dsn: str = ""

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def device_allowlist(self) -> frozenset[str]:
        return frozenset(p.strip() for p in self.device_allowlist_paths.split(",") if p.strip())

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def use_aws(self) -> bool:
        """Whether AWS services should be used."""
        return bool(self.aws_access_key_id and self.aws_secret_access_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
