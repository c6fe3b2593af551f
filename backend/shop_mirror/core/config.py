"""
Centralized configuration management with Pydantic Settings.
All environment variables are validated and typed.
"""
import json
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, PostgresDsn, RedisDsn
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Shop Mirror API"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = Field(default="development", pattern="^(development|staging|production)$")

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: PostgresDsn
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_echo: bool = False

    # Redis (arq job queue)
    redis_url: Optional[RedisDsn] = None

    # Security
    encryption_key: str = Field(min_length=32)
    admin_api_key: str = Field(min_length=16)
    shopify_api_secret: Optional[str] = None

    # Shopify Admin API
    shopify_api_version: str = "2025-01"
    shopify_timeout_seconds: float = 30.0
    shopify_max_retries: int = 3

    # Replication policy
    replication_max_tries: int = 5
    replication_backoff_str: str = Field(default="10,30,60,120", alias="REPLICATION_BACKOFF")
    gate_max_attempts: int = 10
    gate_backoff_seconds: int = 60
    gate_ignored_domains_str: str = Field(default="", alias="GATE_IGNORED_DOMAINS")
    source_media_gate_enabled: bool = False
    media_processor_webhook_url: Optional[str] = None
    media_processor_webhook_secret: Optional[str] = None
    create_extra_tag: Optional[str] = None
    manual_collections_json: str = Field(default="{}", alias="MANUAL_COLLECTIONS")
    publish_on_create: bool = True
    webhook_loop_guard: bool = True

    # Mirror bootstrap (backfill VariantMirror rows from target variants)
    mirror_bootstrap_enabled: bool = True
    mirror_bootstrap_dry_run: bool = False

    @property
    def replication_backoff(self) -> List[int]:
        """Backoff tiers in seconds, one per retry."""
        return [int(part) for part in self.replication_backoff_str.split(",") if part.strip()]

    @property
    def gate_ignored_domains(self) -> List[str]:
        """Target domains the coordination gate never waits on."""
        return [
            domain.strip().lower()
            for domain in self.gate_ignored_domains_str.split(",")
            if domain.strip()
        ]

    @property
    def manual_collections(self) -> dict[str, str]:
        """Target domain -> collection GID that new products are attached to."""
        raw = json.loads(self.manual_collections_json or "{}")
        return {str(domain).lower(): str(gid) for domain, gid in raw.items()}

    # Notifications
    resend_api_key: Optional[str] = None
    notification_from: str = "Shop Mirror <alerts@shopmirror.dev>"
    ops_alert_email: Optional[str] = None
    ops_webhook_url: Optional[str] = None
    ops_webhook_secret: Optional[str] = None

    # Observability
    sentry_dsn: Optional[str] = None
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
