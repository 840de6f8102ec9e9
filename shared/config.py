"""
Shared configuration management for the Secrets Portal core.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PortalConfig(BaseSettings):
    """Portal configuration loaded from PORTAL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PORTAL_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    service_name: str = Field(default="secrets-portal")
    aws_region: str = Field(default="us-east-1")

    # HTTP
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    # Tables
    metadata_table_name: str = Field(default="secrets-metadata")
    audit_log_table_name: str = Field(default="secrets-audit-log")
    external_changes_table_name: str = Field(default="aws-console-changes")

    # Retention (days until the store expires an item)
    audit_retention_days: int = Field(default=90, ge=1)
    external_change_retention_days: int = Field(default=90, ge=1)

    # Store retry schedule
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_delays_ms: List[int] = Field(default_factory=lambda: [100, 200])

    # Rotation compliance
    rotation_reminder_days: int = Field(default=7, ge=0)
    scan_page_size: int = Field(default=100, ge=1)
    reconcile_page_size: int = Field(default=1000, ge=1)

    # Notifications
    notification_webhook_url: Optional[str] = Field(default=None)
    use_webhook_notifications: bool = Field(default=False)
    notification_timeout_seconds: float = Field(default=5.0, gt=0)
    portal_url: Optional[str] = Field(default=None)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4317")
    enable_console_tracing: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_config() -> PortalConfig:
    """Get the process configuration."""
    return PortalConfig()
