"""Application settings using Pydantic Settings."""

from datetime import date
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Full-pass order; an entity type may only depend on types listed before it.
ENTITY_TYPES: tuple[str, ...] = ("Company", "Contact", "Contract", "Product", "Invoice")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EXB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
    )

    # Bitrix24 Configuration
    b24_webhook_url: SecretStr = Field(
        description="Bitrix24 incoming webhook URL, e.g. https://portal.bitrix24.ru/rest/1/token/",
    )
    b24_timeout: int = Field(default=30, description="API request timeout in seconds")

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./exbridge.db",
        description="Database connection URL",
    )

    # Sync Configuration
    chunk_size: int = Field(
        default=500,
        ge=1,
        description="Maximum records pulled per request (one chunk)",
    )
    requests_per_second: float = Field(
        default=1.0,
        gt=0,
        description="Ceiling on requests started per second against Bitrix24",
    )
    max_concurrent: int = Field(
        default=2,
        ge=1,
        description="Maximum concurrent in-flight Bitrix24 requests",
    )
    min_invoice_date: date | None = Field(
        default=date(2025, 11, 1),
        description="Invoices modified before this date are never pulled",
    )
    sync_interval_minutes: int = Field(
        default=15,
        ge=1,
        description="Interval between full passes for the 'run' command",
    )
    skip_entity_types: str | None = Field(
        default=None,
        description="Comma-separated entity types to skip during a full pass (e.g. 'Invoice')",
    )

    # Retry ledger Configuration
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum retries for a record failing with a retryable error",
    )
    retry_base_minutes: float = Field(
        default=5.0,
        ge=0,
        description="Base backoff in minutes (doubles with every retry)",
    )
    retry_max_minutes: float = Field(
        default=60.0,
        ge=0,
        description="Cap on the backoff between retries in minutes",
    )
    stale_timeout_minutes: int = Field(
        default=10,
        ge=1,
        description="Locks older than this are treated as abandoned and reclaimed",
    )
    rate_limit_backoff_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Pause before the next request after the portal throttled us",
    )

    # Cache Configuration
    cache_entity_ttl: int = Field(default=600, description="TTL in seconds for entity lookups")
    cache_bulk_ttl: int = Field(default=3600, description="TTL in seconds for bulk reference maps")

    # Alerting Configuration
    alert_error_threshold: int = Field(
        default=10,
        ge=1,
        description="Errors in one cycle that trigger an operator alert",
    )
    alert_thresholds: str | None = Field(
        default=None,
        description="Per-entity overrides, e.g. 'Invoice:5,Company:20'",
    )

    # Logging Configuration
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_file: str | None = Field(
        default=None,
        description="Log file path (logs to console if not set)",
    )
    log_max_bytes: int = Field(
        default=10 * 1024 * 1024,  # 10 MB
        description="Maximum log file size before rotation",
    )
    log_backup_count: int = Field(
        default=5,
        description="Number of backup log files to keep",
    )

    # Email Notification Configuration
    smtp_enabled: bool = Field(default=False, description="Enable email notifications")
    smtp_host: str = Field(default="smtp.gmail.com", description="SMTP server hostname")
    smtp_port: int = Field(default=587, description="SMTP server port (587 for TLS, 465 for SSL)")
    smtp_username: str | None = Field(default=None, description="SMTP authentication username")
    smtp_password: SecretStr | None = Field(default=None, description="SMTP authentication password")
    smtp_use_tls: bool = Field(default=True, description="Use TLS for SMTP connection")
    smtp_from_email: str | None = Field(default=None, description="From email address for notifications")
    smtp_to_emails: str | None = Field(
        default=None,
        description="Comma-separated list of recipient email addresses",
    )
    notify_on_error: bool = Field(default=True, description="Send email notification on sync errors")
    notify_on_success: bool = Field(default=False, description="Send email notification on successful sync")

    def get_to_email_list(self) -> list[str]:
        """Parse smtp_to_emails into a list of email addresses."""
        if not self.smtp_to_emails:
            return []
        return [e.strip() for e in self.smtp_to_emails.split(",") if e.strip()]

    def get_skip_entity_types_list(self) -> list[str]:
        """Parse skip_entity_types, keeping only known entity types.

        Matching is case-insensitive; the canonical spelling is returned.
        """
        if not self.skip_entity_types:
            return []
        known = {t.lower(): t for t in ENTITY_TYPES}
        requested = [t.strip().lower() for t in self.skip_entity_types.split(",") if t.strip()]
        return [known[t] for t in requested if t in known]

    def get_alert_thresholds(self) -> dict[str, int]:
        """Parse alert_thresholds ('Entity:N,...') into a dict.

        Malformed pairs are ignored.
        """
        if not self.alert_thresholds:
            return {}
        thresholds: dict[str, int] = {}
        for pair in self.alert_thresholds.split(","):
            name, sep, value = pair.partition(":")
            if not sep:
                continue
            try:
                thresholds[name.strip()] = int(value.strip())
            except ValueError:
                continue
        return thresholds

    def alert_threshold_for(self, entity_type: str) -> int:
        """Error count at which a cycle for ``entity_type`` raises an alert."""
        return self.get_alert_thresholds().get(entity_type, self.alert_error_threshold)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
