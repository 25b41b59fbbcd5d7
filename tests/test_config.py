"""Tests for configuration settings."""

import logging
import logging.handlers
from datetime import date

import pytest
import structlog
from pydantic import ValidationError

from conftest import WEBHOOK_URL
from exbridge.config.logging import configure_logging, get_logger
from exbridge.config.settings import ENTITY_TYPES, Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep EXB_ variables of the developer's shell out of these tests."""
    for name in (
        "EXB_B24_WEBHOOK_URL",
        "EXB_DATABASE_URL",
        "EXB_LOG_LEVEL",
        "EXB_CHUNK_SIZE",
        "EXB_SKIP_ENTITY_TYPES",
        "EXB_ALERT_THRESHOLDS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    """Test Settings class."""

    def test_settings_with_required_fields(self):
        """Test that settings work with required fields."""
        settings = Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL, database_url="sqlite:///:memory:")
        assert settings.b24_webhook_url.get_secret_value() == WEBHOOK_URL
        assert settings.database_url == "sqlite:///:memory:"

    def test_webhook_url_is_required(self):
        """Test settings fail without a webhook URL."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    def test_settings_default_values(self):
        """Test default values are set correctly."""
        settings = Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL)

        assert settings.database_url == "sqlite:///./exbridge.db"
        assert settings.b24_timeout == 30
        assert settings.chunk_size == 500
        assert settings.requests_per_second == 1.0
        assert settings.max_concurrent == 2
        assert settings.min_invoice_date == date(2025, 11, 1)
        assert settings.max_retries == 3
        assert settings.retry_base_minutes == 5.0
        assert settings.retry_max_minutes == 60.0
        assert settings.stale_timeout_minutes == 10
        assert settings.alert_error_threshold == 10
        assert settings.log_level == "INFO"
        assert settings.smtp_enabled is False

    def test_settings_custom_values(self):
        """Test custom values override defaults."""
        settings = Settings(
            _env_file=None,
            b24_webhook_url=WEBHOOK_URL,
            chunk_size=50,
            requests_per_second=2.5,
            min_invoice_date=None,
            log_level="DEBUG",
        )

        assert settings.chunk_size == 50
        assert settings.requests_per_second == 2.5
        assert settings.min_invoice_date is None
        assert settings.log_level == "DEBUG"

    def test_invalid_values_rejected(self):
        """Test bounds on numeric settings."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL, chunk_size=0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL, requests_per_second=0)
        with pytest.raises(ValidationError):
            Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL, log_level="VERBOSE")

    def test_webhook_url_is_secret(self):
        """Test that the webhook token is not exposed."""
        settings = Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL)

        assert "token123" not in str(settings)
        assert "token123" not in repr(settings)
        assert settings.b24_webhook_url.get_secret_value() == WEBHOOK_URL


class TestParsedSettings:
    """Test settings parsed from comma-separated values."""

    def test_skip_entity_types(self):
        """Test unknown names are dropped and case is normalized."""
        settings = Settings(
            _env_file=None, b24_webhook_url=WEBHOOK_URL, skip_entity_types=" invoice, Deal ,PRODUCT,"
        )
        assert settings.get_skip_entity_types_list() == ["Invoice", "Product"]

    def test_skip_entity_types_unset(self):
        """Test nothing is skipped by default."""
        settings = Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL)
        assert settings.get_skip_entity_types_list() == []

    def test_alert_thresholds(self):
        """Test per-entity thresholds with malformed pairs ignored."""
        settings = Settings(
            _env_file=None,
            b24_webhook_url=WEBHOOK_URL,
            alert_error_threshold=7,
            alert_thresholds="Invoice:5, Company : 20,broken,Contact:x",
        )

        assert settings.get_alert_thresholds() == {"Invoice": 5, "Company": 20}
        assert settings.alert_threshold_for("Invoice") == 5
        assert settings.alert_threshold_for("Product") == 7

    def test_email_list(self):
        """Test recipient parsing."""
        settings = Settings(
            _env_file=None, b24_webhook_url=WEBHOOK_URL, smtp_to_emails="ops@example.com, ,it@example.com"
        )
        assert settings.get_to_email_list() == ["ops@example.com", "it@example.com"]

    def test_entity_type_order(self):
        """Test referenced types come before the types referencing them."""
        assert ENTITY_TYPES.index("Company") < ENTITY_TYPES.index("Contact")
        assert ENTITY_TYPES.index("Contract") < ENTITY_TYPES.index("Invoice")


class TestSettingsFromEnv:
    """Test Settings loading from environment variables."""

    def test_settings_from_env_with_prefix(self, monkeypatch):
        """Test settings load from EXB_ prefixed env vars."""
        monkeypatch.setenv("EXB_B24_WEBHOOK_URL", "https://env.example.com/rest/1/abc/")
        monkeypatch.setenv("EXB_DATABASE_URL", "sqlite:///env.db")
        monkeypatch.setenv("EXB_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("EXB_SKIP_ENTITY_TYPES", "Invoice")

        from exbridge.config.settings import get_settings

        get_settings.cache_clear()

        settings = Settings(_env_file=None)
        assert settings.b24_webhook_url.get_secret_value() == "https://env.example.com/rest/1/abc/"
        assert settings.database_url == "sqlite:///env.db"
        assert settings.log_level == "DEBUG"
        assert settings.get_skip_entity_types_list() == ["Invoice"]

    def test_settings_ignores_extra_env_vars(self, monkeypatch):
        """Test that extra env vars don't cause errors."""
        monkeypatch.setenv("EXB_B24_WEBHOOK_URL", WEBHOOK_URL)
        monkeypatch.setenv("EXB_UNKNOWN_OPTION", "value")
        monkeypatch.setenv("DB_HOST", "localhost")

        settings = Settings(_env_file=None)
        assert settings.b24_webhook_url.get_secret_value() == WEBHOOK_URL


class TestLoggingSetup:
    """Test structlog and standard logging configuration."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        yield
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        structlog.reset_defaults()

    def test_configure_logging_with_file(self, tmp_path):
        """Test the rotating file handler is created under a new directory."""
        log_file = tmp_path / "logs" / "exbridge.log"
        settings = Settings(
            _env_file=None,
            b24_webhook_url=WEBHOOK_URL,
            log_level="DEBUG",
            log_file=str(log_file),
            log_max_bytes=1024,
            log_backup_count=2,
        )

        configure_logging(settings)
        logging.getLogger("exbridge.test").warning("Сообщение в файл")

        handlers = logging.getLogger().handlers
        file_handlers = [h for h in handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 1024
        assert file_handlers[0].backupCount == 2
        file_handlers[0].flush()
        assert "Сообщение в файл" in log_file.read_text(encoding="utf-8")

    def test_httpx_requests_are_not_logged_at_info(self):
        """Test webhook URLs logged by httpx stay out of INFO output."""
        configure_logging(Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL, log_level="INFO"))

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger().level == logging.INFO

    def test_get_logger(self):
        """Test structured loggers can be bound with context."""
        configure_logging(Settings(_env_file=None, b24_webhook_url=WEBHOOK_URL))

        logger = get_logger("exbridge.sync").bind(entity_type="Company")

        assert callable(logger.info)
        assert callable(logger.warning)
