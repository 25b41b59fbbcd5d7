"""Logging configuration using structlog with cycle statistics and email alerts."""

import logging
import smtplib
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from exbridge.config.settings import Settings


@dataclass
class SyncStats:
    """Counters for one sync cycle of a single entity type."""

    entity_type: str
    pulled: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    retried: int = 0
    pushed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    watermark: datetime | None = None
    fatal: bool = False
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    duration_seconds: float = 0.0

    def finish(self) -> None:
        """Mark the cycle as complete and calculate duration."""
        self.end_time = datetime.now(timezone.utc)
        self.duration_seconds = (self.end_time - self.start_time).total_seconds()

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def add_warning(self, warning: str) -> None:
        self.warnings.append(warning)

    def count(self, action: str) -> None:
        """Increment the counter for a record outcome (created, updated, skipped...)."""
        setattr(self, action, getattr(self, action) + 1)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        """A cycle succeeds when it was not aborted and no record failed."""
        return not self.fatal and not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "entity_type": self.entity_type,
            "pulled": self.pulled,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "retried": self.retried,
            "pushed": self.pushed,
            "error_count": self.error_count,
            "warning_count": len(self.warnings),
            "watermark": self.watermark.isoformat() if self.watermark else None,
            "fatal": self.fatal,
            "duration_seconds": self.duration_seconds,
            "success": self.success,
        }


@dataclass
class SyncSummary:
    """Summary of a full pass across entity types."""

    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    duration_seconds: float = 0.0
    stats: list[SyncStats] = field(default_factory=list)
    skipped_entity_types: dict[str, str] = field(default_factory=dict)

    def add_stats(self, stats: SyncStats) -> None:
        self.stats.append(stats)

    def skip(self, entity_type: str, reason: str) -> None:
        """Record an entity type whose cycle did not start."""
        self.skipped_entity_types[entity_type] = reason

    def finish(self) -> None:
        """Mark the pass as complete."""
        self.end_time = datetime.now(timezone.utc)
        self.duration_seconds = (self.end_time - self.start_time).total_seconds()

    def get(self, entity_type: str) -> SyncStats | None:
        return next((s for s in self.stats if s.entity_type == entity_type), None)

    @property
    def total_pulled(self) -> int:
        return sum(s.pulled for s in self.stats)

    @property
    def total_errors(self) -> int:
        return sum(s.error_count for s in self.stats)

    @property
    def total_warnings(self) -> int:
        return sum(len(s.warnings) for s in self.stats)

    @property
    def success(self) -> bool:
        return all(s.success for s in self.stats)

    @property
    def all_errors(self) -> list[tuple[str, str]]:
        """Get all errors as (entity_type, error) tuples."""
        return [(s.entity_type, error) for s in self.stats for error in s.errors]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "total_pulled": self.total_pulled,
            "total_errors": self.total_errors,
            "total_warnings": self.total_warnings,
            "duration_seconds": self.duration_seconds,
            "success": self.success,
            "skipped_entity_types": self.skipped_entity_types,
            "cycles": [s.to_dict() for s in self.stats],
        }

    def format_text_summary(self) -> str:
        """Format a human-readable text summary."""
        lines = [
            "=" * 60,
            "SYNC SUMMARY",
            "=" * 60,
            f"Status: {'SUCCESS' if self.success else 'FAILED'}",
            f"Duration: {self.duration_seconds:.1f} seconds",
            f"Records pulled: {self.total_pulled}",
            f"Errors: {self.total_errors}",
            f"Warnings: {self.total_warnings}",
            "",
            "CYCLES:",
            "-" * 40,
        ]

        for s in self.stats:
            status = "FATAL" if s.fatal else ("OK" if s.success else "FAILED")
            lines.append(
                f"  {s.entity_type}: {s.pulled} pulled, {s.created} created, "
                f"{s.updated} updated, {s.skipped} skipped, {s.error_count} errors [{status}]"
            )

        for entity_type, reason in self.skipped_entity_types.items():
            lines.append(f"  {entity_type}: not started ({reason})")

        if self.total_errors > 0:
            lines.extend(["", "ERRORS:", "-" * 40])
            for entity_type, error in self.all_errors:
                lines.append(f"  [{entity_type}] {error}")

        lines.append("=" * 60)
        return "\n".join(lines)


class EmailNotifier:
    """Send email notifications for sync cycles and operator alerts."""

    def __init__(self, settings: Settings) -> None:
        """Initialize email notifier with settings."""
        self.settings = settings
        self._logger = structlog.get_logger("email_notifier")

    def send_notification(
        self,
        subject: str,
        body: str,
        html_body: str | None = None,
    ) -> bool:
        """Send an email notification.

        Args:
            subject: Email subject line.
            body: Plain text body.
            html_body: Optional HTML body.

        Returns:
            True if email was sent successfully.
        """
        if not self.settings.smtp_enabled:
            return False

        if not self.settings.smtp_from_email:
            self._logger.error("SMTP from_email not configured")
            return False

        to_emails = self.settings.get_to_email_list()
        if not to_emails:
            self._logger.error("SMTP to_emails not configured")
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.settings.smtp_from_email
            msg["To"] = ", ".join(to_emails)
            msg.attach(MIMEText(body, "plain"))
            if html_body:
                msg.attach(MIMEText(html_body, "html"))

            if self.settings.smtp_use_tls:
                server = smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port)
                server.starttls()
            else:
                server = smtplib.SMTP_SSL(self.settings.smtp_host, self.settings.smtp_port)

            if self.settings.smtp_username and self.settings.smtp_password:
                server.login(
                    self.settings.smtp_username,
                    self.settings.smtp_password.get_secret_value(),
                )

            server.sendmail(self.settings.smtp_from_email, to_emails, msg.as_string())
            server.quit()

            self._logger.info("Email notification sent", subject=subject, recipients=len(to_emails))
            return True

        except (smtplib.SMTPException, OSError) as e:
            # Notification failure must not fail the sync itself
            self._logger.error("Failed to send email notification", error=str(e))
            return False

    def notify_sync_complete(self, summary: SyncSummary) -> bool:
        """Send notification about a finished full pass.

        Args:
            summary: Sync summary to include in notification.

        Returns:
            True if notification was sent.
        """
        if summary.success and not self.settings.notify_on_success:
            return False
        if not summary.success and not self.settings.notify_on_error:
            return False

        status = "SUCCESS" if summary.success else "FAILED"
        subject = (
            f"[exbridge] Sync {status} - {len(summary.stats)} entity types, "
            f"{summary.total_pulled} records"
        )
        return self.send_notification(subject, summary.format_text_summary())

    def send_alert(self, entity_type: str, message: str, stats: SyncStats | None = None) -> bool:
        """Alert the operator about a condition needing manual intervention.

        Alerts are always logged; email delivery depends on SMTP settings.
        """
        self._logger.error("Operator alert", entity_type=entity_type, alert=message)

        if not self.settings.notify_on_error:
            return False

        lines = [f"Entity type: {entity_type}", "", message]
        if stats is not None:
            lines.extend(["", *(f"{k}: {v}" for k, v in stats.to_dict().items())])
        return self.send_notification(f"[exbridge] ALERT {entity_type}", "\n".join(lines))


def configure_logging(settings: Settings) -> None:
    """Configure structlog and standard logging.

    Console output is colored on a TTY and JSON lines otherwise, so a
    scheduled ``exbridge run`` can be shipped to a log collector as is.

    Args:
        settings: Application settings containing logging configuration.
    """
    log_level = getattr(logging, settings.log_level)

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    handlers.append(console_handler)

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            filename=log_path,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, format="%(message)s", force=True)

    # httpx logs every webhook call at INFO, which would leak the token in the URL
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
    ]

    if sys.stdout.isatty():
        processors: list[structlog.types.Processor] = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger, typically with ``__name__``."""
    return structlog.get_logger(name)
