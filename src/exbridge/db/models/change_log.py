"""Change log ORM model: the persisted retry ledger."""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from exbridge.db.base import Base, TimestampMixin, UTCDateTime


class ChangeStatus(str, enum.Enum):
    """Lifecycle of a change log record."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    PROCESSED = "processed"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def can_process(self) -> bool:
        return self in (ChangeStatus.PENDING, ChangeStatus.RETRY)

    @property
    def is_terminal(self) -> bool:
        return self in (ChangeStatus.PROCESSED, ChangeStatus.ERROR, ChangeStatus.SKIPPED)


class ChangeSource(str, enum.Enum):
    """System the change was detected in."""

    B24 = "B24"
    ONE_C = "1C"


class ChangeLogEntry(Base, TimestampMixin):
    """A change to be synced, with retry bookkeeping and an advisory lock."""

    __tablename__ = "exb_change_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    guid_1c: Mapped[str | None] = mapped_column(String(64), nullable=True)
    object_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[ChangeSource] = mapped_column(
        Enum(ChangeSource, values_callable=lambda e: [m.value for m in e], native_enum=False),
        default=ChangeSource.B24,
        nullable=False,
    )
    change_type: Mapped[str] = mapped_column(String(20), default="update", nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[ChangeStatus] = mapped_column(
        Enum(ChangeStatus, values_callable=lambda e: [m.value for m in e], native_enum=False),
        default=ChangeStatus.PENDING,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_change_log_status_retry", "status", "next_retry_at"),
        Index("idx_change_log_locked", "locked_at"),
        Index("idx_change_log_external", "entity_type", "external_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChangeLogEntry(id={self.id}, type={self.entity_type}, "
            f"external_id={self.external_id}, status={self.status.value}, retries={self.retry_count})>"
        )
