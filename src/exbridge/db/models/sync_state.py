"""Sync state ORM model for tracking incremental pull watermarks."""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from exbridge.db.base import Base, TimestampMixin, UTCDateTime


class SyncState(Base, TimestampMixin):
    """One row per entity type (Company, Contact, Contract, Product, Invoice).

    ``last_external_updated_at`` is the watermark: the newest Bitrix24
    modification time among records processed by the last completed chunk.
    It bounds the next pull and only ever moves forward.
    """

    __tablename__ = "exb_sync_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_external_updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_pulled: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str | None] = mapped_column(String(20), nullable=True)  # success, error, fatal
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # Lease preventing overlapping cycles for the same entity type across processes
    cycle_locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<SyncState(type={self.entity_type}, "
            f"watermark={self.last_external_updated_at}, last_sync={self.last_sync_at})>"
        )
