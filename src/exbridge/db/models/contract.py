"""Contract ORM model."""

from datetime import date

from sqlalchemy import Boolean, Date, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from exbridge.db.base import Base, SyncedEntityMixin, TimestampMixin


class Contract(Base, SyncedEntityMixin, TimestampMixin):
    """Contract with a counterparty (Справочник.Договоры, Bitrix24 smart process 1064)."""

    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contract_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    counterparty_guid_1c: Mapped[str] = mapped_column(String(64), nullable=False)
    counterparty_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("counterparties.id", ondelete="SET NULL"), nullable=True
    )
    organization_guid_1c: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    is_annulled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<Contract(id={self.id}, number='{self.number}')>"
