"""Sale document ORM model."""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from exbridge.db.base import Base, SyncedEntityMixin, TimestampMixin, UTCDateTime


class Sale(Base, SyncedEntityMixin, TimestampMixin):
    """Sale of goods and services (Документ.РеализацияТоваровУслуг, Bitrix24 invoice)."""

    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sale_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), default=Decimal("0"), nullable=False)
    currency_code: Mapped[str | None] = mapped_column(String(3), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    counterparty_guid_1c: Mapped[str] = mapped_column(String(64), nullable=False)
    counterparty_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("counterparties.id", ondelete="SET NULL"), nullable=True
    )
    contract_guid_1c: Mapped[str | None] = mapped_column(String(64), nullable=True)
    contract_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("contracts.id", ondelete="SET NULL"), nullable=True
    )

    def __repr__(self) -> str:
        return f"<Sale(id={self.id}, number='{self.number}', amount={self.amount})>"
