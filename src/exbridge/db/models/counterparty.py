"""Counterparty and contact person ORM models."""

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from exbridge.db.base import Base, SyncedEntityMixin, TimestampMixin

ENTITY_TYPE_LEGAL = "legal"
ENTITY_TYPE_INDIVIDUAL = "individual"


class Counterparty(Base, SyncedEntityMixin, TimestampMixin):
    """Customer or supplier (Справочник.Контрагенты, Bitrix24 company requisite)."""

    __tablename__ = "counterparties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(20), default=ENTITY_TYPE_LEGAL, nullable=False)
    inn: Mapped[str | None] = mapped_column(String(12), nullable=True, index=True)
    kpp: Mapped[str | None] = mapped_column(String(9), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    legal_address: Mapped[str | None] = mapped_column(String(500), nullable=True)

    contacts: Mapped[list["ContactPerson"]] = relationship(back_populates="counterparty")

    @property
    def is_individual(self) -> bool:
        return self.entity_type == ENTITY_TYPE_INDIVIDUAL

    def __repr__(self) -> str:
        return f"<Counterparty(id={self.id}, name='{self.name}', inn={self.inn})>"


class ContactPerson(Base, SyncedEntityMixin, TimestampMixin):
    """Contact person of a counterparty (Справочник.КонтактныеЛица)."""

    __tablename__ = "contact_persons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    counterparty_guid_1c: Mapped[str | None] = mapped_column(String(64), nullable=True)
    counterparty_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("counterparties.id", ondelete="SET NULL"), nullable=True
    )

    counterparty: Mapped[Counterparty | None] = relationship(back_populates="contacts")

    def __repr__(self) -> str:
        return f"<ContactPerson(id={self.id}, name='{self.name}')>"
