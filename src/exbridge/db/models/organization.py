"""Organization ORM model."""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from exbridge.db.base import Base, SyncedEntityMixin, TimestampMixin


class Organization(Base, SyncedEntityMixin, TimestampMixin):
    """Own legal entity (Справочник.Организации)."""

    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    inn: Mapped[str | None] = mapped_column(String(12), nullable=True)
    kpp: Mapped[str | None] = mapped_column(String(9), nullable=True)
    ogrn: Mapped[str | None] = mapped_column(String(15), nullable=True)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, name='{self.name}')>"
