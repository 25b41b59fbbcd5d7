"""Base repository class."""

from typing import Any, Generic, TypeVar

from sqlalchemy import Executable, select
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from exbridge.db.base import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Common access to one table of the local store.

    Repositories never commit; the caller's session scope decides when a
    chunk, a record savepoint or a ledger update becomes durable.
    """

    model: type[ModelT]

    def __init__(self, session: Session) -> None:
        self.session = session

    @property
    def dialect(self) -> str:
        """Name of the bound database dialect (postgresql, mysql, sqlite...)."""
        bind = self.session.get_bind()
        return bind.dialect.name if bind is not None else "sqlite"

    def get_by_id(self, id: int) -> ModelT | None:
        return self.session.get(self.model, id)

    def get_all(self) -> list[ModelT]:
        return list(self.session.scalars(select(self.model)).all())

    def add(self, instance: ModelT) -> ModelT:
        """Add a row and flush so its primary key is assigned."""
        self.session.add(instance)
        self.session.flush()
        return instance

    def insert_if_absent(self, values: dict[str, Any], key: str) -> Executable:
        """Build an INSERT that does nothing when ``key`` already exists.

        Args:
            values: Column values of the new row.
            key: Unique column the conflict is detected on.

        Returns:
            Dialect-specific insert statement, ready to execute.
        """
        if self.dialect == "postgresql":
            return pg_insert(self.model).values(**values).on_conflict_do_nothing(index_elements=[key])
        if self.dialect in ("mysql", "mariadb"):
            stmt = mysql_insert(self.model).values(**values)
            return stmt.on_duplicate_key_update({key: stmt.inserted[key]})
        return sqlite_insert(self.model).values(**values).on_conflict_do_nothing(index_elements=[key])
