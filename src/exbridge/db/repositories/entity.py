"""Generic repository for entities keyed by their 1C GUID."""

from typing import Literal

from sqlalchemy import inspect, select

from exbridge.db.repositories.base import BaseRepository, ModelT

UpsertAction = Literal["created", "updated"]

# Columns owned by the local store, never copied from an incoming instance
_PRESERVED_COLUMNS = frozenset({"id", "created_at", "updated_at"})


class EntityRepository(BaseRepository[ModelT]):
    """Upsert-by-business-key repository for any synced entity model."""

    def __init__(self, session, model: type[ModelT]) -> None:
        """Initialize repository with a session and the model it manages.

        Args:
            session: SQLAlchemy session.
            model: Model class carrying a ``guid_1c`` column.
        """
        super().__init__(session)
        self.model = model

    def get_by_guid(self, guid_1c: str) -> ModelT | None:
        stmt = select(self.model).where(self.model.guid_1c == guid_1c)
        return self.session.scalar(stmt)

    def get_by_b24_id(self, b24_id: int) -> ModelT | None:
        stmt = select(self.model).where(self.model.b24_id == b24_id).limit(1)
        return self.session.scalar(stmt)

    def b24_index(self) -> dict[int, str]:
        """Map Bitrix24 ids to GUIDs for every row that has both."""
        stmt = select(self.model.b24_id, self.model.guid_1c).where(self.model.b24_id.is_not(None))
        return {b24_id: guid for b24_id, guid in self.session.execute(stmt).all()}

    def upsert(self, instance: ModelT) -> tuple[UpsertAction, ModelT]:
        """Insert an unsaved instance or copy its columns onto the stored row.

        Re-applying the same instance is idempotent: the row keyed by
        ``guid_1c`` is updated in place and never duplicated.

        Args:
            instance: Transient model instance produced by a mapping.

        Returns:
            Tuple of the action taken and the persistent instance.
        """
        existing = self.get_by_guid(instance.guid_1c)
        if existing is None:
            self.session.add(instance)
            self.session.flush()
            return "created", instance

        for attr in inspect(self.model).column_attrs:
            if attr.key in _PRESERVED_COLUMNS:
                continue
            value = getattr(instance, attr.key)
            # Unset values never clear the Bitrix24 link or a required column
            if value is None and (attr.key == "b24_id" or not attr.columns[0].nullable):
                continue
            setattr(existing, attr.key, value)

        self.session.flush()
        return "updated", existing
