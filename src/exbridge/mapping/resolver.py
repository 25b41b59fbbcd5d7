"""Lookup of already-synced local entities by GUID or Bitrix24 id."""

from sqlalchemy.orm import Session

from exbridge.config.logging import get_logger
from exbridge.db.base import Base
from exbridge.db.repositories.entity import EntityRepository
from exbridge.utils.cache import BULK_MAP_TTL, ENTITY_LOOKUP_TTL, MemoryCache
from exbridge.utils.exceptions import DependencyNotReadyError

logger = get_logger(__name__)


class ReferenceResolver:
    """Resolve references between entities during mapping.

    Lookups go through the cache: single GUID -> primary key lookups use
    ``entity_ttl``, whole Bitrix24 id -> GUID maps use ``bulk_ttl``. A miss
    always falls through to the database, so the cache never hides a
    freshly synced entity for longer than one extra query.
    """

    def __init__(
        self,
        session: Session,
        cache: MemoryCache | None = None,
        entity_ttl: float = ENTITY_LOOKUP_TTL,
        bulk_ttl: float = BULK_MAP_TTL,
    ) -> None:
        self.session = session
        self.cache = cache if cache is not None else MemoryCache()
        self.entity_ttl = entity_ttl
        self.bulk_ttl = bulk_ttl

    def find_id(self, model: type[Base], guid_1c: str | None) -> int | None:
        """Primary key of the entity with ``guid_1c``, or None."""
        if not guid_1c:
            return None

        def lookup() -> int | None:
            entity = EntityRepository(self.session, model).get_by_guid(guid_1c)
            return entity.id if entity is not None else None

        return self.cache.remember(f"{model.__tablename__}:guid:{guid_1c}", self.entity_ttl, lookup)

    def require_id(self, model: type[Base], guid_1c: str, what: str | None = None) -> int:
        """Primary key of a referenced entity that must already exist.

        Raises:
            DependencyNotReadyError: If the entity has not been synced yet.
        """
        entity_id = self.find_id(model, guid_1c)
        if entity_id is None:
            label = what or model.__name__
            raise DependencyNotReadyError(f"{label} {guid_1c} is not synced yet")
        return entity_id

    def b24_index(self, model: type[Base], refresh: bool = False) -> dict[int, str]:
        """Bitrix24 id -> GUID map for every synced entity of ``model``."""
        key = f"{model.__tablename__}:b24_index"
        if refresh:
            self.cache.forget(key)
        return self.cache.remember(key, self.bulk_ttl, lambda: EntityRepository(self.session, model).b24_index())

    def guid_for_b24_id(self, model: type[Base], b24_id: int | str | None, what: str | None = None) -> str:
        """GUID of the entity synced from Bitrix24 record ``b24_id``.

        The bulk map is rebuilt once on a miss before giving up, since the
        referenced entity may have been synced after the map was cached.

        Raises:
            DependencyNotReadyError: If no synced entity carries that id.
        """
        label = what or model.__name__
        try:
            b24_key = int(b24_id)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise DependencyNotReadyError(f"{label} reference is missing") from None

        guid = self.b24_index(model).get(b24_key)
        if guid is None:
            guid = self.b24_index(model, refresh=True).get(b24_key)
        if guid is None:
            logger.debug("Unresolved Bitrix24 reference", model=model.__name__, b24_id=b24_key)
            raise DependencyNotReadyError(f"{label} with Bitrix24 id {b24_key} is not synced yet")
        return guid

    def b24_id_for_guid(self, model: type[Base], guid_1c: str, what: str | None = None) -> int:
        """Bitrix24 id of the synced entity with ``guid_1c``; the inverse of :meth:`guid_for_b24_id`.

        Raises:
            DependencyNotReadyError: If the entity is not linked to a Bitrix24 record.
        """
        for refresh in (False, True):
            for b24_id, guid in self.b24_index(model, refresh=refresh).items():
                if guid == guid_1c:
                    return b24_id
        label = what or model.__name__
        raise DependencyNotReadyError(f"{label} {guid_1c} has no Bitrix24 record yet")

    def invalidate(self, model: type[Base], guid_1c: str | None = None) -> None:
        """Drop cached lookups after ``model`` rows changed."""
        self.cache.forget(f"{model.__tablename__}:b24_index")
        if guid_1c:
            self.cache.forget(f"{model.__tablename__}:guid:{guid_1c}")
