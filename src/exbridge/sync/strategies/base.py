"""Base entity strategy: how one Bitrix24 entity type is pulled and converted."""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.orm import Session

from exbridge.api.client import Bitrix24Client, format_b24_datetime, parse_b24_datetime
from exbridge.config.settings import Settings
from exbridge.db.base import Base, utcnow
from exbridge.db.repositories.entity import EntityRepository
from exbridge.mapping.base import KEY_PROPERTIES
from exbridge.mapping.resolver import ReferenceResolver

logger = structlog.get_logger(__name__)


_NUMBER_RE = re.compile(r"№\s*(\S+)")

# A pushed record is stamped this far ahead of the write, so the modification
# time the portal gives the write is never newer than the stamp
PUSH_STAMP_LEAD = timedelta(seconds=2)


@dataclass
class Chunk:
    """Records returned by one fetch, in ascending modification order."""

    items: list[dict[str, Any]] = field(default_factory=list)
    has_more: bool = False

    def __len__(self) -> int:
        return len(self.items)


def b24_flag(value: Any) -> bool:
    """Interpret a Bitrix24 boolean ("Y"/"N", true/false, 1/0)."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().upper() in ("Y", "TRUE", "1")
    return bool(value)


def first_multifield(value: Any) -> str | None:
    """First value of a multi-field such as PHONE or EMAIL."""
    if isinstance(value, list):
        for entry in value:
            if isinstance(entry, dict) and entry.get("VALUE"):
                return str(entry["VALUE"]).strip() or None
        return None
    if value:
        return str(value).strip() or None
    return None


def number_from_title(title: str | None) -> str | None:
    """Document number from a title like "Счет № 123 от 01.11.2025"."""
    if not title:
        return None
    match = _NUMBER_RE.search(title)
    return match.group(1) if match else title.strip() or None


class BaseEntityStrategy(ABC):
    """Pull and conversion rules for one Bitrix24 entity type.

    Subclasses declare the list method, field names and target object type,
    and implement :meth:`to_wire`. Strategies with ``pushable`` set also
    implement :meth:`push_fields` to write local changes back. The
    orchestrator drives the cycle; a strategy never touches the watermark
    or the change log.
    """

    entity_type: str
    object_type: str
    model: type[Base]
    method: str
    modified_field: str
    guid_field: str | None = None
    last_update_field: str | None = None
    id_field: str = "ID"
    select_fields: tuple[str, ...] = ()
    base_filter: dict[str, Any] = {}
    extra_params: dict[str, Any] = {}
    items_key: str | None = None
    pushable: bool = False
    links_record_id: bool = True

    def __init__(self, client: Bitrix24Client, settings: Settings) -> None:
        """Initialize the strategy.

        Args:
            client: Bitrix24 API client.
            settings: Application settings.
        """
        self.client = client
        self.settings = settings

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}({self.entity_type})>"

    async def prepare(self) -> None:
        """Hook run once at the start of every cycle."""
        return None

    # Fetching

    def lower_bound(self, since: datetime | None) -> datetime | None:
        """Modification time the pull starts from."""
        return since

    def select(self) -> list[str]:
        fields = list(self.select_fields)
        for name in (self.id_field, self.modified_field, self.guid_field, self.last_update_field):
            if name and name not in fields:
                fields.append(name)
        return fields

    def build_params(self, since: datetime | None, start: int = 0) -> dict[str, Any]:
        """Parameters of a ``<method>.list`` call.

        Records are filtered inclusively on the modification time and
        ordered ascending by it, then by id, so a page boundary never
        reorders records that share a timestamp.
        """
        filter_ = dict(self.base_filter)
        lower = self.lower_bound(since)
        if lower is not None:
            filter_[f">={self.modified_field}"] = format_b24_datetime(lower)

        return {
            **self.extra_params,
            "filter": filter_,
            "select": self.select(),
            "order": {self.modified_field: "ASC", self.id_field: "ASC"},
            "start": start,
        }

    def extract_items(self, data: dict[str, Any]) -> list[dict[str, Any]]:
        result = data.get("result") or []
        if self.items_key:
            result = (result.get(self.items_key) or []) if isinstance(result, dict) else []
        return list(result)

    async def fetch_chunk(self, since: datetime | None, start: int = 0) -> Chunk:
        """Fetch up to ``chunk_size`` records modified at or after ``since``.

        Pages are requested one after another; each request passes through
        the client's rate limiter.

        Args:
            since: Lower bound on the modification time, or None for all.
            start: Offset of the first record.

        Returns:
            The records and whether more remain after them.
        """
        limit = self.settings.chunk_size
        items: list[dict[str, Any]] = []
        has_more = False

        while len(items) < limit:
            data = await self.client.call(f"{self.method}.list", self.build_params(since, start))
            page = self.extract_items(data)
            items.extend(page)
            next_start = data.get("next")
            if next_start is None or not page:
                has_more = False
                break
            start = int(next_start)
            has_more = True

        if len(items) > limit:
            items = items[:limit]
            has_more = True

        logger.debug(
            "Fetched chunk",
            entity_type=self.entity_type,
            since=since.isoformat() if since else None,
            count=len(items),
            has_more=has_more,
        )
        return Chunk(items=items, has_more=has_more)

    # Record accessors

    def external_id(self, item: dict[str, Any]) -> str:
        """Id of the Bitrix24 record, used as the change log key."""
        return str(item.get(self.id_field))

    def b24_id(self, item: dict[str, Any]) -> int | None:
        """Id stored on the local entity and used to resolve references to it."""
        try:
            return int(item.get(self.id_field))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None

    def modified_at(self, item: dict[str, Any]) -> datetime | None:
        return parse_b24_datetime(item.get(self.modified_field))

    def item_guid(self, item: dict[str, Any]) -> str | None:
        if not self.guid_field:
            return None
        value = item.get(self.guid_field)
        return (str(value).strip() or None) if value else None

    def last_update_from_1c(self, item: dict[str, Any]) -> datetime | None:
        if not self.last_update_field:
            return None
        return parse_b24_datetime(item.get(self.last_update_field))

    def is_deleted(self, item: dict[str, Any]) -> bool:
        return False

    def should_import(self, item: dict[str, Any]) -> bool:
        """Whether a record was changed in Bitrix24 after 1C last wrote it.

        A record 1C wrote last carries a "last update from 1C" stamp no
        older than its modification time; importing it would echo 1C's own
        change back.
        """
        modified = self.modified_at(item)
        if modified is None:
            logger.warning(
                "Record has no modification time",
                entity_type=self.entity_type,
                external_id=self.external_id(item),
            )
            return False
        last_update = self.last_update_from_1c(item)
        return last_update is None or last_update < modified

    # GUIDs

    def resolve_guid(self, item: dict[str, Any], session: Session) -> tuple[str, bool]:
        """GUID of the record and whether it must be written back to Bitrix24.

        The GUID stored in Bitrix24 wins; otherwise the GUID of the local
        entity already linked to the record; otherwise a new one.
        """
        guid = self.item_guid(item)
        if guid:
            return guid, False

        b24_id = self.b24_id(item)
        if b24_id is not None:
            existing = EntityRepository(session, self.model).get_by_b24_id(b24_id)
            if existing is not None:
                return existing.guid_1c, self.guid_field is not None

        guid = str(uuid.uuid4())
        logger.debug(
            "Generated GUID",
            entity_type=self.entity_type,
            external_id=self.external_id(item),
            guid=guid,
        )
        return guid, self.guid_field is not None

    def guid_update_fields(self, guid: str) -> dict[str, Any]:
        return {self.guid_field: guid} if self.guid_field else {}

    async def write_back_guid(self, item: dict[str, Any], guid: str) -> bool:
        """Store a GUID on the Bitrix24 record so later pulls keep it."""
        fields = self.guid_update_fields(guid)
        if not fields:
            return False
        return await self.client.update_item(
            self.method, int(self.external_id(item)), fields, **self.extra_params
        )

    # Pushing local changes

    async def find_by_guid(self, guid: str) -> dict[str, Any] | None:
        """The Bitrix24 record carrying ``guid``, or None."""
        if not self.guid_field:
            return None
        params = {
            **self.extra_params,
            "filter": {**self.base_filter, self.guid_field: guid},
            "select": [self.id_field],
        }
        items = self.extract_items(await self.client.call(f"{self.method}.list", params))
        return items[0] if items else None

    def push_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        """Bitrix24 fields of a wire object built from a local entity.

        Raises:
            DependencyNotReadyError: If a referenced entity has no Bitrix24 record yet.
        """
        raise NotImplementedError(f"{self.entity_type} records are not pushed to Bitrix24")

    def creation_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        """Fields set only when the Bitrix24 record is created."""
        return {}

    async def push(self, wire: dict[str, Any], resolver: ReferenceResolver) -> tuple[str, int]:
        """Write a local entity to Bitrix24, updating the record with its GUID or adding one.

        The record is stamped as last updated by 1C, so the next pull
        recognizes the write as an echo and skips it.

        Returns:
            ``created`` or ``updated`` and the id of the Bitrix24 record.
        """
        guid = wire["ref"]
        fields = self.push_fields(wire, resolver)
        fields.update(self.guid_update_fields(guid))
        if self.last_update_field:
            fields[self.last_update_field] = format_b24_datetime(utcnow() + PUSH_STAMP_LEAD)

        existing = await self.find_by_guid(guid)
        if existing is not None:
            record_id = int(existing[self.id_field])
            await self.client.update_item(self.method, record_id, fields, **self.extra_params)
            return "updated", record_id

        fields.update(self.creation_fields(wire, resolver))
        record_id = await self.client.add_item(self.method, fields, **self.extra_params)
        return "created", record_id

    # Conversion

    def envelope(
        self,
        item: dict[str, Any],
        guid: str,
        keys: dict[str, Any],
        properties: dict[str, Any] | None = None,
        tabular_sections: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Assemble a wire object around its key properties."""
        keys = {"Ссылка": guid, **keys, "ПометкаУдаления": self.is_deleted(item)}
        return {
            "type": self.object_type,
            "ref": guid,
            "b24_id": self.b24_id(item),
            "properties": {KEY_PROPERTIES: keys, **(properties or {})},
            "tabular_sections": tabular_sections or {},
        }

    @abstractmethod
    def to_wire(
        self, item: dict[str, Any], guid: str, resolver: ReferenceResolver
    ) -> dict[str, Any]:
        """Convert a Bitrix24 record into an EnterpriseData wire object.

        Args:
            item: Record as returned by the list method.
            guid: GUID resolved for the record.
            resolver: Lookup for the GUIDs of referenced records.

        Raises:
            DependencyNotReadyError: If a referenced record is not synced yet.
        """
