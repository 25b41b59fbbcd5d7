"""Product strategy: Bitrix24 catalog products to Справочник.Номенклатура."""

from typing import Any

import structlog

from exbridge.api.client import parse_b24_datetime
from exbridge.db.models import Product
from exbridge.mapping.mappings.product import SERVICE
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.sync.strategies.base import BaseEntityStrategy
from exbridge.utils.cache import BULK_MAP_TTL, MemoryCache

logger = structlog.get_logger(__name__)

GUID_PROPERTY_CODE = "GUID_1C"
LAST_UPDATE_PROPERTY_CODE = "LAST_UPDATE_FROM_1C"

VAT_RATES = {
    "1": "БезНДС",
    "2": "НДС0",
    "3": "НДС10",
    "4": "НДС18",
    "5": "НДС20",
}


def property_value(value: Any) -> Any:
    """Value of a product property; Bitrix24 wraps them as {"value": ...} or a list."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("value")
    return value


class ProductStrategy(BaseEntityStrategy):
    """Products keep the GUID in custom properties addressed by numeric id.

    The ids are looked up by property code once per cache period.
    """

    entity_type = "Product"
    object_type = "Справочник.Номенклатура"
    model = Product
    method = "crm.product"
    modified_field = "TIMESTAMP_X"
    select_fields = ("ID", "NAME", "CODE", "DESCRIPTION", "VAT_ID", "MEASURE", "ACTIVE")

    def __init__(self, client, settings, cache: MemoryCache | None = None) -> None:
        super().__init__(client, settings)
        self.cache = cache if cache is not None else MemoryCache()

    async def property_ids(self) -> dict[str, int]:
        """Product property ids keyed by property code."""
        cached = self.cache.get("b24:product_properties")
        if cached is not None:
            return cached

        data = await self.client.call("crm.product.property.list")
        ids = {
            prop["CODE"]: int(prop["ID"])
            for prop in data.get("result") or []
            if prop.get("CODE") and prop.get("ID")
        }
        self.cache.set("b24:product_properties", ids, BULK_MAP_TTL)
        return ids

    async def prepare(self) -> None:
        ids = await self.property_ids()
        guid_id = ids.get(GUID_PROPERTY_CODE)
        last_update_id = ids.get(LAST_UPDATE_PROPERTY_CODE)
        if guid_id is None:
            logger.warning("Product GUID property not found", code=GUID_PROPERTY_CODE)
        self.guid_field = f"PROPERTY_{guid_id}" if guid_id is not None else None
        self.last_update_field = f"PROPERTY_{last_update_id}" if last_update_id is not None else None

    def item_guid(self, item: dict[str, Any]) -> str | None:
        if not self.guid_field:
            return None
        value = property_value(item.get(self.guid_field))
        return (str(value).strip() or None) if value else None

    def last_update_from_1c(self, item: dict[str, Any]):
        if not self.last_update_field:
            return None
        return parse_b24_datetime(property_value(item.get(self.last_update_field)))

    def is_deleted(self, item: dict[str, Any]) -> bool:
        return item.get("ACTIVE", "Y") == "N"

    def to_wire(self, item: dict[str, Any], guid: str, resolver: ReferenceResolver) -> dict[str, Any]:
        keys = {
            "Наименование": item.get("NAME"),
            "КодВПрограмме": item.get("CODE"),
        }
        properties: dict[str, Any] = {
            # Bitrix24 does not tell goods from services; 1C expects a type
            "ТипНоменклатуры": SERVICE,
            "Описание": item.get("DESCRIPTION"),
        }
        vat_rate = VAT_RATES.get(str(item.get("VAT_ID") or ""))
        if vat_rate:
            properties["СтавкаНДС"] = vat_rate
        return self.envelope(item, guid, keys, properties=properties)
