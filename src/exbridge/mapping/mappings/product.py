"""Справочник.Номенклатура mapping."""

from typing import Any

from exbridge.db.models import Product
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult

GOODS = "Товар"
SERVICE = "Услуга"


class ProductMapping(ObjectMapping):
    object_type = "Справочник.Номенклатура"
    model_path = "exbridge.db.models.Product"

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> Product:
        properties = self.properties(wire)
        keys = self.key_properties(wire)
        unit = properties.get("ЕдиницаИзмерения") or {}

        return Product(
            guid_1c=self.guid_of(wire),
            b24_id=wire.get("b24_id"),
            name=self.str_field(keys, "Наименование", 255),
            code=self.str_field(keys, "КодВПрограмме", 50),
            article=self.str_field(properties, "Артикул", 100),
            description=self.str_field(properties, "Описание"),
            vat_rate=self.str_field(properties, "СтавкаНДС", 20),
            unit_code=(str(unit["Код"]) if unit.get("Код") else None),
            is_service=self.field(properties, "ТипНоменклатуры") == SERVICE,
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )

    def map_to_1c(self, entity: Product) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "КлючевыеСвойства": {
                "Ссылка": entity.guid_1c,
                "Наименование": entity.name,
                "КодВПрограмме": entity.code,
            },
            "ТипНоменклатуры": SERVICE if entity.is_service else GOODS,
            "СтавкаНДС": entity.vat_rate,
            "Артикул": entity.article,
            "Описание": entity.description,
        }
        if entity.unit_code:
            properties["ЕдиницаИзмерения"] = {"Код": entity.unit_code}
        return {"type": self.object_type, "ref": entity.guid_1c, "properties": properties, "tabular_sections": {}}

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        return ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Product reference (Ссылка) is missing"),
                (bool(self.str_field(keys, "Наименование")), "Product name is missing"),
            ]
        )
