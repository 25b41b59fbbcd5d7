"""Справочник.Валюты mapping."""

from typing import Any

from exbridge.db.models import Currency
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult

# ОКВ code of the ruble
MAIN_CURRENCY_CODE = "643"


class CurrencyMapping(ObjectMapping):
    object_type = "Справочник.Валюты"
    model_path = "exbridge.db.models.Currency"

    @staticmethod
    def classifier(keys: dict[str, Any]) -> dict[str, Any]:
        return keys.get("ДанныеКлассификатора") or {}

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> Currency:
        keys = self.key_properties(wire)
        classifier = self.classifier(keys)
        code = str(classifier.get("Код") or "").strip()

        return Currency(
            guid_1c=self.guid_of(wire),
            code=code,
            name=str(classifier.get("Наименование") or code).strip(),
            full_name=self.str_field(self.properties(wire), "НаименованиеПолное", 255),
            is_main_currency=code == MAIN_CURRENCY_CODE,
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )

    def map_to_1c(self, entity: Currency) -> dict[str, Any]:
        return {
            "type": self.object_type,
            "ref": entity.guid_1c,
            "properties": {
                "КлючевыеСвойства": {
                    "Ссылка": entity.guid_1c,
                    "ДанныеКлассификатора": {"Код": entity.code, "Наименование": entity.name},
                },
                "НаименованиеПолное": entity.full_name,
            },
            "tabular_sections": {},
        }

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        classifier = self.classifier(keys)
        result = ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Currency reference (Ссылка) is missing"),
                (bool(classifier.get("Код")), "Currency code is missing"),
            ]
        )
        if not classifier:
            result = result.add_warning("Currency classifier data is missing")
        elif not classifier.get("Наименование"):
            result = result.add_warning("Currency name is missing")
        return result
