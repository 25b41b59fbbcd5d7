"""Справочник.Контрагенты mapping."""

from typing import Any

from exbridge.config.logging import get_logger
from exbridge.db.models import Counterparty
from exbridge.db.models.counterparty import ENTITY_TYPE_INDIVIDUAL, ENTITY_TYPE_LEGAL
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult

logger = get_logger(__name__)

INDIVIDUAL = "ФизическоеЛицо"
LEGAL = "ЮридическоеЛицо"


class CounterpartyMapping(ObjectMapping):
    object_type = "Справочник.Контрагенты"
    model_path = "exbridge.db.models.Counterparty"

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> Counterparty:
        keys = self.key_properties(wire)
        contact = self.parse_contact_info(wire.get("tabular_sections"))

        counterparty = Counterparty(
            guid_1c=self.guid_of(wire),
            b24_id=wire.get("b24_id"),
            name=self.str_field(keys, "Наименование", 255),
            full_name=self.str_field(keys, "НаименованиеПолное", 500),
            entity_type=(
                ENTITY_TYPE_INDIVIDUAL
                if self.field(keys, "ЮридическоеФизическоеЛицо") == INDIVIDUAL
                else ENTITY_TYPE_LEGAL
            ),
            inn=self.str_field(keys, "ИНН", 12),
            kpp=self.str_field(keys, "КПП", 9),
            phone=contact["phone"],
            email=contact["email"],
            legal_address=contact["address"],
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )
        logger.debug(
            "Mapped counterparty",
            guid_1c=counterparty.guid_1c,
            entity_type=counterparty.entity_type,
            inn=counterparty.inn,
        )
        return counterparty

    def map_to_1c(self, entity: Counterparty) -> dict[str, Any]:
        return {
            "type": self.object_type,
            "ref": entity.guid_1c,
            "properties": {
                "КлючевыеСвойства": {
                    "Ссылка": entity.guid_1c,
                    "Наименование": entity.name,
                    "НаименованиеПолное": entity.full_name,
                    "ИНН": entity.inn,
                    "КПП": entity.kpp,
                    "ЮридическоеФизическоеЛицо": INDIVIDUAL if entity.is_individual else LEGAL,
                },
            },
            "tabular_sections": {
                "КонтактнаяИнформация": self.contact_info_rows(entity.phone, entity.email, entity.legal_address),
            },
        }

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        result = ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Counterparty reference (Ссылка) is missing"),
                (bool(self.str_field(keys, "Наименование")), "Counterparty name is missing"),
            ]
        )

        inn = self.str_field(keys, "ИНН")
        if inn and not self.is_valid_inn(inn):
            result = result.add_warning(f"Invalid INN format: {inn}")
        return result
