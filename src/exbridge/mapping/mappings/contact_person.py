"""Справочник.КонтактныеЛица mapping."""

from typing import Any

from exbridge.db.models import ContactPerson, Counterparty
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult


class ContactPersonMapping(ObjectMapping):
    object_type = "Справочник.КонтактныеЛица"
    model_path = "exbridge.db.models.ContactPerson"

    @staticmethod
    def counterparty_ref(keys: dict[str, Any]) -> str | None:
        subject = keys.get("Субъект") or {}
        return ObjectMapping.ref_of(subject, "Контрагент")

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> ContactPerson:
        properties = self.properties(wire)
        keys = self.key_properties(wire)
        contact = self.parse_contact_info(wire.get("tabular_sections"))

        counterparty_guid = self.counterparty_ref(keys)
        counterparty_id = None
        if counterparty_guid and resolver is not None:
            counterparty_id = resolver.require_id(Counterparty, counterparty_guid, "Counterparty")

        # ФИО is stored as a single string: "Фамилия Имя Отчество"
        name = " ".join((self.str_field(keys, "ФИО") or "").split())

        return ContactPerson(
            guid_1c=self.guid_of(wire),
            b24_id=wire.get("b24_id"),
            name=name[:255],
            position=self.str_field(properties, "ОписаниеДолжности", 255),
            phone=contact["phone"],
            email=contact["email"],
            counterparty_guid_1c=counterparty_guid,
            counterparty_id=counterparty_id,
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )

    def map_to_1c(self, entity: ContactPerson) -> dict[str, Any]:
        return {
            "type": self.object_type,
            "ref": entity.guid_1c,
            "properties": {
                "КлючевыеСвойства": {
                    "Ссылка": entity.guid_1c,
                    "ФИО": entity.name,
                    "Субъект": {"Контрагент": {"Ссылка": entity.counterparty_guid_1c}},
                    "ПометкаУдаления": "true" if entity.deletion_mark else "false",
                },
                "ОписаниеДолжности": entity.position,
            },
            "tabular_sections": {
                "КонтактнаяИнформация": self.contact_info_rows(entity.phone, entity.email),
            },
        }

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        result = ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Contact person reference (Ссылка) is missing"),
                (bool(self.str_field(keys, "ФИО")), "Contact person FIO (ФИО) is missing"),
            ]
        )
        if not self.counterparty_ref(keys):
            result = result.add_warning("Counterparty reference (Субъект/Контрагент/Ссылка) is missing")
        if not self.str_field(self.properties(wire), "ОписаниеДолжности"):
            result = result.add_warning("Position (ОписаниеДолжности) is missing")
        return result
