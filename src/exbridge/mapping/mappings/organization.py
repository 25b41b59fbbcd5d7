"""Справочник.Организации mapping."""

from typing import Any

from exbridge.config.logging import get_logger
from exbridge.db.models import Organization
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult

logger = get_logger(__name__)


class OrganizationMapping(ObjectMapping):
    object_type = "Справочник.Организации"
    model_path = "exbridge.db.models.Organization"

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> Organization:
        properties = self.properties(wire)
        keys = self.key_properties(wire)

        organization = Organization(
            guid_1c=self.guid_of(wire),
            b24_id=wire.get("b24_id"),
            name=self.str_field(keys, "Наименование", 255) or "",
            full_name=self.str_field(keys, "НаименованиеПолное", 500)
            or self.str_field(keys, "НаименованиеСокращенное", 500),
            inn=self.str_field(keys, "ИНН", 12),
            kpp=self.str_field(keys, "КПП", 9),
            ogrn=self.str_field(properties, "ОГРН", 15),
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )
        logger.debug("Mapped organization", guid_1c=organization.guid_1c, inn=organization.inn)
        return organization

    def map_to_1c(self, entity: Organization) -> dict[str, Any]:
        return {
            "type": self.object_type,
            "ref": entity.guid_1c,
            "properties": {
                "КлючевыеСвойства": {
                    "Ссылка": entity.guid_1c,
                    "Наименование": entity.name,
                    "НаименованиеСокращенное": entity.name,
                    "НаименованиеПолное": entity.full_name or entity.name,
                    "ИНН": entity.inn,
                    "КПП": entity.kpp,
                },
                "ОГРН": entity.ogrn,
            },
            "tabular_sections": {},
        }

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        name = self.str_field(keys, "Наименование")
        result = ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Organization reference (Ссылка) is missing"),
                (bool(name), "Organization name is required in КлючевыеСвойства.Наименование"),
                (not name or len(name) <= 255, "Organization name is too long (max 255 characters)"),
            ]
        )

        inn = self.str_field(keys, "ИНН")
        if inn and not self.is_valid_inn(inn):
            result = result.add_warning(f"Invalid INN format: {inn}")
        return result
