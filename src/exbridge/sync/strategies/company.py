"""Company strategy: Bitrix24 company requisites to Справочник.Контрагенты."""

from typing import Any

from exbridge.db.models import Counterparty
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.mappings.counterparty import INDIVIDUAL, LEGAL
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.sync.strategies.base import BaseEntityStrategy
from exbridge.utils.exceptions import ValidationError

# crm.requisite ENTITY_TYPE_ID of a company
COMPANY_OWNER_TYPE = 4
# Requisite presets of a legal entity and a sole proprietor (ИП)
PRESET_LEGAL = 1
PRESET_INDIVIDUAL = 3
INDIVIDUAL_PREFIX = "ИП "


class CompanyStrategy(BaseEntityStrategy):
    """Pulls requisites rather than companies: INN, KPP and legal names live there.

    The local counterparty keeps the company id (``ENTITY_ID``) as its
    Bitrix24 id, since contacts, contracts and invoices reference the
    company, not the requisite.
    """

    entity_type = "Company"
    object_type = "Справочник.Контрагенты"
    model = Counterparty
    method = "crm.requisite"
    modified_field = "DATE_MODIFY"
    guid_field = "UF_CRM_GUID_1C"
    last_update_field = "UF_CRM_LAST_UPDATE_1C"
    select_fields = (
        "ID",
        "NAME",
        "ENTITY_ID",
        "ENTITY_TYPE_ID",
        "PRESET_ID",
        "RQ_INN",
        "RQ_KPP",
        "RQ_COMPANY_NAME",
        "RQ_COMPANY_FULL_NAME",
        "RQ_LAST_NAME",
        "RQ_FIRST_NAME",
        "RQ_SECOND_NAME",
    )
    base_filter = {"ENTITY_TYPE_ID": COMPANY_OWNER_TYPE}
    pushable = True
    # The counterparty stays linked to the company, not to its requisite
    links_record_id = False

    def b24_id(self, item: dict[str, Any]) -> int | None:
        try:
            return int(item.get("ENTITY_ID"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None

    @staticmethod
    def is_individual(item: dict[str, Any]) -> bool:
        try:
            return int(item.get("PRESET_ID") or PRESET_LEGAL) == PRESET_INDIVIDUAL
        except ValueError:
            return False

    @classmethod
    def display_name(cls, item: dict[str, Any]) -> str | None:
        if cls.is_individual(item):
            parts = [
                (item.get(key) or "").strip()
                for key in ("RQ_LAST_NAME", "RQ_FIRST_NAME", "RQ_SECOND_NAME")
            ]
            full_name = " ".join(p for p in parts if p)
            if full_name:
                return f"{INDIVIDUAL_PREFIX}{full_name}"
        for key in ("RQ_COMPANY_NAME", "NAME"):
            value = (item.get(key) or "").strip()
            if value:
                return value
        return None

    def to_wire(self, item: dict[str, Any], guid: str, resolver: ReferenceResolver) -> dict[str, Any]:
        name = self.display_name(item)
        keys = {
            "Наименование": name,
            "НаименованиеПолное": item.get("RQ_COMPANY_FULL_NAME") or item.get("RQ_COMPANY_NAME") or name,
            "ИНН": item.get("RQ_INN"),
            "КПП": item.get("RQ_KPP"),
            "ЮридическоеФизическоеЛицо": INDIVIDUAL if self.is_individual(item) else LEGAL,
        }
        return self.envelope(item, guid, keys)

    def push_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        keys = ObjectMapping.key_properties(wire)
        name = (keys.get("Наименование") or "").strip()
        fields: dict[str, Any] = {
            "NAME": name,
            "RQ_INN": keys.get("ИНН"),
            "RQ_KPP": keys.get("КПП"),
            "RQ_COMPANY_FULL_NAME": keys.get("НаименованиеПолное"),
        }
        if keys.get("ЮридическоеФизическоеЛицо") == INDIVIDUAL:
            parts = name.removeprefix(INDIVIDUAL_PREFIX).split(maxsplit=2)
            for key, value in zip(("RQ_LAST_NAME", "RQ_FIRST_NAME", "RQ_SECOND_NAME"), parts):
                fields[key] = value
            fields["PRESET_ID"] = PRESET_INDIVIDUAL
        else:
            fields["RQ_COMPANY_NAME"] = name
            fields["PRESET_ID"] = PRESET_LEGAL
        return fields

    def creation_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        """A new requisite is attached to the company the counterparty is linked to."""
        company_id = wire.get("b24_id")
        if not company_id:
            raise ValidationError(
                f"Counterparty {wire['ref']} has no Bitrix24 company to attach a requisite to"
            )
        return {"ENTITY_TYPE_ID": COMPANY_OWNER_TYPE, "ENTITY_ID": company_id}
