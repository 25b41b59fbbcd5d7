"""Contact strategy: Bitrix24 contacts to Справочник.КонтактныеЛица."""

from typing import Any

from exbridge.db.models import ContactPerson, Counterparty
from exbridge.mapping.base import CONTACT_INFO_SECTION, ObjectMapping
from exbridge.mapping.mappings.contact_person import ContactPersonMapping
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.sync.strategies.base import BaseEntityStrategy, first_multifield


class ContactStrategy(BaseEntityStrategy):
    entity_type = "Contact"
    object_type = "Справочник.КонтактныеЛица"
    model = ContactPerson
    method = "crm.contact"
    modified_field = "DATE_MODIFY"
    guid_field = "UF_CRM_GUID_1C"
    last_update_field = "UF_CRM_LAST_UPDATE_FROM_1C"
    pushable = True
    select_fields = (
        "ID",
        "NAME",
        "LAST_NAME",
        "SECOND_NAME",
        "POST",
        "COMPANY_ID",
        "PHONE",
        "EMAIL",
    )

    @staticmethod
    def full_name(item: dict[str, Any]) -> str:
        parts = [(item.get(key) or "").strip() for key in ("LAST_NAME", "NAME", "SECOND_NAME")]
        return " ".join(p for p in parts if p)

    def to_wire(self, item: dict[str, Any], guid: str, resolver: ReferenceResolver) -> dict[str, Any]:
        keys: dict[str, Any] = {"ФИО": self.full_name(item)}

        # A contact without a company is kept; one whose company is not synced waits
        company_id = item.get("COMPANY_ID")
        if company_id and str(company_id) != "0":
            counterparty_guid = resolver.guid_for_b24_id(Counterparty, company_id, "Counterparty")
            keys["Субъект"] = {"Контрагент": {"Ссылка": counterparty_guid}}

        rows = ObjectMapping.contact_info_rows(
            first_multifield(item.get("PHONE")),
            first_multifield(item.get("EMAIL")),
        )
        return self.envelope(
            item,
            guid,
            keys,
            properties={"ОписаниеДолжности": item.get("POST")},
            tabular_sections={CONTACT_INFO_SECTION: rows},
        )

    def push_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        keys = ObjectMapping.key_properties(wire)
        # ФИО is "Фамилия Имя Отчество"
        parts = (keys.get("ФИО") or "").split(maxsplit=2)
        fields: dict[str, Any] = dict(zip(("LAST_NAME", "NAME", "SECOND_NAME"), parts))
        fields["POST"] = ObjectMapping.properties(wire).get("ОписаниеДолжности")

        counterparty_guid = ContactPersonMapping.counterparty_ref(keys)
        if counterparty_guid:
            fields["COMPANY_ID"] = resolver.b24_id_for_guid(Counterparty, counterparty_guid, "Counterparty")
        return fields

    def creation_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        """Phone and e-mail are multi-fields; they are only filled on a new contact."""
        info = ObjectMapping.parse_contact_info(wire.get("tabular_sections"))
        return {
            name: [{"VALUE": info[key], "VALUE_TYPE": "WORK"}]
            for name, key in (("PHONE", "phone"), ("EMAIL", "email"))
            if info[key]
        }
