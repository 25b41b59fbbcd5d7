"""Справочник.Договоры mapping."""

from typing import Any

from exbridge.config.logging import get_logger
from exbridge.db.models import Contract, Counterparty
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult

logger = get_logger(__name__)


class ContractMapping(ObjectMapping):
    object_type = "Справочник.Договоры"
    model_path = "exbridge.db.models.Contract"

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> Contract:
        keys = self.key_properties(wire)
        guid = self.guid_of(wire)

        counterparty_guid = self.ref_of(keys, "Контрагент")
        counterparty_id = None
        if resolver is not None:
            counterparty_id = resolver.require_id(Counterparty, counterparty_guid, "Counterparty")

        number = self.str_field(keys, "Номер", 100)
        name = self.str_field(keys, "Наименование", 255) or (f"Договор № {number}" if number else guid)

        currency = keys.get("ВалютаВзаиморасчетов") or {}
        classifier = currency.get("ДанныеКлассификатора") or {}

        contract = Contract(
            guid_1c=guid,
            b24_id=wire.get("b24_id"),
            name=name,
            number=number,
            contract_date=self.parse_date(self.field(keys, "Дата")),
            counterparty_guid_1c=counterparty_guid,
            counterparty_id=counterparty_id,
            organization_guid_1c=self.ref_of(keys, "Организация"),
            currency_code=classifier.get("Код") or None,
            is_annulled=self.bool_field(self.properties(wire), "Аннулирован"),
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )
        logger.debug(
            "Mapped contract",
            guid_1c=contract.guid_1c,
            number=contract.number,
            counterparty_guid_1c=counterparty_guid,
        )
        return contract

    def map_to_1c(self, entity: Contract) -> dict[str, Any]:
        keys: dict[str, Any] = {
            "Ссылка": entity.guid_1c,
            "Номер": entity.number,
            "Дата": entity.contract_date.isoformat() if entity.contract_date else None,
            "Наименование": entity.name,
            "Контрагент": {"Ссылка": entity.counterparty_guid_1c},
        }
        if entity.organization_guid_1c:
            keys["Организация"] = {"Ссылка": entity.organization_guid_1c}
        if entity.currency_code:
            keys["ВалютаВзаиморасчетов"] = {"ДанныеКлассификатора": {"Код": entity.currency_code}}

        return {
            "type": self.object_type,
            "ref": entity.guid_1c,
            "properties": {
                "КлючевыеСвойства": keys,
                "Аннулирован": "true" if entity.is_annulled else "false",
            },
            "tabular_sections": {},
        }

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        result = ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Contract reference (Ссылка) is missing"),
                (bool(self.ref_of(keys, "Контрагент")), "Contract counterparty (Контрагент.Ссылка) is missing"),
            ]
        )

        if not self.str_field(keys, "Номер"):
            result = result.add_warning("Contract number is missing")
        date_value = self.field(keys, "Дата")
        if not date_value:
            result = result.add_warning("Contract date is missing")
        elif self.parse_date(date_value) is None:
            result = result.add_warning(f"Invalid contract date format: {date_value}")
        if not self.str_field(keys, "Наименование"):
            result = result.add_warning("Contract name is missing")
        return result
