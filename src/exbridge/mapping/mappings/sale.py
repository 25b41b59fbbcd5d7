"""Документ.РеализацияТоваровУслуг mapping."""

from decimal import Decimal, InvalidOperation
from typing import Any

from exbridge.config.logging import get_logger
from exbridge.db.models import Contract, Counterparty, Sale
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.validation import ValidationResult

logger = get_logger(__name__)


def parse_amount(value: Any) -> Decimal | None:
    """Parse a 1C amount; accepts a decimal comma. Returns None if unparsable."""
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value).replace(" ", "").replace(",", "."))
    except InvalidOperation:
        return None


class SaleMapping(ObjectMapping):
    object_type = "Документ.РеализацияТоваровУслуг"
    model_path = "exbridge.db.models.Sale"

    @staticmethod
    def contract_ref(properties: dict[str, Any]) -> str | None:
        settlement = properties.get("ДанныеВзаиморасчетов") or {}
        return ObjectMapping.ref_of(settlement, "Договор")

    def map_from_1c(self, wire: dict[str, Any], resolver=None) -> Sale:
        properties = self.properties(wire)
        keys = self.key_properties(wire)

        counterparty_guid = self.ref_of(properties, "Контрагент")
        contract_guid = self.contract_ref(properties)
        counterparty_id = contract_id = None
        if resolver is not None:
            counterparty_id = resolver.require_id(Counterparty, counterparty_guid, "Counterparty")
            if contract_guid:
                contract_id = resolver.require_id(Contract, contract_guid, "Contract")

        currency = properties.get("Валюта") or {}
        classifier = currency.get("ДанныеКлассификатора") or {}

        sale = Sale(
            guid_1c=self.guid_of(wire),
            b24_id=wire.get("b24_id"),
            number=self.str_field(keys, "Номер", 50),
            title=self.str_field(properties, "Заголовок", 255),
            sale_date=self.parse_datetime(self.field(keys, "Дата")),
            amount=parse_amount(self.field(properties, "Сумма")) or Decimal("0"),
            currency_code=classifier.get("Код") or None,
            comment=self.str_field(properties, "Комментарий"),
            counterparty_guid_1c=counterparty_guid,
            counterparty_id=counterparty_id,
            contract_guid_1c=contract_guid,
            contract_id=contract_id,
            deletion_mark=self.bool_field(keys, "ПометкаУдаления"),
        )
        logger.debug("Mapped sale", guid_1c=sale.guid_1c, number=sale.number, amount=str(sale.amount))
        return sale

    def map_to_1c(self, entity: Sale) -> dict[str, Any]:
        properties: dict[str, Any] = {
            "КлючевыеСвойства": {
                "Ссылка": entity.guid_1c,
                "Номер": entity.number,
                "Дата": entity.sale_date.isoformat() if entity.sale_date else None,
            },
            "Контрагент": {"Ссылка": entity.counterparty_guid_1c},
            "Сумма": str(entity.amount),
            "Комментарий": entity.comment,
        }
        if entity.contract_guid_1c:
            properties["ДанныеВзаиморасчетов"] = {"Договор": {"Ссылка": entity.contract_guid_1c}}
        if entity.currency_code:
            properties["Валюта"] = {"ДанныеКлассификатора": {"Код": entity.currency_code}}
        return {"type": self.object_type, "ref": entity.guid_1c, "properties": properties, "tabular_sections": {}}

    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        properties = self.properties(wire)
        keys = self.key_properties(wire)
        if not keys:
            return self.require_key_properties(wire)

        amount = self.field(properties, "Сумма")
        result = ValidationResult.from_conditions(
            [
                (bool(self.guid_of(wire)), "Sale reference (Ссылка) is missing"),
                (bool(self.ref_of(properties, "Контрагент")), "Sale counterparty (Контрагент.Ссылка) is missing"),
                (parse_amount(amount) is not None, f"Invalid sale amount: {amount}"),
            ]
        )

        if not self.field(keys, "Дата"):
            result = result.add_warning("Sale date is missing")
        if not self.contract_ref(properties):
            result = result.add_warning("Sale contract (ДанныеВзаиморасчетов.Договор) is missing")
        return result.add_context("guid_1c", self.guid_of(wire))
