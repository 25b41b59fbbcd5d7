"""Invoice strategy: Bitrix24 smart invoices to Документ.РеализацияТоваровУслуг."""

from datetime import datetime, time, timezone
from typing import Any

import structlog

from exbridge.db.models import Contract, Counterparty, Sale
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.sync.strategies.base import BaseEntityStrategy, number_from_title
from exbridge.utils.exceptions import DependencyNotReadyError

logger = structlog.get_logger(__name__)

INVOICE_ENTITY_TYPE_ID = 31

# ISO 4217 numeric codes used by the 1C currency classifier
CURRENCY_CODES = {
    "RUB": "643",
    "USD": "840",
    "EUR": "978",
    "CNY": "156",
    "KZT": "398",
    "BYN": "933",
}


class InvoiceStrategy(BaseEntityStrategy):
    """Smart invoices keep their GUID in the standard ``xmlId`` field.

    Invoices modified before ``min_invoice_date`` are never pulled.
    """

    entity_type = "Invoice"
    object_type = "Документ.РеализацияТоваровУслуг"
    model = Sale
    method = "crm.item"
    items_key = "items"
    id_field = "id"
    modified_field = "updatedTime"
    guid_field = "xmlId"
    last_update_field = "ufCrm_SMART_INVOICE_LAST_UPDATE_FROM_1C"
    select_fields = (
        "id",
        "title",
        "begindate",
        "companyId",
        "parentId1064",
        "opportunity",
        "currencyId",
        "comments",
    )
    extra_params = {"entityTypeId": INVOICE_ENTITY_TYPE_ID}

    def lower_bound(self, since: datetime | None) -> datetime | None:
        min_date = self.settings.min_invoice_date
        if min_date is None:
            return since
        floor = datetime.combine(min_date, time.min, tzinfo=timezone.utc)
        return max(since, floor) if since is not None else floor

    def contract_guid(self, item: dict[str, Any], resolver: ReferenceResolver) -> str | None:
        """GUID of the linked contract; an unsynced contract is left out."""
        contract_id = item.get("parentId1064")
        if not contract_id:
            return None
        try:
            return resolver.guid_for_b24_id(Contract, contract_id, "Contract")
        except DependencyNotReadyError as e:
            logger.warning(
                "Invoice contract not synced, importing without it",
                invoice_id=item.get("id"),
                contract_id=contract_id,
                error=str(e),
            )
            return None

    def to_wire(self, item: dict[str, Any], guid: str, resolver: ReferenceResolver) -> dict[str, Any]:
        keys = {
            "Номер": number_from_title(item.get("title")),
            "Дата": item.get("begindate"),
        }

        properties: dict[str, Any] = {
            "Заголовок": item.get("title"),
            "Сумма": item.get("opportunity"),
            "Комментарий": item.get("comments"),
        }
        company_id = item.get("companyId")
        if company_id:
            properties["Контрагент"] = {
                "Ссылка": resolver.guid_for_b24_id(Counterparty, company_id, "Counterparty")
            }
        contract_guid = self.contract_guid(item, resolver)
        if contract_guid:
            properties["ДанныеВзаиморасчетов"] = {"Договор": {"Ссылка": contract_guid}}
        currency = item.get("currencyId")
        if currency:
            properties["Валюта"] = {"ДанныеКлассификатора": {"Код": CURRENCY_CODES.get(currency, currency)}}

        return self.envelope(item, guid, keys, properties=properties)
