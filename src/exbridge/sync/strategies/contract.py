"""Contract strategy: the contracts smart process to Справочник.Договоры."""

from typing import Any

from exbridge.db.models import Contract, Counterparty
from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.sync.strategies.base import BaseEntityStrategy, b24_flag
from exbridge.utils.exceptions import ValidationError

# Smart process holding contracts
CONTRACT_ENTITY_TYPE_ID = 1064


class ContractStrategy(BaseEntityStrategy):
    entity_type = "Contract"
    object_type = "Справочник.Договоры"
    model = Contract
    method = "crm.item"
    items_key = "items"
    id_field = "id"
    modified_field = "updatedTime"
    guid_field = "ufCrm_19_GUID_1C"
    last_update_field = "ufCrm_19_LAST_UPDATE_FROM_1C"
    select_fields = (
        "id",
        "title",
        "companyId",
        "ufCrm19ContractNo",
        "ufCrm19ContractDate",
        "ufCrm_19_IS_ANNULLED",
    )
    extra_params = {"entityTypeId": CONTRACT_ENTITY_TYPE_ID}
    pushable = True

    def to_wire(self, item: dict[str, Any], guid: str, resolver: ReferenceResolver) -> dict[str, Any]:
        contract_date = item.get("ufCrm19ContractDate")
        keys: dict[str, Any] = {
            "Номер": item.get("ufCrm19ContractNo"),
            "Дата": str(contract_date)[:10] if contract_date else None,
            "Наименование": item.get("title"),
        }
        # Without a company the contract fails validation instead of waiting forever
        company_id = item.get("companyId")
        if company_id:
            keys["Контрагент"] = {
                "Ссылка": resolver.guid_for_b24_id(Counterparty, company_id, "Counterparty")
            }

        return self.envelope(
            item,
            guid,
            keys,
            properties={"Аннулирован": b24_flag(item.get("ufCrm_19_IS_ANNULLED"))},
        )

    def push_fields(self, wire: dict[str, Any], resolver: ReferenceResolver) -> dict[str, Any]:
        keys = ObjectMapping.key_properties(wire)
        counterparty_guid = ObjectMapping.ref_of(keys, "Контрагент")
        if not counterparty_guid:
            raise ValidationError(f"Contract {wire['ref']} has no counterparty")

        annulled = ObjectMapping.bool_field(ObjectMapping.properties(wire), "Аннулирован")
        return {
            "title": keys.get("Наименование"),
            "ufCrm19ContractNo": keys.get("Номер"),
            "ufCrm19ContractDate": keys.get("Дата"),
            "companyId": resolver.b24_id_for_guid(Counterparty, counterparty_guid, "Counterparty"),
            "ufCrm_19_IS_ANNULLED": "Y" if annulled else "N",
        }
