"""Concrete EnterpriseData object mappings."""

from exbridge.mapping.mappings.contact_person import ContactPersonMapping
from exbridge.mapping.mappings.contract import ContractMapping
from exbridge.mapping.mappings.counterparty import CounterpartyMapping
from exbridge.mapping.mappings.currency import CurrencyMapping
from exbridge.mapping.mappings.organization import OrganizationMapping
from exbridge.mapping.mappings.product import ProductMapping
from exbridge.mapping.mappings.sale import SaleMapping

ALL_MAPPINGS = (
    OrganizationMapping(),
    CounterpartyMapping(),
    ContactPersonMapping(),
    ContractMapping(),
    CurrencyMapping(),
    ProductMapping(),
    SaleMapping(),
)

__all__ = [
    "ALL_MAPPINGS",
    "ContactPersonMapping",
    "ContractMapping",
    "CounterpartyMapping",
    "CurrencyMapping",
    "OrganizationMapping",
    "ProductMapping",
    "SaleMapping",
]
