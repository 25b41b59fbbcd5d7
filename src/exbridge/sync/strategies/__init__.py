"""Per-entity-type pull strategies."""

from exbridge.sync.strategies.base import BaseEntityStrategy, Chunk
from exbridge.sync.strategies.company import CompanyStrategy
from exbridge.sync.strategies.contact import ContactStrategy
from exbridge.sync.strategies.contract import ContractStrategy
from exbridge.sync.strategies.invoice import InvoiceStrategy
from exbridge.sync.strategies.product import ProductStrategy

STRATEGIES: dict[str, type[BaseEntityStrategy]] = {
    "Company": CompanyStrategy,
    "Contact": ContactStrategy,
    "Contract": ContractStrategy,
    "Product": ProductStrategy,
    "Invoice": InvoiceStrategy,
}

__all__ = [
    "STRATEGIES",
    "BaseEntityStrategy",
    "Chunk",
    "CompanyStrategy",
    "ContactStrategy",
    "ContractStrategy",
    "InvoiceStrategy",
    "ProductStrategy",
]
