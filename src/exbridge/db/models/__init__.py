"""ORM models for exbridge."""

from exbridge.db.models.change_log import ChangeLogEntry, ChangeSource, ChangeStatus
from exbridge.db.models.contract import Contract
from exbridge.db.models.counterparty import ContactPerson, Counterparty
from exbridge.db.models.organization import Organization
from exbridge.db.models.product import Currency, Product
from exbridge.db.models.sale import Sale
from exbridge.db.models.sync_state import SyncState

__all__ = [
    "ChangeLogEntry",
    "ChangeSource",
    "ChangeStatus",
    "ContactPerson",
    "Contract",
    "Counterparty",
    "Currency",
    "Organization",
    "Product",
    "Sale",
    "SyncState",
]
