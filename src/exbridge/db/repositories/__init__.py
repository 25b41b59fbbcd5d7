"""Repository classes for database operations."""

from exbridge.db.repositories.change_log import ChangeLogRepository
from exbridge.db.repositories.entity import EntityRepository
from exbridge.db.repositories.sync_state import SyncStateRepository

__all__ = [
    "ChangeLogRepository",
    "EntityRepository",
    "SyncStateRepository",
]
