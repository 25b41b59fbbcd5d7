"""Database module for exbridge."""

from exbridge.db.base import Base, TimestampMixin, UTCDateTime, utcnow
from exbridge.db.engine import create_engine, create_tables, drop_tables, get_session

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "create_engine",
    "create_tables",
    "drop_tables",
    "get_session",
    "utcnow",
]
