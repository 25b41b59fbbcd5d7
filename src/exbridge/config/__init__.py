"""Configuration for exbridge."""

from exbridge.config.settings import ENTITY_TYPES, Settings, get_settings

__all__ = ["ENTITY_TYPES", "Settings", "get_settings"]
