"""exbridge - incremental Bitrix24 / 1C EnterpriseData synchronization."""

__version__ = "0.1.0"
