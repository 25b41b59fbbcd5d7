"""Bitrix24 API access."""

from exbridge.api.client import Bitrix24Client
from exbridge.api.rate_limiter import RateLimiter

__all__ = ["Bitrix24Client", "RateLimiter"]
