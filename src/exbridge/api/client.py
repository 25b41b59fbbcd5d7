"""Bitrix24 REST webhook client."""

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from exbridge.api.rate_limiter import RateLimiter
from exbridge.config.settings import Settings
from exbridge.utils.exceptions import APIError, RateLimitError
from exbridge.utils.retry import retry_with_backoff

logger = structlog.get_logger(__name__)

# Bitrix24 answers 503 with this error code when the request budget is spent
THROTTLE_ERRORS = frozenset({"QUERY_LIMIT_EXCEEDED", "OPERATION_TIME_LIMIT"})
THROTTLE_STATUSES = frozenset({429, 503})


def format_b24_datetime(value: datetime) -> str:
    """Format a timestamp for a Bitrix24 filter (ISO 8601 with offset)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat(timespec="seconds")


def parse_b24_datetime(value: str | None) -> datetime | None:
    """Parse a Bitrix24 timestamp into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Failed to parse Bitrix24 date", date=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class Bitrix24Client:
    """Async client for the Bitrix24 REST API via an incoming webhook."""

    def __init__(self, settings: Settings, rate_limiter: RateLimiter | None = None) -> None:
        """Initialize the client.

        Args:
            settings: Application settings.
            rate_limiter: Shared limiter; one is built from settings if omitted.
        """
        self._settings = settings
        self._base_url = settings.b24_webhook_url.get_secret_value().rstrip("/") + "/"
        self._timeout = settings.b24_timeout
        self._rate_limiter = rate_limiter or RateLimiter(
            requests_per_second=settings.requests_per_second,
            max_concurrent=settings.max_concurrent,
        )
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "Bitrix24Client":
        self._client = httpx.AsyncClient(timeout=self._timeout)
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @retry_with_backoff(max_retries=3, base_delay=2.0)
    async def _request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST a REST method call.

        Args:
            method: REST method name, e.g. ``crm.company.list``.
            params: Method parameters sent as the JSON body.

        Returns:
            Decoded JSON response.

        Raises:
            RateLimitError: If the portal throttled the request.
            APIError: If the request fails.
        """
        if not self._client:
            raise APIError("Client not initialized. Use 'async with' context manager.")

        url = f"{self._base_url}{method}.json"

        async with self._rate_limiter:
            logger.debug("API request", method=method)

            try:
                response = await self._client.post(url, json=params or {})
            except httpx.RequestError as e:
                logger.error("Request error", method=method, error=str(e))
                raise APIError(f"Request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        error_code = data.get("error") if isinstance(data, dict) else None
        if response.status_code in THROTTLE_STATUSES or error_code in THROTTLE_ERRORS:
            logger.warning("API throttled", method=method, status_code=response.status_code)
            raise RateLimitError(
                f"Bitrix24 throttled {method}: {error_code or response.status_code}",
                status_code=response.status_code,
            )

        if response.is_error or error_code:
            description = data.get("error_description", "") if isinstance(data, dict) else ""
            logger.error(
                "API error",
                method=method,
                status_code=response.status_code,
                error=error_code,
                response=response.text[:500],
            )
            raise APIError(
                f"API request failed: {error_code or response.status_code} {description}".strip(),
                status_code=response.status_code,
            )

        return data

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Call a REST method and return the decoded response."""
        return await self._request(method, params)

    async def get_profile(self) -> dict[str, Any]:
        """Get the profile of the webhook user (connectivity check)."""
        data = await self.call("profile")
        return data.get("result", {})

    async def update_item(self, method: str, item_id: int, fields: dict[str, Any], **extra: Any) -> bool:
        """Update fields of an item via ``<method>.update``.

        Args:
            method: Entity method prefix, e.g. ``crm.company`` or ``crm.item``.
            item_id: Bitrix24 item id.
            fields: Fields to write.
            **extra: Additional parameters (``entityTypeId`` for smart processes).

        Returns:
            True if the portal reported success.
        """
        data = await self.call(f"{method}.update", {"id": item_id, "fields": fields, **extra})
        return bool(data.get("result"))

    async def add_item(self, method: str, fields: dict[str, Any], **extra: Any) -> int:
        """Create an item via ``<method>.add``.

        ``crm.item.add`` answers with the created item, the classic CRM
        methods with its bare id.

        Returns:
            Id of the new item.

        Raises:
            APIError: If the portal did not return an id.
        """
        data = await self.call(f"{method}.add", {"fields": fields, **extra})
        result = data.get("result")
        if isinstance(result, dict):
            result = (result.get("item") or {}).get("id")
        try:
            return int(result)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise APIError(f"{method}.add returned no id") from None
