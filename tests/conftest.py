"""Shared test fixtures."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.orm import Session

from exbridge.api.client import Bitrix24Client, parse_b24_datetime
from exbridge.api.rate_limiter import RateLimiter
from exbridge.config.settings import Settings
from exbridge.db.engine import create_engine, create_tables, drop_tables, get_session

WEBHOOK_URL = "https://portal.example.com/rest/1/token123/"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def test_settings(monkeypatch) -> Settings:
    """Create test settings with in-memory SQLite and an instant retry backoff."""
    for name in ("EXB_DATABASE_URL", "EXB_LOG_LEVEL", "EXB_SKIP_ENTITY_TYPES", "EXB_CHUNK_SIZE"):
        monkeypatch.delenv(name, raising=False)

    return Settings(
        _env_file=None,
        b24_webhook_url=WEBHOOK_URL,
        database_url="sqlite://",
        log_level="INFO",
        requests_per_second=1000,
        max_concurrent=5,
        retry_base_minutes=0,
        rate_limit_backoff_seconds=0,
        min_invoice_date=None,
        smtp_enabled=False,
    )


@pytest.fixture
def test_engine(test_settings):
    """Create test database engine with tables."""
    engine = create_engine(test_settings)
    create_tables(engine)
    yield engine
    drop_tables(engine)
    engine.dispose()


@pytest.fixture
def test_session(test_engine) -> Session:
    """Create test database session.

    Do not hold this session open while code under test opens its own
    sessions on ``test_engine``: the in-memory database has one connection.
    """
    with get_session(test_engine) as session:
        yield session


class FakePortal:
    """In-memory Bitrix24 answering ``<method>.list`` calls.

    Supports the inclusive ``>=FIELD`` filter, exact ``FIELD`` filters,
    ordering by the first ``order`` field then id, ``start`` offsets with pages of 50 and the
    ``next`` marker. Smart process records are stored under
    ``crm.item:<entityTypeId>`` and their pages are wrapped in
    ``{"items": [...]}``. ``add_item`` stores a new record with the next
    free id.
    """

    page_size = 50

    def __init__(self, records: dict[str, list[dict]] | None = None) -> None:
        self.records = records or {}
        self.calls: list[tuple[str, dict]] = []
        self.failures: list[Exception] = []
        self.product_properties = [
            {"ID": "101", "CODE": "GUID_1C"},
            {"ID": "102", "CODE": "LAST_UPDATE_FROM_1C"},
        ]

    def add(self, method: str, *items: dict) -> None:
        self.records.setdefault(method, []).extend(items)

    def list_calls(self, method: str) -> list[dict]:
        return [params for name, params in self.calls if name == f"{method}.list"]

    def record(self, method: str, record_id: int) -> dict:
        return next(
            item for item in self.records[method] if int(item.get("ID") or item.get("id")) == record_id
        )

    async def call(self, method: str, params: dict | None = None) -> dict:
        params = params or {}
        self.calls.append((method, params))
        if self.failures:
            raise self.failures.pop(0)

        if method == "crm.product.property.list":
            return {"result": self.product_properties}

        base = method.rsplit(".", 1)[0]
        if "entityTypeId" in params:
            base = f"{base}:{params['entityTypeId']}"
        items = list(self.records.get(base, []))
        for key, value in (params.get("filter") or {}).items():
            if key.startswith(">="):
                field, bound = key[2:], parse_b24_datetime(value)
                items = [i for i in items if (parse_b24_datetime(i.get(field)) or EPOCH) >= bound]
            else:
                items = [i for i in items if str(i.get(key)) == str(value)]

        order = list((params.get("order") or {}).keys())
        if order:
            id_field = order[1] if len(order) > 1 else "ID"
            items.sort(
                key=lambda i: (parse_b24_datetime(i.get(order[0])) or EPOCH, int(i.get(id_field) or 0))
            )

        start = int(params.get("start") or 0)
        page = items[start : start + self.page_size]
        data: dict = {"total": len(items)}
        data["result"] = {"items": page} if "entityTypeId" in params else page
        if start + self.page_size < len(items):
            data["next"] = start + self.page_size
        return data

    async def add_item(self, method: str, fields: dict, **extra) -> int:
        self.calls.append((f"{method}.add", {"fields": fields, **extra}))
        base = f"{method}:{extra['entityTypeId']}" if "entityTypeId" in extra else method
        id_field = "id" if "entityTypeId" in extra else "ID"
        records = self.records.setdefault(base, [])
        record_id = max((int(r.get(id_field) or 0) for r in records), default=0) + 1
        records.append({**fields, id_field: record_id})
        return record_id


@pytest.fixture
def portal() -> FakePortal:
    """Empty fake portal; tests add records with ``portal.add``."""
    return FakePortal()


@pytest.fixture
def mock_api_client(portal):
    """Create mock API client backed by the fake portal."""
    client = MagicMock(spec=Bitrix24Client)
    client.call = AsyncMock(side_effect=portal.call)
    client.update_item = AsyncMock(return_value=True)
    client.add_item = AsyncMock(side_effect=portal.add_item)
    client.get_profile = AsyncMock(return_value={"ID": "1", "NAME": "Webhook", "ADMIN": True})
    client.rate_limiter = RateLimiter(requests_per_second=1000, max_concurrent=5)
    return client


@pytest.fixture
def mock_notifier():
    """Notifier that records alerts instead of sending mail."""
    notifier = MagicMock()
    notifier.send_alert.return_value = False
    notifier.notify_sync_complete.return_value = False
    return notifier


def b24_time(day: int, hour: int = 10, minute: int = 0) -> str:
    """Bitrix24 timestamp in November 2025, Moscow time."""
    return f"2025-11-{day:02d}T{hour:02d}:{minute:02d}:00+03:00"


def utc(day: int, hour: int = 10, minute: int = 0) -> datetime:
    """The UTC instant of ``b24_time(day, hour, minute)``."""
    return datetime(2025, 11, day, hour - 3, minute, tzinfo=timezone.utc)


# Bitrix24 record factories


def requisite(
    requisite_id: int,
    modified: str,
    name: str | None = "ООО Ромашка",
    company_id: int | None = None,
    guid: str | None = None,
    **fields,
) -> dict:
    """crm.requisite record of a company; ENTITY_ID defaults to the requisite id."""
    return {
        "ID": str(requisite_id),
        "ENTITY_TYPE_ID": "4",
        "ENTITY_ID": str(company_id if company_id is not None else requisite_id),
        "PRESET_ID": "1",
        "NAME": name,
        "RQ_COMPANY_NAME": name,
        "RQ_INN": "7701234567",
        "RQ_KPP": "770101001",
        "DATE_MODIFY": modified,
        "UF_CRM_GUID_1C": guid,
        "UF_CRM_LAST_UPDATE_1C": None,
        **fields,
    }


def contact(contact_id: int, modified: str, company_id: int | None = None, **fields) -> dict:
    return {
        "ID": str(contact_id),
        "NAME": "Иван",
        "LAST_NAME": "Петров",
        "SECOND_NAME": "Сергеевич",
        "POST": "Директор",
        "COMPANY_ID": str(company_id) if company_id is not None else None,
        "PHONE": [{"VALUE": "+7 900 123-45-67", "VALUE_TYPE": "WORK"}],
        "EMAIL": [{"VALUE": "petrov@example.com", "VALUE_TYPE": "WORK"}],
        "DATE_MODIFY": modified,
        "UF_CRM_GUID_1C": None,
        "UF_CRM_LAST_UPDATE_FROM_1C": None,
        **fields,
    }


def contract(contract_id: int, modified: str, company_id: int | None = None, **fields) -> dict:
    return {
        "id": contract_id,
        "title": f"Договор поставки № Д-{contract_id}",
        "companyId": company_id,
        "ufCrm19ContractNo": f"Д-{contract_id}",
        "ufCrm19ContractDate": "2025-11-01T00:00:00+03:00",
        "ufCrm_19_IS_ANNULLED": "N",
        "updatedTime": modified,
        "ufCrm_19_GUID_1C": None,
        "ufCrm_19_LAST_UPDATE_FROM_1C": None,
        **fields,
    }


def product(product_id: int, modified: str, **fields) -> dict:
    return {
        "ID": str(product_id),
        "NAME": "Консультация",
        "CODE": f"P-{product_id}",
        "DESCRIPTION": "Час работы специалиста",
        "VAT_ID": "5",
        "ACTIVE": "Y",
        "TIMESTAMP_X": modified,
        "PROPERTY_101": None,
        "PROPERTY_102": None,
        **fields,
    }


def invoice(
    invoice_id: int,
    modified: str,
    company_id: int | None = None,
    contract_id: int | None = None,
    **fields,
) -> dict:
    return {
        "id": invoice_id,
        "title": f"Счет № {invoice_id} от 05.11.2025",
        "begindate": "2025-11-05T00:00:00+03:00",
        "companyId": company_id,
        "parentId1064": contract_id,
        "opportunity": 1500.5,
        "currencyId": "RUB",
        "comments": "Оплата по договору",
        "updatedTime": modified,
        "xmlId": None,
        "ufCrm_SMART_INVOICE_LAST_UPDATE_FROM_1C": None,
        **fields,
    }
