"""ObjectMapping capability and helpers shared by concrete mappings."""

import html
import importlib
import re
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any

from exbridge.config.logging import get_logger
from exbridge.db.base import Base
from exbridge.mapping.validation import ValidationResult

if TYPE_CHECKING:
    from exbridge.mapping.resolver import ReferenceResolver

logger = get_logger(__name__)

KEY_PROPERTIES = "КлючевыеСвойства"
CONTACT_INFO_SECTION = "КонтактнаяИнформация"

_TRUE_STRINGS = frozenset({"true", "1", "да", "yes"})
_REPRESENTATION_RE = re.compile(r'Представление="([^"]*)"')
_ZIP_ADDRESS_RE = re.compile(r"^(\d{6}),?\s*(.+)")


def resolve_model_class(path: str) -> type[Base]:
    """Import a model class from its dotted path.

    Raises:
        ImportError: If the module or the attribute does not exist.
    """
    module_name, _, class_name = path.rpartition(".")
    if not module_name:
        raise ImportError(f"Not a dotted path: {path}")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, class_name)
    except AttributeError as e:
        raise ImportError(f"{module_name} has no attribute {class_name}") from e


class ObjectMapping(ABC):
    """Transformation between one EnterpriseData object type and a local model.

    A wire object is a dict shaped like::

        {
            "type": "Справочник.Контрагенты",
            "ref": "<guid>",
            "properties": {"КлючевыеСвойства": {...}, ...},
            "tabular_sections": {...},
        }

    Subclasses set ``object_type`` and ``model_path`` and implement the
    three transformation methods.
    """

    object_type: str
    model_path: str

    def get_object_type(self) -> str:
        return self.object_type

    def get_model_class(self) -> str:
        """Dotted import path of the model this mapping produces."""
        return self.model_path

    @abstractmethod
    def map_from_1c(self, wire: dict[str, Any], resolver: "ReferenceResolver | None" = None) -> Base:
        """Build an unsaved model instance from a wire object.

        Args:
            wire: EnterpriseData object.
            resolver: Lookup for referenced local entities.

        Raises:
            DependencyNotReadyError: If a referenced entity is not synced yet.
        """

    @abstractmethod
    def map_to_1c(self, entity: Base) -> dict[str, Any]:
        """Build a wire object from a model instance."""

    @abstractmethod
    def validate_structure(self, wire: dict[str, Any]) -> ValidationResult:
        """Check that a wire object carries what ``map_from_1c`` needs."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}({self.object_type})>"

    # Helpers

    @staticmethod
    def properties(wire: dict[str, Any]) -> dict[str, Any]:
        return wire.get("properties") or {}

    @classmethod
    def key_properties(cls, wire: dict[str, Any]) -> dict[str, Any]:
        return cls.properties(wire).get(KEY_PROPERTIES) or {}

    @staticmethod
    def field(properties: dict[str, Any], name: str, default: Any = None) -> Any:
        """Get a property by name, falling back to a case-insensitive match."""
        if name in properties:
            return properties[name]
        lowered = name.casefold()
        for key, value in properties.items():
            if key.casefold() == lowered:
                return value
        return default

    @classmethod
    def bool_field(cls, properties: dict[str, Any], name: str, default: bool = False) -> bool:
        value = cls.field(properties, name, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in _TRUE_STRINGS
        return bool(value)

    @classmethod
    def str_field(cls, properties: dict[str, Any], name: str, max_length: int | None = None) -> str | None:
        """Get a stripped string property; blank becomes None."""
        value = cls.field(properties, name)
        if value is None:
            return None
        value = str(value).strip()
        if not value:
            return None
        if max_length is not None and len(value) > max_length:
            logger.warning("Truncating field", field=name, length=len(value), max_length=max_length)
            value = value[:max_length]
        return value

    @staticmethod
    def ref_of(properties: dict[str, Any], name: str) -> str | None:
        """GUID of a nested reference such as ``{"Контрагент": {"Ссылка": ...}}``."""
        data = properties.get(name) or {}
        if isinstance(data, dict):
            return data.get("Ссылка") or None
        return None

    @classmethod
    def guid_of(cls, wire: dict[str, Any]) -> str | None:
        return cls.field(cls.key_properties(wire), "Ссылка") or wire.get("ref") or None

    @staticmethod
    def parse_date(value: Any) -> date | None:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return datetime.fromisoformat(str(value)).date()
        except ValueError:
            logger.warning("Invalid date format, setting to null", value=value)
            return None

    @staticmethod
    def parse_datetime(value: Any) -> datetime | None:
        if value in (None, ""):
            return None
        if isinstance(value, datetime):
            parsed = value
        else:
            try:
                parsed = datetime.fromisoformat(str(value))
            except ValueError:
                logger.warning("Invalid datetime format, setting to null", value=value)
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    @staticmethod
    def is_valid_inn(inn: str) -> bool:
        digits = re.sub(r"\D", "", inn)
        return len(digits) in (10, 12)

    @classmethod
    def require_key_properties(cls, wire: dict[str, Any]) -> ValidationResult:
        return ValidationResult.when(bool(cls.key_properties(wire)), f"{KEY_PROPERTIES} section is missing")

    @staticmethod
    def parse_contact_info(tabular_sections: Any) -> dict[str, str | None]:
        """Extract phone, email and legal address from a contact information section.

        Values are either 1C contact XML carrying a ``Представление``
        attribute or plain strings.
        """
        info: dict[str, str | None] = {"phone": None, "email": None, "address": None, "zip": None}
        if not isinstance(tabular_sections, dict):
            return info

        for row in tabular_sections.get(CONTACT_INFO_SECTION) or []:
            kind = row.get("ВидКонтактнойИнформации") or ""
            raw = html.unescape(row.get("ЗначенияПолей") or "")
            match = _REPRESENTATION_RE.search(raw)
            value = match.group(1) if match else (raw if "<" not in raw else "")
            value = value.strip() or None
            if value is None:
                continue

            if "Телефон" in kind or "Phone" in kind:
                info["phone"] = value
            elif "Email" in kind or "Почт" in kind:
                info["email"] = value
            elif kind == "ЮридическийАдрес":
                zip_match = _ZIP_ADDRESS_RE.match(value)
                if zip_match:
                    info["zip"], info["address"] = zip_match.group(1), zip_match.group(2).strip()
                else:
                    info["address"] = value
        return info

    @staticmethod
    def contact_info_rows(phone: str | None, email: str | None, address: str | None = None) -> list[dict]:
        rows = []
        if phone:
            rows.append({"ВидКонтактнойИнформации": "Телефон", "ЗначенияПолей": phone})
        if email:
            rows.append({"ВидКонтактнойИнформации": "АдресЭлектроннойПочты", "ЗначенияПолей": email})
        if address:
            rows.append({"ВидКонтактнойИнформации": "ЮридическийАдрес", "ЗначенияПолей": address})
        return rows
