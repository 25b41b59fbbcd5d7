"""Registry resolving EnterpriseData object types to ObjectMapping instances."""

from collections.abc import Mapping
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any

from exbridge.config.logging import get_logger
from exbridge.mapping.base import ObjectMapping, resolve_model_class
from exbridge.mapping.validation import ValidationResult
from exbridge.utils.exceptions import MappingRegistrationError

logger = get_logger(__name__)

# Object types that must have a mapping before the registry is production-ready
PRIORITY_TYPES: tuple[str, ...] = (
    "Справочник.Организации",
    "Справочник.Договоры",
    "Справочник.Контрагенты",
    "Справочник.КонтрагентыГруппа",
    "Справочник.Валюты",
    "Справочник.Пользователи",
    "Справочник.ЕдиницыИзмерения",
    "Справочник.Номенклатура",
    "Справочник.НоменклатураГруппа",
    "Документ.РеализацияТоваровУслуг",
    "Документ.ЗаказКлиента",
    "УдалениеОбъекта",
)


def is_pattern(key: str) -> bool:
    return "*" in key or "?" in key


@dataclass(frozen=True)
class ExactMatcher:
    key: str

    kind = "exact"

    def matches(self, object_type: str) -> bool:
        return object_type == self.key


@dataclass(frozen=True)
class GlobMatcher:
    """Case-sensitive glob: ``*`` matches any run, ``?`` a single character."""

    pattern: str

    kind = "pattern"

    @property
    def key(self) -> str:
        return self.pattern

    def matches(self, object_type: str) -> bool:
        return fnmatchcase(object_type, self.pattern)


Matcher = ExactMatcher | GlobMatcher


def make_matcher(key: str) -> Matcher:
    return GlobMatcher(key) if is_pattern(key) else ExactMatcher(key)


@dataclass(frozen=True)
class MappingConflict:
    """A registered key that would match a given object type."""

    type: str  # exact or pattern
    pattern: str
    mapping: ObjectMapping

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "pattern": self.pattern, "mapping": self.mapping}


class ObjectMappingRegistry:
    """Ordered registry of object type keys to mappings.

    Exact keys are looked up first. Glob keys are then tried in registration
    order and the earliest match wins. Re-registering a key replaces its
    mapping in place, keeping the original registration position.

    The registry is built once at startup; ``freeze()`` ends the registration
    phase and makes it read-only for the sync cycles that share it.
    """

    def __init__(self, priority_types: tuple[str, ...] = PRIORITY_TYPES) -> None:
        self._priority_types = tuple(priority_types)
        # key -> (matcher, mapping), insertion ordered
        self._entries: dict[str, tuple[Matcher, ObjectMapping]] = {}
        self._exact: dict[str, ObjectMapping] = {}
        self._frozen = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, object_type: str) -> bool:
        return self.has_mapping(object_type)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> "ObjectMappingRegistry":
        self._frozen = True
        return self

    def _check_writable(self) -> None:
        if self._frozen:
            raise MappingRegistrationError("Mapping registry is frozen; registration phase is over")

    # Registration

    def register_mapping(self, key: str, mapping: ObjectMapping) -> None:
        """Associate an exact object type or a glob pattern with a mapping.

        Args:
            key: Object type such as ``Справочник.Контрагенты`` or a pattern
                such as ``Справочник.*``.
            mapping: Mapping instance.

        Raises:
            MappingRegistrationError: If the registry is frozen or ``mapping``
                is not an ObjectMapping.
        """
        self._check_writable()
        if not isinstance(mapping, ObjectMapping):
            raise MappingRegistrationError(f"Invalid mapping provided for {key}")

        if key in self._entries:
            logger.warning(
                "Overwriting registered mapping",
                key=key,
                previous=repr(self._entries[key][1]),
                new=repr(mapping),
            )

        matcher = make_matcher(key)
        self._entries[key] = (matcher, mapping)
        if isinstance(matcher, ExactMatcher):
            self._exact[key] = mapping

    def register_mappings(self, mappings: Mapping[str, Any]) -> None:
        """Register several mappings, failing on the first invalid value.

        Raises:
            MappingRegistrationError: If any value is not an ObjectMapping.
        """
        for key, mapping in mappings.items():
            if not isinstance(mapping, ObjectMapping):
                raise MappingRegistrationError(f"Invalid mapping provided for {key}")
            self.register_mapping(key, mapping)

    def unregister_mapping(self, key: str) -> None:
        self._check_writable()
        self._entries.pop(key, None)
        self._exact.pop(key, None)

    # Lookup

    def get_mapping(self, object_type: str) -> ObjectMapping | None:
        """Resolve the mapping for an object type.

        Returns:
            The exact-key mapping if any, otherwise the earliest registered
            pattern that matches, otherwise None.
        """
        mapping = self._exact.get(object_type)
        if mapping is not None:
            return mapping

        for matcher, candidate in self._entries.values():
            if isinstance(matcher, GlobMatcher) and matcher.matches(object_type):
                return candidate
        return None

    def has_mapping(self, object_type: str) -> bool:
        return self.get_mapping(object_type) is not None

    def all_mappings(self) -> dict[str, ObjectMapping]:
        return {key: mapping for key, (_, mapping) in self._entries.items()}

    def supported_object_types(self) -> list[str]:
        return list(self._entries)

    # Priority types

    def is_priority_type(self, object_type: str) -> bool:
        return object_type in self._priority_types

    def priority_types(self) -> list[str]:
        return list(self._priority_types)

    def missing_priority_mappings(self) -> list[str]:
        return [t for t in self._priority_types if not self.has_mapping(t)]

    # Diagnostics

    def mapping_statistics(self) -> dict[str, Any]:
        """Counts of registered keys and priority coverage.

        ``priority_completion_rate`` counts only priority types registered
        under their exact name.
        """
        priority = sum(1 for key in self._entries if key in self._priority_types)
        patterns = sum(1 for matcher, _ in self._entries.values() if isinstance(matcher, GlobMatcher))
        missing = self.missing_priority_mappings()
        total_priority = len(self._priority_types)

        return {
            "total_mappings": len(self._entries),
            "priority_mappings": priority,
            "pattern_mappings": patterns,
            "exact_mappings": len(self._entries) - patterns,
            "missing_priority_mappings": len(missing),
            "missing_priority_types": missing,
            "priority_completion_rate": round(priority / total_priority * 100, 2) if total_priority else 0,
        }

    def validate_registry(self) -> ValidationResult:
        """Check for duplicate object types, missing model classes and priority gaps.

        Returns:
            Failure listing every problem found; missing priority mappings
            are reported as a warning only.
        """
        errors: list[str] = []
        warnings: list[str] = []

        seen: dict[str, str] = {}
        for key, (_, mapping) in self._entries.items():
            object_type = mapping.get_object_type()
            if object_type in seen:
                errors.append(f"Duplicate mapping for object type: {object_type}")
            seen[object_type] = key

        missing = self.missing_priority_mappings()
        if missing:
            warnings.append("Missing priority mappings: " + ", ".join(missing))

        for key, (_, mapping) in self._entries.items():
            try:
                model_path = mapping.get_model_class()
            except Exception as e:
                errors.append(f"Invalid mapping for {key}: {e}")
                continue
            try:
                resolve_model_class(model_path)
            except ImportError:
                errors.append(f"Model class does not exist for {key}: {model_path}")

        return ValidationResult.failure(errors, warnings)

    def check_mapping_conflicts(self, object_type: str) -> list[MappingConflict]:
        """List every registered key that would match ``object_type``.

        The exact key, if registered, comes first, tagged ``exact``; other
        matching keys follow in registration order, tagged ``pattern``.
        """
        conflicts: list[MappingConflict] = []
        if object_type in self._exact:
            conflicts.append(MappingConflict("exact", object_type, self._exact[object_type]))

        for key, (_, mapping) in self._entries.items():
            if key != object_type and fnmatchcase(object_type, key):
                conflicts.append(MappingConflict("pattern", key, mapping))
        return conflicts

    def mappings_by_category(self) -> dict[str, list[str]]:
        priority, missing = [], []
        for object_type in self._priority_types:
            (priority if self.has_mapping(object_type) else missing).append(object_type)

        exact = [key for key, (m, _) in self._entries.items() if isinstance(m, ExactMatcher)]
        patterns = [key for key, (m, _) in self._entries.items() if isinstance(m, GlobMatcher)]
        return {
            "exact_mappings": exact,
            "pattern_mappings": patterns,
            "priority_mappings": priority,
            "missing_priority_mappings": missing,
        }

    def mapping_with_conflicts(self, object_type: str) -> dict[str, Any]:
        return {
            "mapping": self.get_mapping(object_type),
            "conflicts": self.check_mapping_conflicts(object_type),
            "is_priority": self.is_priority_type(object_type),
        }


def default_registry() -> ObjectMappingRegistry:
    """Build the production registry with every concrete mapping registered."""
    from exbridge.mapping.mappings import ALL_MAPPINGS

    registry = ObjectMappingRegistry()
    registry.register_mappings({mapping.get_object_type(): mapping for mapping in ALL_MAPPINGS})
    result = registry.validate_registry()
    result.on_failure(lambda r: logger.error("Mapping registry is invalid", errors=list(r.errors)))
    result.on_warnings(lambda r: logger.warning("Mapping registry is incomplete", warnings=list(r.warnings)))
    return registry.freeze()
