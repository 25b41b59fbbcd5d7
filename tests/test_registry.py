"""Tests for the object mapping registry."""

import pytest

from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.mappings import ALL_MAPPINGS, CounterpartyMapping, OrganizationMapping
from exbridge.mapping.registry import (
    PRIORITY_TYPES,
    ExactMatcher,
    GlobMatcher,
    ObjectMappingRegistry,
    default_registry,
    make_matcher,
)
from exbridge.mapping.validation import ValidationResult
from exbridge.utils.exceptions import MappingRegistrationError


class StubMapping(ObjectMapping):
    """Mapping that only carries an object type and a model path."""

    def __init__(self, object_type: str, model_path: str = "exbridge.db.models.Counterparty") -> None:
        self.object_type = object_type
        self.model_path = model_path

    def map_from_1c(self, wire, resolver=None):
        raise NotImplementedError

    def map_to_1c(self, entity):
        return {}

    def validate_structure(self, wire):
        return ValidationResult.empty()


@pytest.fixture
def registry():
    return ObjectMappingRegistry()


class TestMatchers:
    """Test key matchers."""

    def test_make_matcher(self):
        """Test keys with wildcards become glob matchers."""
        assert isinstance(make_matcher("Справочник.Контрагенты"), ExactMatcher)
        assert isinstance(make_matcher("Справочник.*"), GlobMatcher)
        assert isinstance(make_matcher("Документ.Реализация?"), GlobMatcher)

    def test_glob_is_case_sensitive(self):
        """Test glob matching respects case."""
        matcher = GlobMatcher("Справочник.*")
        assert matcher.matches("Справочник.Валюты")
        assert not matcher.matches("справочник.Валюты")

    def test_question_mark_matches_one_character(self):
        """Test ? matches exactly one character."""
        matcher = GlobMatcher("A.B?")
        assert matcher.matches("A.Bc")
        assert not matcher.matches("A.Bcd")


class TestRegistration:
    """Test registering and resolving mappings."""

    def test_exact_lookup(self, registry):
        """Test an exact key resolves to its mapping."""
        mapping = StubMapping("Справочник.Контрагенты")
        registry.register_mapping("Справочник.Контрагенты", mapping)

        assert registry.get_mapping("Справочник.Контрагенты") is mapping
        assert registry.has_mapping("Справочник.Контрагенты")
        assert "Справочник.Контрагенты" in registry
        assert registry.get_mapping("Справочник.Валюты") is None

    def test_exact_wins_over_earlier_pattern(self, registry):
        """Test an exact key wins regardless of registration order."""
        pattern = StubMapping("Справочник.Прочее")
        exact = StubMapping("Справочник.Организации")
        registry.register_mapping("Справочник.*", pattern)
        registry.register_mapping("Справочник.Организации", exact)

        assert registry.get_mapping("Справочник.Организации") is exact
        assert registry.get_mapping("Справочник.Валюты") is pattern

    def test_earliest_pattern_wins(self, registry):
        """Test the first registered of two matching patterns is returned."""
        broad = StubMapping("A.Broad")
        narrow = StubMapping("A.Narrow")
        registry.register_mapping("A.*", broad)
        registry.register_mapping("A.B*", narrow)

        assert registry.get_mapping("A.Bcd") is broad

    def test_earliest_pattern_wins_reversed(self, registry):
        """Test the tie-break follows registration order, not specificity."""
        narrow = StubMapping("A.Narrow")
        broad = StubMapping("A.Broad")
        registry.register_mapping("A.B*", narrow)
        registry.register_mapping("A.*", broad)

        assert registry.get_mapping("A.Bcd") is narrow
        assert registry.get_mapping("A.Xyz") is broad

    def test_overwrite_keeps_position(self, registry):
        """Test re-registering a key replaces it in place."""
        first = StubMapping("A.First")
        second = StubMapping("A.Second")
        replacement = StubMapping("A.Replacement")
        registry.register_mapping("A.*", first)
        registry.register_mapping("A.B*", second)
        registry.register_mapping("A.*", replacement)

        assert registry.get_mapping("A.Bcd") is replacement
        assert registry.supported_object_types() == ["A.*", "A.B*"]
        assert len(registry) == 2

    def test_invalid_mapping_rejected(self, registry):
        """Test a value that is not a mapping is rejected."""
        with pytest.raises(MappingRegistrationError, match="Invalid mapping provided for X.Y"):
            registry.register_mapping("X.Y", object())  # type: ignore[arg-type]

    def test_register_mappings_fails_on_first_invalid(self, registry):
        """Test bulk registration stops at the first invalid value."""
        good = StubMapping("A.Good")
        with pytest.raises(MappingRegistrationError, match="B.Bad"):
            registry.register_mappings({"A.Good": good, "B.Bad": "nope", "C.Later": StubMapping("C.Later")})

        assert registry.get_mapping("A.Good") is good
        assert not registry.has_mapping("C.Later")

    def test_unregister(self, registry):
        """Test removing exact and pattern keys."""
        registry.register_mapping("A.B", StubMapping("A.B"))
        registry.register_mapping("A.*", StubMapping("A.Any"))
        registry.unregister_mapping("A.B")
        registry.unregister_mapping("A.*")
        registry.unregister_mapping("never.registered")

        assert registry.get_mapping("A.B") is None
        assert len(registry) == 0

    def test_frozen_registry_is_read_only(self, registry):
        """Test registration ends once the registry is frozen."""
        registry.register_mapping("A.B", StubMapping("A.B"))
        registry.freeze()

        assert registry.frozen
        with pytest.raises(MappingRegistrationError, match="frozen"):
            registry.register_mapping("A.C", StubMapping("A.C"))
        with pytest.raises(MappingRegistrationError):
            registry.unregister_mapping("A.B")
        assert registry.has_mapping("A.B")


class TestPriorityTypes:
    """Test priority type coverage."""

    def test_missing_priority_mappings(self):
        """Test priority types without mappings are listed in order."""
        registry = ObjectMappingRegistry(priority_types=("A.One", "A.Two", "B.Three"))
        registry.register_mapping("A.Two", StubMapping("A.Two"))

        assert registry.is_priority_type("A.One")
        assert not registry.is_priority_type("C.Other")
        assert registry.missing_priority_mappings() == ["A.One", "B.Three"]

    def test_pattern_covers_priority_type(self):
        """Test a pattern satisfies a priority type for lookup purposes."""
        registry = ObjectMappingRegistry(priority_types=("A.One", "A.Two"))
        registry.register_mapping("A.*", StubMapping("A.Any"))

        assert registry.missing_priority_mappings() == []

    def test_statistics(self):
        """Test the statistics count exact priority keys only."""
        registry = ObjectMappingRegistry(priority_types=("A.One", "A.Two", "B.Three", "B.Four"))
        registry.register_mapping("A.One", StubMapping("A.One"))
        registry.register_mapping("B.*", StubMapping("B.Any"))
        registry.register_mapping("C.Extra", StubMapping("C.Extra"))

        stats = registry.mapping_statistics()

        assert stats["total_mappings"] == 3
        assert stats["priority_mappings"] == 1
        assert stats["pattern_mappings"] == 1
        assert stats["exact_mappings"] == 2
        assert stats["missing_priority_mappings"] == 1
        assert stats["missing_priority_types"] == ["A.Two"]
        assert stats["priority_completion_rate"] == 25.0

    def test_statistics_without_priority_types(self):
        """Test the completion rate of an empty priority set is zero."""
        registry = ObjectMappingRegistry(priority_types=())
        assert registry.mapping_statistics()["priority_completion_rate"] == 0

    def test_mappings_by_category(self):
        """Test keys are grouped by kind and priority coverage."""
        registry = ObjectMappingRegistry(priority_types=("A.One", "A.Two"))
        registry.register_mapping("A.One", StubMapping("A.One"))
        registry.register_mapping("B.*", StubMapping("B.Any"))

        categories = registry.mappings_by_category()

        assert categories["exact_mappings"] == ["A.One"]
        assert categories["pattern_mappings"] == ["B.*"]
        assert categories["priority_mappings"] == ["A.One"]
        assert categories["missing_priority_mappings"] == ["A.Two"]


class TestValidation:
    """Test registry self-validation."""

    def test_missing_priority_is_warning(self):
        """Test priority gaps warn without failing."""
        registry = ObjectMappingRegistry(priority_types=("A.One",))
        registry.register_mapping("A.Two", StubMapping("A.Two"))

        result = registry.validate_registry()

        assert result.is_valid()
        assert result.warnings == ("Missing priority mappings: A.One",)

    def test_duplicate_object_type(self, registry):
        """Test two keys serving the same object type are an error."""
        registry.register_mapping("A.B", StubMapping("A.B"))
        registry.register_mapping("A.*", StubMapping("A.B"))

        result = registry.validate_registry()

        assert result.has_error("Duplicate mapping for object type: A.B")

    def test_missing_model_class(self, registry):
        """Test a mapping pointing at a non-existent model is an error."""
        registry.register_mapping("A.B", StubMapping("A.B", model_path="exbridge.db.models.Nothing"))
        registry.register_mapping("A.C", StubMapping("A.C", model_path="not_a_path"))

        result = registry.validate_registry()

        assert result.has_error("Model class does not exist for A.B: exbridge.db.models.Nothing")
        assert result.has_error("Model class does not exist for A.C: not_a_path")


class TestConflicts:
    """Test conflict diagnostics."""

    def test_exact_first_then_patterns(self, registry):
        """Test every matching key is listed, exact first."""
        pattern = StubMapping("Справочник.Прочее")
        exact = StubMapping("Справочник.Валюты")
        registry.register_mapping("Справочник.*", pattern)
        registry.register_mapping("Справочник.Валюты", exact)
        registry.register_mapping("Справочник.В*", StubMapping("Справочник.В"))
        registry.register_mapping("Документ.*", StubMapping("Документ.Прочее"))

        conflicts = registry.check_mapping_conflicts("Справочник.Валюты")

        assert [(c.type, c.pattern) for c in conflicts] == [
            ("exact", "Справочник.Валюты"),
            ("pattern", "Справочник.*"),
            ("pattern", "Справочник.В*"),
        ]
        assert conflicts[0].to_dict()["mapping"] is exact

    def test_mapping_with_conflicts(self, registry):
        """Test the combined lookup report."""
        mapping = StubMapping("Справочник.Контрагенты")
        registry.register_mapping("Справочник.Контрагенты", mapping)

        report = registry.mapping_with_conflicts("Справочник.Контрагенты")

        assert report["mapping"] is mapping
        assert len(report["conflicts"]) == 1
        assert report["is_priority"] is True


class TestDefaultRegistry:
    """Test the production registry."""

    def test_every_mapping_registered(self):
        """Test concrete mappings are registered under their object types."""
        registry = default_registry()

        assert registry.frozen
        assert len(registry) == len(ALL_MAPPINGS)
        assert isinstance(registry.get_mapping("Справочник.Контрагенты"), CounterpartyMapping)
        assert isinstance(registry.get_mapping("Справочник.Организации"), OrganizationMapping)

    def test_model_classes_exist(self):
        """Test the registry validates apart from priority gaps."""
        result = default_registry().validate_registry()

        assert result.is_valid()
        assert result.has_warning_containing("Справочник.Пользователи")
        assert "Справочник.Контрагенты" in PRIORITY_TYPES
