"""EnterpriseData object mapping: validation results, mappings and the registry."""

from exbridge.mapping.base import ObjectMapping
from exbridge.mapping.registry import (
    PRIORITY_TYPES,
    ExactMatcher,
    GlobMatcher,
    MappingConflict,
    ObjectMappingRegistry,
    default_registry,
)
from exbridge.mapping.resolver import ReferenceResolver
from exbridge.mapping.validation import ValidationResult

__all__ = [
    "PRIORITY_TYPES",
    "ExactMatcher",
    "GlobMatcher",
    "MappingConflict",
    "ObjectMapping",
    "ObjectMappingRegistry",
    "ReferenceResolver",
    "ValidationResult",
    "default_registry",
]
