"""Immutable outcome of a structural or semantic check."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


def _freeze_context(context: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(context or {}))


@dataclass(frozen=True)
class ValidationResult:
    """Validity flag plus ordered errors, ordered warnings and a context map.

    Instances never change: every ``add_*``/``merge`` call returns a new
    result. ``valid`` is False exactly when ``errors`` is non-empty.
    """

    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    context: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    # Compared by value but not hashable: the context is a read-only mapping
    __hash__ = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        object.__setattr__(self, "errors", tuple(self.errors))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        object.__setattr__(self, "context", _freeze_context(self.context))

    # Construction

    @classmethod
    def success(cls, warnings: Iterable[str] = ()) -> ValidationResult:
        return cls(warnings=tuple(warnings))

    @classmethod
    def failure(
        cls,
        errors: Iterable[str],
        warnings: Iterable[str] = (),
        context: Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        """Build a failed result.

        Args:
            errors: Error messages; an empty iterable yields a valid result.
            warnings: Warning messages.
            context: Extra diagnostic values.
        """
        return cls(errors=tuple(errors), warnings=tuple(warnings), context=context or {})

    @classmethod
    def with_single_error(cls, error: str) -> ValidationResult:
        return cls(errors=(error,))

    @classmethod
    def with_single_warning(cls, warning: str) -> ValidationResult:
        return cls(warnings=(warning,))

    @classmethod
    def empty(cls) -> ValidationResult:
        return cls()

    @classmethod
    def when(cls, condition: bool, error: str) -> ValidationResult:
        """Fail with ``error`` unless ``condition`` holds."""
        return cls.empty() if condition else cls.with_single_error(error)

    @classmethod
    def from_conditions(
        cls, conditions: Iterable[tuple[bool, str]] | Mapping[bool, str]
    ) -> ValidationResult:
        """Collect the messages of every condition that is False.

        Args:
            conditions: Ordered ``(condition, message)`` pairs or a mapping.

        Returns:
            Result whose errors keep the order of the failed conditions.
        """
        pairs = conditions.items() if isinstance(conditions, Mapping) else conditions
        return cls(errors=tuple(message for ok, message in pairs if not ok))

    @classmethod
    def from_exception(cls, exc: BaseException) -> ValidationResult:
        return cls(
            errors=(str(exc) or exc.__class__.__name__,),
            context={"exception": exc.__class__.__name__},
        )

    # State

    @property
    def valid(self) -> bool:
        return not self.errors

    def is_valid(self) -> bool:
        return self.valid

    def has_errors(self) -> bool:
        return bool(self.errors)

    def has_warnings(self) -> bool:
        return bool(self.warnings)

    # Derivation

    def merge(self, other: ValidationResult) -> ValidationResult:
        """Combine two results; valid only if both are.

        Context keys from ``other`` win on collision.
        """
        return ValidationResult(
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
            context={**self.context, **other.context},
        )

    def add_error(self, error: str) -> ValidationResult:
        return ValidationResult(self.errors + (error,), self.warnings, self.context)

    def add_warning(self, warning: str) -> ValidationResult:
        return ValidationResult(self.errors, self.warnings + (warning,), self.context)

    def add_context(self, key: str, value: Any) -> ValidationResult:
        return ValidationResult(self.errors, self.warnings, {**self.context, key: value})

    def add_context_dict(self, values: Mapping[str, Any]) -> ValidationResult:
        return ValidationResult(self.errors, self.warnings, {**self.context, **values})

    # Queries

    def errors_containing(self, needle: str) -> list[str]:
        return [e for e in self.errors if needle in e]

    def warnings_containing(self, needle: str) -> list[str]:
        return [w for w in self.warnings if needle in w]

    def has_error(self, error: str) -> bool:
        return error in self.errors

    def has_error_containing(self, needle: str) -> bool:
        return bool(self.errors_containing(needle))

    def has_warning(self, warning: str) -> bool:
        return warning in self.warnings

    def has_warning_containing(self, needle: str) -> bool:
        return bool(self.warnings_containing(needle))

    def first_error(self) -> str | None:
        return self.errors[0] if self.errors else None

    def first_warning(self) -> str | None:
        return self.warnings[0] if self.warnings else None

    def context_value(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)

    # Presentation

    def summary(self) -> str:
        """One-line description.

        Returns:
            "Valid", "Valid with N warning(s)" or
            "Invalid: N error(s), M warning(s)" (the warning part only when
            there are warnings).
        """
        if self.valid:
            if self.warnings:
                return f"Valid with {len(self.warnings)} warning(s)"
            return "Valid"
        parts = [f"{len(self.errors)} error(s)"]
        if self.warnings:
            parts.append(f"{len(self.warnings)} warning(s)")
        return "Invalid: " + ", ".join(parts)

    def detailed_summary(self) -> str:
        lines = [self.summary()]
        if self.errors:
            lines.append("Errors:")
            lines.extend(f"  - {e}" for e in self.errors)
        if self.warnings:
            lines.append("Warnings:")
            lines.extend(f"  - {w}" for w in self.warnings)
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "context": dict(self.context),
            "summary": self.summary(),
        }

    def __str__(self) -> str:
        return self.summary()

    # Callback hooks

    def on_success(self, callback: Callable[[ValidationResult], Any]) -> ValidationResult:
        if self.valid:
            callback(self)
        return self

    def on_failure(self, callback: Callable[[ValidationResult], Any]) -> ValidationResult:
        if not self.valid:
            callback(self)
        return self

    def on_warnings(self, callback: Callable[[ValidationResult], Any]) -> ValidationResult:
        if self.warnings:
            callback(self)
        return self
