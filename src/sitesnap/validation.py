"""
Pure validation functions for user-supplied snapshot input.

Validators never prompt and never raise; they return a ValidationResult that
the caller must inspect.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional

from .core.exceptions import ValidationError

SLUG_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class ValidationResult:
    """
    Outcome of validating one input value.

    Attributes:
        valid: Whether the value passed validation
        value: The normalized value (None when invalid)
        error: The validation error (None when valid)
    """
    valid: bool
    value: Optional[str] = None
    error: Optional[ValidationError] = None

    @classmethod
    def ok(cls, value: str) -> "ValidationResult":
        return cls(valid=True, value=value)

    @classmethod
    def fail(cls, message: str, field: str) -> "ValidationResult":
        return cls(valid=False, error=ValidationError(message, field=field, operation="validate"))

    def unwrap(self) -> str:
        """Return the value or raise the validation error."""
        if not self.valid:
            raise self.error
        return self.value


Validator = Callable[[Optional[str]], ValidationResult]


def validate_slug(value: Optional[str]) -> ValidationResult:
    """Project slugs may contain letters, numbers, _ and - only."""
    value = (value or "").strip()
    if not value:
        return ValidationResult.fail("Project slug is required.", field="project")
    if not SLUG_PATTERN.match(value):
        return ValidationResult.fail(
            f"Invalid project slug {value!r}: use letters, numbers, _, and - only.",
            field="project",
        )
    return ValidationResult.ok(value)


def validate_not_empty(value: Optional[str], field: str = "description") -> ValidationResult:
    value = (value or "").strip()
    if not value:
        return ValidationResult.fail(f"{field.capitalize()} cannot be empty.", field=field)
    return ValidationResult.ok(value)


def validate_description(value: Optional[str]) -> ValidationResult:
    return validate_not_empty(value, field="description")
