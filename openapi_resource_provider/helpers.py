"""Shared helper functions and constants."""

import platform
import re
from typing import Any, Dict

PRODUCT_NAME = "openapi-resource-provider"
VERSION = "0.1.0"
# Populated by release builds.
BUILD_COMMIT = "dev"

# Mapping from OpenAPI types to configuration field types.
OPENAPI_TO_FIELD_TYPE_MAP = {
    "string": "string",
    "number": "number",
    "integer": "integer",
    "boolean": "boolean",
    "array": "list",
    "object": "object",
}

PRIMITIVE_TYPES = ("string", "integer", "number", "boolean")

REDACTED = "********"

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9_]")
_ACRONYM_BOUNDARY = re.compile(r"([A-Z]+)([A-Z][a-z])")
_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_DIGIT_THEN_LETTER = re.compile(r"(\d)(?=[A-Za-z])")
_LETTERS_THEN_DIGIT = re.compile(r"(?<![A-Za-z])([A-Za-z]+)(?=\d)")


def _split_letters_before_digits(match: re.Match) -> str:
    letters = match.group(1)
    # Version tokens such as 'v1' keep their digits attached.
    if letters.lower() == "v":
        return letters
    return letters + "_"


def to_snake_case(name: str) -> str:
    """Converts CamelCase, kebab-case and mixed names to snake_case.

    Digits form their own word ('foo12bar' -> 'foo_12_bar') unless they belong
    to a version token ('cdns_v1id' -> 'cdns_v1_id'). Existing underscores are
    kept as they are.
    """
    s1 = _NON_ALPHANUMERIC.sub("_", name)
    s1 = _ACRONYM_BOUNDARY.sub(r"\1_\2", s1)
    s1 = _CAMEL_BOUNDARY.sub(r"\1_\2", s1)
    s1 = _DIGIT_THEN_LETTER.sub(r"\1_", s1)
    s1 = _LETTERS_THEN_DIGIT.sub(_split_letters_before_digits, s1)
    return s1.lower()


def convert_name(name: str) -> str:
    """Returns the configuration-compliant form of an OpenAPI name."""
    return to_snake_case(name)


def user_agent() -> str:
    """Builds the User-Agent sent with every outgoing request."""
    system = platform.system().lower()
    machine = platform.machine().lower()
    return f"{PRODUCT_NAME}/{VERSION}-{BUILD_COMMIT} ({system}/{machine})"


def redact(values: Dict[str, Any], sensitive_keys) -> Dict[str, Any]:
    """Returns a shallow copy of `values` with sensitive keys masked."""
    return {
        key: (REDACTED if key in sensitive_keys and value is not None else value)
        for key, value in values.items()
    }


def is_true(value: Any) -> bool:
    """Interprets extension values that may be booleans or strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def split_csv(value: Any) -> list[str]:
    """Splits comma-separated extension values, ignoring blanks."""
    if not value:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [item.strip() for item in str(value).split(",") if item.strip()]


class ValidationErrorCollector:
    """A simple class to collect and report validation errors."""

    def __init__(self):
        self.errors = []

    def add_error(self, message: str):
        self.errors.append(message)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def summary(self, title: str) -> str:
        """Formats all collected errors as a numbered list under a title."""
        lines = [title]
        for i, error in enumerate(self.errors, 1):
            lines.append(f"  {i}. {error}")
        return "\n".join(lines)

    def raise_for_errors(self, exc_class, title: str):
        """Raises `exc_class` describing every collected error, if any exist."""
        if self.has_errors:
            raise exc_class(self.summary(title))
