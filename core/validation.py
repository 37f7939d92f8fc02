"""
core/validation.py -- Declarative input validation with typed rule descriptors.

A schema maps field name -> rule. Each rule is a frozen dataclass whose type
IS the field kind, so a rule can only carry the constraints that make sense
for it (a TextRule has max_length/allowed_chars, an IntegerRule has min/max):

    schema = {
        "email": EmailRule(),
        "name": TextRule(max_length=100),
        "amount": NumericRule(min=0, max=1_000_000),
        "start": DateRule(required=False),
    }
    result = validate(payload, schema)
    if not result.ok:
        result.raise_for_errors()   # -> ValidationFailed (400)
    amount = result.values["amount"]  # float

validate() never raises for bad user input. It visits every field and
collects one message per failing field so the client can fix everything in
one round trip. Exceptions are reserved for programming errors.

Strings are also screened for script/markup and SQL injection signatures.
This is defence in depth only: the persistence layer still binds every
parameter. Detections are logged (truncated) for the security team.

Error messages never echo the submitted value.

Layer rule: core/ is the kernel. No imports from api/, auth/, or security/.
"""

from __future__ import annotations

import html
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar
from urllib.parse import urlparse

from email_validator import EmailNotValidError, validate_email

from core.errors import ValidationFailed

logger = logging.getLogger("ledgerguard.security")

# ---------------------------------------------------------------------------
# Injection signatures
# ---------------------------------------------------------------------------

_MARKUP_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE | re.MULTILINE),
    re.compile(r"<script\b", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"\bon(?:load|error|click|mouseover|focus|submit)\s*=", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
    re.compile(r"<object", re.IGNORECASE),
    re.compile(r"<embed", re.IGNORECASE),
]

_SQL_PATTERNS = [
    re.compile(r"\b(?:UNION|SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|EXECUTE)\s+", re.IGNORECASE),
    re.compile(r"\b(?:OR|AND)\s+\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"\b(?:OR|AND)\s+'[^']*'\s*=\s*'", re.IGNORECASE),
    re.compile(r";\s*(?:--|#)"),
    re.compile(r"/\*.*?\*/", re.DOTALL),
    re.compile(r"'\s*--"),
]

WEAK_PASSWORDS = frozenset(
    {
        "password",
        "12345678",
        "qwerty123",
        "abc123456",
        "password123",
        "password1!",
        "admin123",
        "welcome123",
        "letmein123",
        "iloveyou1",
    }
)

_FILENAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")

# Human-readable rendering of strptime formats for error messages.
_FORMAT_TOKENS = {"%Y": "YYYY", "%m": "MM", "%d": "DD", "%H": "HH", "%M": "MM", "%S": "SS"}


# ---------------------------------------------------------------------------
# Rule descriptors
# ---------------------------------------------------------------------------


class FieldKind(str, Enum):
    EMAIL = "email"
    TEXT = "bounded-text"
    NUMERIC = "numeric"
    INTEGER = "integer"
    DATE = "date"
    PASSWORD = "password"
    URL = "url"
    FILENAME = "filename"


@dataclass(frozen=True)
class EmailRule:
    kind: ClassVar[FieldKind] = FieldKind.EMAIL
    required: bool = True
    max_length: int = 254


@dataclass(frozen=True)
class TextRule:
    """Bounded free text. allowed_chars is a regex the whole value must match."""

    kind: ClassVar[FieldKind] = FieldKind.TEXT
    required: bool = True
    max_length: int = 255
    allowed_chars: str | None = None
    escape_html: bool = True


@dataclass(frozen=True)
class NumericRule:
    kind: ClassVar[FieldKind] = FieldKind.NUMERIC
    required: bool = True
    min: float | None = None
    max: float | None = None


@dataclass(frozen=True)
class IntegerRule:
    kind: ClassVar[FieldKind] = FieldKind.INTEGER
    required: bool = True
    min: int | None = None
    max: int | None = None


@dataclass(frozen=True)
class DateRule:
    kind: ClassVar[FieldKind] = FieldKind.DATE
    required: bool = True
    format: str = "%Y-%m-%d"


@dataclass(frozen=True)
class PasswordRule:
    """Password complexity. Passwords are always required and never escaped.

    complexity=False keeps only the length bounds, for login forms that must
    accept passwords chosen under an older policy.
    """

    kind: ClassVar[FieldKind] = FieldKind.PASSWORD
    required: bool = True
    min_length: int = 8
    max_length: int = 128
    complexity: bool = True


@dataclass(frozen=True)
class UrlRule:
    kind: ClassVar[FieldKind] = FieldKind.URL
    required: bool = True
    max_length: int = 2048
    allowed_schemes: tuple[str, ...] = ("http", "https")


@dataclass(frozen=True)
class FilenameRule:
    kind: ClassVar[FieldKind] = FieldKind.FILENAME
    required: bool = True
    allowed_extensions: tuple[str, ...] = ()
    max_length: int = 255


Rule = EmailRule | TextRule | NumericRule | IntegerRule | DateRule | PasswordRule | UrlRule | FilenameRule


# ---------------------------------------------------------------------------
# Result collector
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """Typed values for fields that passed, one message per field that failed.

    Optional fields that were absent appear in values as None.
    """

    values: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationFailed(self.errors)


class _FieldError(Exception):
    """Internal signal from a field checker to validate(). Never escapes this module."""


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def validate(data: dict[str, Any] | None, schema: dict[str, Rule]) -> ValidationResult:
    """Validate data against schema, collecting every field error.

    Fields present in data but absent from schema are dropped from the
    result -- only declared fields reach the business layer.
    """
    data = data or {}
    result = ValidationResult()
    for name, rule in schema.items():
        raw = data.get(name)
        if _is_blank(raw):
            if rule.required or isinstance(rule, PasswordRule):
                result.errors[name] = f"{_label(name)} is required."
            else:
                result.values[name] = None
            continue
        try:
            result.values[name] = _CHECKERS[rule.kind](name, raw, rule)
        except _FieldError as exc:
            result.errors[name] = str(exc)
    return result


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def _label(name: str) -> str:
    return name.replace("_", " ").capitalize()


def _require_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise _FieldError(f"{_label(name)} must be a string.")
    return value


def screen_injection(name: str, value: str, sql: bool = True) -> None:
    """Raise _FieldError if value carries markup or SQL injection signatures."""
    patterns = _MARKUP_PATTERNS + (_SQL_PATTERNS if sql else [])
    for pattern in patterns:
        if pattern.search(value):
            logger.warning("Injection signature in field %r: %r", name, value[:100])
            raise _FieldError(f"{_label(name)} contains invalid characters.")


def _check_email(name: str, value: Any, rule: EmailRule) -> str:
    text = _require_str(name, value).strip()
    if len(text) > rule.max_length:
        raise _FieldError(f"{_label(name)} is too long.")
    try:
        normalized = validate_email(text, check_deliverability=False).normalized
    except EmailNotValidError:
        raise _FieldError(f"{_label(name)} is not a valid email address.") from None
    screen_injection(name, normalized, sql=False)
    return normalized


def _check_text(name: str, value: Any, rule: TextRule) -> str:
    text = _require_str(name, value).strip()
    if len(text) > rule.max_length:
        raise _FieldError(f"{_label(name)} exceeds maximum length of {rule.max_length} characters.")
    screen_injection(name, text)
    if rule.allowed_chars and not re.fullmatch(rule.allowed_chars, text):
        raise _FieldError(f"{_label(name)} contains invalid characters.")
    return html.escape(text, quote=True) if rule.escape_html else text


def _to_number(name: str, value: Any) -> float:
    # bool is an int subclass; True is not a meaningful amount.
    if isinstance(value, bool):
        raise _FieldError(f"{_label(name)} must be numeric.")
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            # JSON integers are unbounded; 10**400 has no float value.
            raise _FieldError(f"{_label(name)} must be numeric.") from None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except (ValueError, OverflowError):
            raise _FieldError(f"{_label(name)} must be numeric.") from None
    else:
        raise _FieldError(f"{_label(name)} must be numeric.")
    if not math.isfinite(number):
        raise _FieldError(f"{_label(name)} must be numeric.")
    return number


def _check_bounds(name: str, number: float, low: float | None, high: float | None) -> None:
    if low is not None and number < low:
        raise _FieldError(f"{_label(name)} must be at least {low:g}.")
    if high is not None and number > high:
        raise _FieldError(f"{_label(name)} must not exceed {high:g}.")


def _check_numeric(name: str, value: Any, rule: NumericRule) -> float:
    number = _to_number(name, value)
    _check_bounds(name, number, rule.min, rule.max)
    return number


def _check_integer(name: str, value: Any, rule: IntegerRule) -> int:
    number = _to_number(name, value)
    if not number.is_integer():
        raise _FieldError(f"{_label(name)} must be an integer.")
    integer = int(value) if isinstance(value, int) else int(number)
    _check_bounds(name, integer, rule.min, rule.max)
    return integer


def _check_date(name: str, value: Any, rule: DateRule) -> str:
    text = _require_str(name, value).strip()
    human = rule.format
    for token, rendering in _FORMAT_TOKENS.items():
        human = human.replace(token, rendering)
    try:
        parsed = datetime.strptime(text, rule.format)
    except ValueError:
        raise _FieldError(f"{_label(name)} must be in {human} format.") from None
    # strptime accepts "2024-1-5" for %m/%d; require the canonical rendering.
    if parsed.strftime(rule.format) != text:
        raise _FieldError(f"{_label(name)} must be in {human} format.")
    return text


def _check_password(name: str, value: Any, rule: PasswordRule) -> str:
    text = _require_str(name, value)
    if len(text) < rule.min_length:
        raise _FieldError(f"{_label(name)} must be at least {rule.min_length} characters long.")
    if len(text) > rule.max_length:
        raise _FieldError(f"{_label(name)} must not exceed {rule.max_length} characters.")
    if not rule.complexity:
        return text
    if not re.search(r"[A-Z]", text):
        raise _FieldError(f"{_label(name)} must contain at least one uppercase letter.")
    if not re.search(r"[a-z]", text):
        raise _FieldError(f"{_label(name)} must contain at least one lowercase letter.")
    if not re.search(r"[0-9]", text):
        raise _FieldError(f"{_label(name)} must contain at least one number.")
    if not re.search(r"[^A-Za-z0-9]", text):
        raise _FieldError(f"{_label(name)} must contain at least one special character.")
    if text.lower() in WEAK_PASSWORDS:
        raise _FieldError(f"{_label(name)} is too common.")
    return text


def _check_url(name: str, value: Any, rule: UrlRule) -> str:
    text = _require_str(name, value).strip()
    if len(text) > rule.max_length:
        raise _FieldError(f"{_label(name)} is too long.")
    screen_injection(name, text, sql=False)
    parsed = urlparse(text)
    if parsed.scheme.lower() not in rule.allowed_schemes:
        raise _FieldError(f"{_label(name)} must use one of: {', '.join(rule.allowed_schemes)}.")
    if not parsed.netloc or any(ch.isspace() for ch in text):
        raise _FieldError(f"{_label(name)} is not a valid URL.")
    return text


def _check_filename(name: str, value: Any, rule: FilenameRule) -> str:
    text = _require_str(name, value).strip()
    # Drop any directory component, whichever separator the client used.
    base = re.split(r"[\\/]", text)[-1]
    if not base or base in (".", ".."):
        raise _FieldError(f"{_label(name)} is required.")
    if not _FILENAME_RE.match(base):
        raise _FieldError(f"{_label(name)} contains invalid characters.")
    if rule.allowed_extensions:
        extension = base.rsplit(".", 1)[-1].lower() if "." in base else ""
        if extension not in {ext.lower().lstrip(".") for ext in rule.allowed_extensions}:
            raise _FieldError(f"{_label(name)} file type is not allowed.")
    if len(base) > rule.max_length:
        raise _FieldError(f"{_label(name)} is too long.")
    return base


_CHECKERS = {
    FieldKind.EMAIL: _check_email,
    FieldKind.TEXT: _check_text,
    FieldKind.NUMERIC: _check_numeric,
    FieldKind.INTEGER: _check_integer,
    FieldKind.DATE: _check_date,
    FieldKind.PASSWORD: _check_password,
    FieldKind.URL: _check_url,
    FieldKind.FILENAME: _check_filename,
}
