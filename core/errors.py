"""
core/errors.py -- Stable error taxonomy, typed exceptions, and message redaction.

Every failure that reaches a client is expressed as one ErrorCode plus an HTTP
status. Route and guard code raises AppError subclasses; the ErrorHandler in
core/error_handler.py turns any exception (typed or not) into the uniform
envelope. This module holds no I/O so it can be imported from anywhere.

Message safety rules:
  - Validation and rate-limit messages are client-fixable and non-sensitive:
    returned as written (still passed through redact()).
  - Authentication failures always use one generic message, whatever the
    root cause, so responses cannot be used as an oracle.
  - Storage and internal errors never return their own text; the handler
    substitutes a fixed message and a correlation id.

redact() is the last line of defence applied to every client-visible string.

Layer rule: core/ is the kernel. No imports from api/, auth/, or security/.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    AUTH_FAILED = "AUTH_FAILED"
    INVALID_TOKEN = "INVALID_TOKEN"
    ACCESS_DENIED = "ACCESS_DENIED"
    CSRF_TOKEN_REQUIRED = "CSRF_TOKEN_REQUIRED"
    CSRF_TOKEN_INVALID = "CSRF_TOKEN_INVALID"
    NOT_FOUND = "NOT_FOUND"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"


HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.AUTH_FAILED: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.CSRF_TOKEN_REQUIRED: 403,
    ErrorCode.CSRF_TOKEN_INVALID: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PAYLOAD_TOO_LARGE: 413,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
}

GENERIC_AUTH_MESSAGE = "Authentication failed."
GENERIC_DATABASE_MESSAGE = "Database operation failed."
GENERIC_INTERNAL_MESSAGE = "An internal error occurred."


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AppError(Exception):
    """Base class for failures with a stable, client-safe classification.

    message is what the client may see (after redaction). detail is the
    server-only explanation written to the error log; it never leaves the
    process. data carries structured, non-sensitive extras for the envelope
    and headers carries response headers (Retry-After etc).
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    default_message: str = GENERIC_INTERNAL_MESSAGE

    def __init__(
        self,
        message: str | None = None,
        *,
        detail: str | None = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.detail = detail
        self.data = data or {}
        self.headers = headers or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.code]


class ValidationFailed(AppError):
    """One or more input fields failed validation. errors maps field -> message."""

    code = ErrorCode.VALIDATION_ERROR
    default_message = "Validation failed."

    def __init__(self, errors: dict[str, str], message: str | None = None) -> None:
        self.errors = dict(errors)
        super().__init__(message, data={"validation_errors": self.errors})


class AuthenticationFailed(AppError):
    code = ErrorCode.AUTH_FAILED
    default_message = GENERIC_AUTH_MESSAGE

    def __init__(self, detail: str | None = None) -> None:
        # The caller's text is treated as detail only -- the client message is fixed.
        super().__init__(GENERIC_AUTH_MESSAGE, detail=detail)


class InvalidToken(AuthenticationFailed):
    code = ErrorCode.INVALID_TOKEN


class AccessDenied(AppError):
    code = ErrorCode.ACCESS_DENIED
    default_message = "Access denied."


class NotFound(AppError):
    code = ErrorCode.NOT_FOUND
    default_message = "Resource not found."


class PayloadTooLarge(AppError):
    code = ErrorCode.PAYLOAD_TOO_LARGE
    default_message = "Request body is too large."

    def __init__(self, limit: int, detail: str | None = None) -> None:
        self.limit = limit
        super().__init__(detail=detail, data={"max_bytes": limit})


class CsrfRejected(AppError):
    """CSRF check failed. required=True means no token was presented at all."""

    default_message = "Invalid or missing CSRF token."

    def __init__(self, required: bool = False, detail: str | None = None) -> None:
        self.code = ErrorCode.CSRF_TOKEN_REQUIRED if required else ErrorCode.CSRF_TOKEN_INVALID
        super().__init__(detail=detail)


class RateLimited(AppError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_message = "Too many requests. Please try again later."

    def __init__(self, limit: int, window: int, retry_after: int, reset_at: int, scope: str = "") -> None:
        self.limit = limit
        self.window = window
        self.retry_after = retry_after
        self.reset_at = reset_at
        super().__init__(
            detail=f"scope={scope} limit={limit} window={window}s",
            data={"limit": limit, "window": window, "retry_after": retry_after},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(reset_at),
            },
        )


class ServiceUnavailable(AppError):
    """Blanket throttling after a distributed-attack detection."""

    code = ErrorCode.SERVICE_UNAVAILABLE
    default_message = "High traffic detected. Please try again later."

    def __init__(self, retry_after: int, detail: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(
            detail=detail,
            data={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

# Order matters: whole SQL statements and DSNs are removed before the finer
# key=value and path patterns get a chance to split them up.
_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    # SQLAlchemy decorates DBAPI errors with the statement, bound parameters
    # and a documentation link.
    (re.compile(r"\[SQL:.*?\]", re.DOTALL), "[QUERY]"),
    (re.compile(r"\[parameters:.*?\]", re.DOTALL), "[PARAMETERS]"),
    (re.compile(r"\(Background on this error at:[^)]*\)"), ""),
    (
        re.compile(
            r"\b(?:SELECT\b.+?\bFROM|INSERT\s+(?:OR\s+\w+\s+)?INTO|UPDATE\s+\S+\s+SET|DELETE\s+FROM"
            r"|DROP\s+TABLE|CREATE\s+(?:TABLE|INDEX)|ALTER\s+TABLE|PRAGMA\s+\w+)\b.*",
            re.IGNORECASE | re.DOTALL,
        ),
        "[QUERY]",
    ),
    (re.compile(r"\b[a-zA-Z][a-zA-Z0-9+.\-]*://[^\s'\"<>]+"), "[CONNECTION]"),
    (
        re.compile(
            r"\b(host|hostaddr|port|user|username|password|passwd|pwd|dbname|secret|token|api_key|key)"
            r"\s*[=:]\s*[^\s;,'\"]+",
            re.IGNORECASE,
        ),
        r"\1=[REDACTED]",
    ),
    (re.compile(r"\b[A-Za-z]:\\[^\s'\"<>]+"), "[FILE_PATH]"),
    (re.compile(r"(?<![\w/:.])/(?:[\w.\-]+/)+[\w.\-]*"), "[FILE_PATH]"),
    (re.compile(r"\b[\w\-]+\.(?:py|pyc|php|db|sqlite3?|log|ini|env|cfg|conf|pem|key)\b"), "[FILE_PATH]"),
    # Long hex or base64url runs: signing secrets, bearer tokens, CSRF values.
    (re.compile(r"[A-Za-z0-9_\-+/]{32,}={0,2}(?:\.[A-Za-z0-9_\-]+){0,2}"), "[REDACTED]"),
]


def redact(message: str, max_length: int = 200) -> str:
    """Strip paths, connection details, credentials, SQL and secrets from message.

    The result is truncated to max_length characters (ending in "..." when
    cut) so a single error can never echo an unbounded payload.
    """
    text = str(message)
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    text = " ".join(text.split())
    if len(text) > max_length:
        text = text[: max_length - 3] + "..."
    return text


def redact_data(data: dict[str, Any], max_length: int = 200) -> dict[str, Any]:
    """Apply redact() to every string value in data (one level of nesting deep).

    Keys that name credentials are replaced outright regardless of value.
    """
    sensitive_keys = {"password", "token", "secret", "key", "signing_secret", "csrf_token"}
    cleaned: dict[str, Any] = {}
    for key, value in data.items():
        if key.lower() in sensitive_keys:
            cleaned[key] = "[REDACTED]"
        elif isinstance(value, str):
            cleaned[key] = redact(value, max_length)
        elif isinstance(value, dict):
            cleaned[key] = {
                k: redact(v, max_length) if isinstance(v, str) else v for k, v in value.items()
            }
        else:
            cleaned[key] = value
    return cleaned
