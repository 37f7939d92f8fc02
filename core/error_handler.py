"""
core/error_handler.py -- Turns any exception into the uniform error envelope.

Every failure, typed or not, goes through ErrorHandler.handle(), which:
  1. classifies it into one ErrorCode + HTTP status,
  2. picks the client message (verbatim for validation / rate limit,
     generic for authentication, fixed for storage / internal),
  3. redacts the message and data (core.errors.redact),
  4. assigns a correlation id  err_YYYYMMDD_<12 hex>,
  5. logs the UNREDACTED detail under that id, and for 5xx errors also
     persists it to the error_log table for later lookup.

Envelope:
    {"success": false,
     "error": {"code": "...", "message": "...", "timestamp": "...",
               "data": {"error_id": "...", ...}}}

A failure of the error log itself is logged and otherwise ignored: it must
never replace the error being reported.

Layer rule: core/ is the kernel. No imports from api/, auth/, or security/.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi.exceptions import RequestValidationError
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.config import Settings, get_settings
from core.db import make_engine
from core.errors import (
    GENERIC_AUTH_MESSAGE,
    GENERIC_DATABASE_MESSAGE,
    GENERIC_INTERNAL_MESSAGE,
    HTTP_STATUS,
    AppError,
    ErrorCode,
    redact,
    redact_data,
)

logger = logging.getLogger("ledgerguard.errors")
security_logger = logging.getLogger("ledgerguard.security")

_RAW_DETAIL_LIMIT = 8000

# Database error text that suggests attacker-controlled input reached the SQL
# layer. Matches are reported as security incidents in addition to the error.
_SQL_INJECTION_SIGNATURES = re.compile(
    r"syntax error|unterminated quoted string|unrecognized token|near \"|union\s+select"
    r"|error in your sql syntax|'\s*or\s*'?1'?\s*=\s*'?1",
    re.IGNORECASE,
)

_HTTP_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTH_FAILED,
    403: ErrorCode.ACCESS_DENIED,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.NOT_FOUND,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}

_AUTH_CODES = frozenset({ErrorCode.AUTH_FAILED, ErrorCode.INVALID_TOKEN})


def new_error_id(now: datetime | None = None) -> str:
    """Return a correlation id such as err_20260118_3f9a0c1b2d4e."""
    now = now or datetime.now(timezone.utc)
    return f"err_{now:%Y%m%d}_{secrets.token_hex(6)}"


# ---------------------------------------------------------------------------
# Error log
# ---------------------------------------------------------------------------

_metadata = MetaData()

_error_log = Table(
    "error_log",
    _metadata,
    Column("error_id", String(32), primary_key=True),
    Column("timestamp", String(32), nullable=False, index=True),
    Column("classification", String(32), nullable=False),
    Column("status", Integer, nullable=False),
    Column("redacted_message", Text, nullable=False),
    Column("raw_detail", Text, nullable=False),
    Column("context", Text, nullable=False, server_default="{}"),  # JSON object
)


@dataclass
class ErrorRecord:
    error_id: str
    timestamp: str
    classification: str
    status: int
    redacted_message: str
    raw_detail: str
    context: dict[str, Any] = field(default_factory=dict)


class ErrorLogStore:
    """Append-only server-side log of unredacted error detail, keyed by correlation id.

    Usage:
        log = ErrorLogStore()
        log.append(record)
        log.get("err_20260118_3f9a0c1b2d4e")
        log.stats(hours=24)
        log.purge_expired(days=30)
    """

    def __init__(self, db_url: str | None = None) -> None:
        self.engine: Engine = make_engine(db_url or get_settings().database_url)
        _metadata.create_all(self.engine)

    def append(self, record: ErrorRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _error_log.insert().values(
                    error_id=record.error_id,
                    timestamp=record.timestamp,
                    classification=record.classification,
                    status=record.status,
                    redacted_message=record.redacted_message,
                    raw_detail=record.raw_detail,
                    context=json.dumps(record.context, default=str),
                )
            )

    def get(self, error_id: str) -> ErrorRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_error_log.select().where(_error_log.c.error_id == error_id)).fetchone()
        return _row_to_record(row) if row is not None else None

    def stats(self, hours: int = 24, now: datetime | None = None) -> dict[str, Any]:
        """Count errors per classification over the last hours."""
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(hours=hours)).isoformat()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_error_log.c.classification, func.count())
                .where(_error_log.c.timestamp >= since)
                .group_by(_error_log.c.classification)
            ).fetchall()
        by_code = {classification: count for classification, count in rows}
        return {
            "hours": hours,
            "since": since,
            "total": sum(by_code.values()),
            "by_classification": by_code,
        }

    def purge_expired(self, days: int, now: datetime | None = None) -> int:
        """Delete records older than days. Returns number of rows removed."""
        now = now or datetime.now(timezone.utc)
        cutoff = (now - timedelta(days=days)).isoformat()
        with self.engine.begin() as conn:
            result = conn.execute(_error_log.delete().where(_error_log.c.timestamp < cutoff))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_record(row) -> ErrorRecord:
    try:
        context = json.loads(row.context or "{}")
    except ValueError:
        context = {}
    return ErrorRecord(
        error_id=row.error_id,
        timestamp=row.timestamp,
        classification=row.classification,
        status=row.status,
        redacted_message=row.redacted_message,
        raw_detail=row.raw_detail,
        context=context,
    )


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorOutcome:
    """What the HTTP layer sends back: status, JSON body, extra headers."""

    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class _Classified:
    code: ErrorCode
    status: int
    message: str
    raw_detail: str
    data: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)


class ErrorHandler:
    """Classifies, redacts, logs and renders errors.

    Usage:
        handler = ErrorHandler(ErrorLogStore())
        outcome = handler.handle(exc, {"method": "POST", "path": "/api/v1/auth/login"})
        return JSONResponse(outcome.body, status_code=outcome.status, headers=outcome.headers)
    """

    def __init__(
        self,
        log_store: ErrorLogStore | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._log_store = log_store
        self._settings = settings or get_settings()
        self._clock = clock

    def handle(self, exc: BaseException, context: dict[str, Any] | None = None) -> ErrorOutcome:
        context = dict(context or {})
        now = self._clock()
        error_id = new_error_id(now)
        classified = self._classify(exc)

        max_length = self._settings.error_message_max_length
        message = redact(classified.message, max_length)
        data = redact_data(classified.data, max_length)
        data["error_id"] = error_id

        self._record(error_id, now, classified, message, context, exc)

        body = {
            "success": False,
            "error": {
                "code": classified.code.value,
                "message": message,
                "timestamp": now.isoformat(),
                "data": data,
            },
        }
        return ErrorOutcome(status=classified.status, body=body, headers=dict(classified.headers))

    def lookup(self, error_id: str) -> ErrorRecord | None:
        if self._log_store is None:
            return None
        return self._log_store.get(error_id)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _classify(self, exc: BaseException) -> _Classified:
        if isinstance(exc, AppError):
            message = GENERIC_AUTH_MESSAGE if exc.code in _AUTH_CODES else exc.message
            return _Classified(
                code=exc.code,
                status=exc.status_code,
                message=message,
                raw_detail=exc.detail or exc.message,
                data=dict(exc.data),
                headers=dict(exc.headers),
            )

        if isinstance(exc, SQLAlchemyError):
            return _Classified(
                code=ErrorCode.DATABASE_ERROR,
                status=HTTP_STATUS[ErrorCode.DATABASE_ERROR],
                message=GENERIC_DATABASE_MESSAGE,
                raw_detail=_describe(exc),
            )

        if isinstance(exc, RequestValidationError):
            errors: dict[str, str] = {}
            for err in exc.errors():
                loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
                errors.setdefault(".".join(loc) or "request", str(err.get("msg", "Invalid value.")))
            return _Classified(
                code=ErrorCode.VALIDATION_ERROR,
                status=HTTP_STATUS[ErrorCode.VALIDATION_ERROR],
                message="Validation failed.",
                raw_detail=str(exc.errors()),
                data={"validation_errors": errors},
            )

        if isinstance(exc, StarletteHTTPException):
            status = exc.status_code
            code = _HTTP_STATUS_CODES.get(status)
            if code is None:
                code = ErrorCode.INTERNAL_ERROR if status >= 500 else ErrorCode.VALIDATION_ERROR
            if code in _AUTH_CODES:
                message = GENERIC_AUTH_MESSAGE
            elif status >= 500:
                message = GENERIC_INTERNAL_MESSAGE
            else:
                message = str(exc.detail)
            return _Classified(
                code=code,
                status=status,
                message=message,
                raw_detail=f"HTTP {status}: {exc.detail}",
                headers=dict(exc.headers or {}),
            )

        return _Classified(
            code=ErrorCode.INTERNAL_ERROR,
            status=HTTP_STATUS[ErrorCode.INTERNAL_ERROR],
            message=GENERIC_INTERNAL_MESSAGE,
            raw_detail=_describe(exc),
        )

    # ------------------------------------------------------------------
    # Logging and persistence
    # ------------------------------------------------------------------

    def _record(
        self,
        error_id: str,
        now: datetime,
        classified: _Classified,
        message: str,
        context: dict[str, Any],
        exc: BaseException,
    ) -> None:
        code = classified.code.value
        if classified.status < 500:
            logger.info("[%s] %s %d: %s", error_id, code, classified.status, classified.raw_detail)
            return

        logger.error(
            "[%s] %s %d on %s %s: %s",
            error_id,
            code,
            classified.status,
            context.get("method", "-"),
            context.get("path", "-"),
            classified.raw_detail,
        )
        if classified.code is ErrorCode.DATABASE_ERROR and _SQL_INJECTION_SIGNATURES.search(classified.raw_detail):
            security_logger.critical(
                "Security incident: possible SQL injection error_id=%s client=%s path=%s",
                error_id,
                context.get("client", "-"),
                context.get("path", "-"),
            )
        if self._log_store is None:
            return

        raw = classified.raw_detail
        if exc.__traceback__ is not None:
            raw = raw + "\n" + "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        record = ErrorRecord(
            error_id=error_id,
            timestamp=now.isoformat(),
            classification=code,
            status=classified.status,
            redacted_message=message,
            raw_detail=raw[:_RAW_DETAIL_LIMIT],
            context=context,
        )
        try:
            self._log_store.append(record)
        except SQLAlchemyError as log_exc:
            logger.error("[%s] error log unavailable (%s); detail kept in this log only", error_id, log_exc)

    def purge_expired(self) -> int:
        if self._log_store is None:
            return 0
        removed = self._log_store.purge_expired(self._settings.error_log_retention_days, self._clock())
        if removed:
            logger.info("Error log sweep removed %d records", removed)
        return removed


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
