"""
API response models for LedgerGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
core/error_handler.py, which own the internal representation. Route handlers
map between the two.

Request bodies are NOT modelled here: they are plain JSON objects (or form
fields) checked by core.validation so every field error uses the same
VALIDATION_ERROR envelope and the same injection screen.

Separation of concerns: auth/ and core/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorBody(BaseModel):
    """Machine-readable error payload. data always carries error_id."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    timestamp: str
    data: Optional[dict[str, Any]] = None


class ErrorEnvelope(BaseModel):
    """Top-level error envelope returned on every 4xx/5xx response."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: ErrorBody


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
    signing_secret: str = "ok"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class CsrfTokenResponse(BaseModel):
    """Response for GET /api/v1/auth/csrf."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    csrf_token: str
    csrf_header: str
    expires_in: int


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login. The token is also set as an httpOnly cookie."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: int
    email: str
    role: str


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    user_id: int
    email: str
    role: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class MeResponse(BaseModel):
    """Identity of the caller as re-validated against the principal store."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    user_id: int
    email: str
    role: str
    expires_at: int


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class SecretRotationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    version: int
    message: str = "Signing secret rotated. Previously issued tokens are no longer valid."


class SecurityStatusResponse(BaseModel):
    """Monitoring snapshot for GET /api/v1/admin/security/status."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    signing_secret_degraded: bool
    signing_secret_version: Optional[int] = None
    rate_limits: dict[str, Any]
    csrf: dict[str, Any]
    errors: dict[str, Any] = Field(default_factory=dict)


class ErrorRecordResponse(BaseModel):
    """Redacted view of one error log record. The raw detail stays server-side."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    error_id: str
    timestamp: str
    classification: str
    status: int
    message: str
    context: dict[str, Any] = Field(default_factory=dict)
