"""
API request and response models for the identity service REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
integrations/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Session, User

# Deliberately loose: one "@" with something on both sides. Deliverability is
# not this service's concern.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    AGENT = "AGENT"
    COMPLIANCE = "COMPLIANCE"


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    max_length=128 keeps passwords well below bcrypt's 72-byte truncation
    point for typical input while still allowing long passphrases.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=128)
    role: RoleEnum


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh-token; the cookie is preferred."""

    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    role: str
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, email=user.email, role=user.role, last_login_at=user.last_login_at)


class SecurityAlertResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    locations: list[str]


class AuthResponse(BaseModel):
    """Response for login and register. The refresh token travels in an httpOnly cookie."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    security_alert: Optional[SecurityAlertResponse] = None


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    ip_address: str
    device: str
    browser: str
    os: str
    location: str
    created_at: datetime
    last_activity_at: datetime
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str] = None) -> "SessionResponse":
        return cls(
            id=session.id,
            ip_address=session.ip_address,
            device=session.device_class,
            browser=session.browser,
            os=session.os,
            location=session.approx_location,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            current=session.id == current_session_id,
        )


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionResponse]


class PermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    permissions: list[str]


class PermissionCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    permission: str
    granted: bool


# ---------------------------------------------------------------------------
# Partner integration
# ---------------------------------------------------------------------------


class AuthUrlResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    auth_url: str
    message: str = "Redirect the user to this URL to authorize the integration."


class ConnectionStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    connected: bool
    message: str
    auth_url: Optional[str] = None


class CallbackResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str = "Integration successfully connected."
    user_id: int
