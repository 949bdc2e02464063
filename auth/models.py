"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the token authority and the orchestrator do the work.

All datetimes are timezone-aware UTC. The stores convert to and from their
ISO-8601 storage form at the boundary.

Layer rule: no imports from api/ or integrations/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

UNKNOWN = "unknown"


@dataclass
class User:
    """An identity in the CRM tenant.

    token_generation only ever increases. Every refresh token embeds the value
    current at issue time; bumping it (logout-all) invalidates all of them.

    password_salt is the bcrypt salt prefix of password_hash. bcrypt already
    embeds the salt in the hash; the column is kept for auditing tools that
    read it separately.
    """

    email: str
    role: str  # "ADMIN", "MANAGER", "AGENT", "COMPLIANCE"
    id: int | None = None
    password_hash: str | None = None
    password_salt: str | None = None
    token_generation: int = 0
    last_login_at: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Session:
    """A tracked device/browser login, independent of token lifetime.

    is_active flips True -> False exactly once and never back.
    """

    user_id: int
    ip_address: str
    user_agent_raw: str
    id: str | None = None
    device_class: str = UNKNOWN
    browser: str = UNKNOWN
    os: str = UNKNOWN
    approx_location: str = UNKNOWN
    is_active: bool = True
    created_at: datetime | None = None
    last_activity_at: datetime | None = None


@dataclass(frozen=True)
class RequestContext:
    """Client facts captured at login/register time."""

    ip: str = UNKNOWN
    user_agent: str = UNKNOWN


# ---------------------------------------------------------------------------
# Token payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessTokenPayload:
    user_id: int
    email: str
    role: str
    session_id: str | None
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenPayload:
    user_id: int
    token_generation: int
    session_id: str | None
    jti: str
    expires_at: datetime


# ---------------------------------------------------------------------------
# Orchestrator results
# ---------------------------------------------------------------------------


@dataclass
class SuspiciousActivityReport:
    """Outcome of the multiple-locations heuristic.

    A heuristic, not a verdict: VPN exits, mobile carriers and travel produce
    false positives; sessions with unresolvable IPs or older than the window
    produce false negatives.
    """

    suspicious: bool
    locations: list[str] = field(default_factory=list)
    sessions: list[Session] = field(default_factory=list)


@dataclass(frozen=True)
class SecurityAlert:
    type: str
    locations: tuple[str, ...]


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    session_id: str
    security_alert: SecurityAlert | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of one request."""

    user: User
    token: AccessTokenPayload
