"""
auth/errors.py -- Typed error kinds raised by the identity core.

Every kind carries a stable machine-readable ``code`` and the HTTP status the
API layer maps it to. Domain modules raise these; api/main.py renders them
into the standard ErrorResponse envelope with a single exception handler, so
route handlers never translate errors by hand.

ServiceUnavailable is the infrastructure kind: the database or another
collaborator could not be reached. It is deliberately not a subclass of any
domain kind so callers cannot confuse "wrong password" with "database down".

Layer rule: no imports from api/, integrations/ or core/. Third-party
imports are limited to SQLAlchemy's exception types for database_guard().
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError


class AuthError(Exception):
    """Base class for every error kind the identity core raises."""

    code = "auth_error"
    status_code = 400
    message = "Authentication error."

    def __init__(self, message: str | None = None, detail: str | None = None) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        self.detail = detail


class InvalidCredentials(AuthError):
    # Same kind for unknown email and wrong password -- no user enumeration.
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password."


class AlreadyExists(AuthError):
    code = "already_exists"
    status_code = 409
    message = "User already exists."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    message = "Resource not found."


# ---------------------------------------------------------------------------
# Token validation
# ---------------------------------------------------------------------------


class TokenError(AuthError):
    code = "token_error"
    status_code = 401


class TokenExpired(TokenError):
    code = "token_expired"
    message = "Token has expired."


class TokenInvalid(TokenError):
    code = "token_invalid"
    message = "Token is invalid."


class TokenRevoked(TokenError):
    code = "token_revoked"
    message = "Token has been revoked."


# ---------------------------------------------------------------------------
# Partner integration
# ---------------------------------------------------------------------------


class IntegrationError(AuthError):
    code = "integration_error"
    status_code = 502


class NotConnected(IntegrationError):
    code = "not_connected"
    status_code = 403
    message = "Partner integration is not connected."


class ExchangeFailed(IntegrationError):
    code = "exchange_failed"
    status_code = 502
    message = "Partner token exchange failed."


class InvalidState(ExchangeFailed):
    code = "invalid_state"
    status_code = 400
    message = "Invalid OAuth state parameter."


class ReauthorizationRequired(ExchangeFailed):
    """Refresh grant was rejected; the user must authorize the integration again."""

    code = "reauthorization_required"
    status_code = 401
    message = "Partner authorization expired. Reconnect the integration."


class NetworkTimeout(IntegrationError):
    code = "network_timeout"
    status_code = 504
    message = "Partner did not respond in time."


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class ServiceUnavailable(AuthError):
    code = "service_unavailable"
    status_code = 503
    message = "A backing service is unavailable."


@contextmanager
def database_guard() -> Iterator[None]:
    """Re-raise database connectivity failures as ServiceUnavailable.

    Only OperationalError (connection refused, database locked, disk full)
    is translated. IntegrityError and programming errors are bugs or domain
    signals and propagate unchanged.
    """
    try:
        yield
    except OperationalError as exc:
        raise ServiceUnavailable(detail=type(exc).__name__) from exc
