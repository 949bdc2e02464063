"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The access token is read from the Authorization: Bearer header, falling back
to the "access_token" cookie. Both converge on
AuthenticationOrchestrator.authenticate(), which validates the token, checks
the bound session is still active and records activity on it (the activity
hook).

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() raises the typed token error, which the API
exception handler turns into a 401.
require_permission() builds a dependency that additionally checks a
capability through the role hierarchy.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. It does not import
from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.errors import AuthError, TokenInvalid
from auth.models import Principal
from auth.permissions import default_resolver
from auth.service import AuthenticationOrchestrator


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get("access_token")


def _orchestrator(request: Request) -> AuthenticationOrchestrator:
    return request.app.state.orchestrator


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request if it carries a usable token. Never raises AuthError."""
    token = bearer_token(request)
    if not token:
        return None
    try:
        return _orchestrator(request).authenticate(token)
    except AuthError:
        return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = bearer_token(request)
    if not token:
        raise TokenInvalid("Authentication required.")
    principal = _orchestrator(request).authenticate(token)
    request.state.access_token = token
    return principal


def require_permission(permission: str) -> Callable[[Request], Principal]:
    """Return a dependency that requires ``permission`` (directly or inherited).

    Raises HTTP 401 if unauthenticated, HTTP 403 if the role lacks it.
    """

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)
        if not default_resolver.has_with_inheritance(principal.user.role, permission):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"Permission '{permission}' required."},
            )
        return principal

    return dependency
