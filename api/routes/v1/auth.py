"""
api/routes/v1/auth.py -- Authentication, session and permission REST endpoints.

Routes:
  POST /api/v1/auth/register               -- create account; returns access token, sets refresh cookie
  POST /api/v1/auth/login                  -- password login; returns access token, sets refresh cookie
  POST /api/v1/auth/refresh-token          -- new access token from the refresh cookie (or body)
  POST /api/v1/auth/logout                 -- revoke access token, end current session
  POST /api/v1/auth/logout-all             -- invalidate every refresh token and session
  GET  /api/v1/auth/me                     -- current user info
  GET  /api/v1/auth/sessions               -- caller's active sessions, most recent first
  GET  /api/v1/auth/permissions            -- every permission of the caller's role
  GET  /api/v1/auth/permissions/{name}     -- does the caller's role grant {name}?
  GET  /api/v1/auth/users/{id}/permissions -- another user's permissions (requires manage_users)

Security:
  [C1] Login returns the same invalid_credentials error for unknown email and
       wrong password; bcrypt runs in both cases.
  [M5] Cache-Control: no-store on every response that carries a token.
  The refresh token is only ever set as an httpOnly cookie scoped to the
  refresh path; it never appears in a JSON body.

Domain errors (auth.errors.AuthError) propagate to the handler in
api/main.py, which renders the error envelope with the kind's status code.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.models import (
    AccessTokenResponse,
    AuthResponse,
    LoginRequest,
    MessageResponse,
    PermissionCheckResponse,
    PermissionsResponse,
    RefreshRequest,
    RegisterRequest,
    SecurityAlertResponse,
    SessionListResponse,
    SessionResponse,
    UserResponse,
)
from auth.dependencies import get_current_principal, require_permission
from auth.errors import NotFound, TokenInvalid
from auth.models import AuthResult, Principal, RequestContext
from auth.permissions import default_resolver
from auth.service import AuthenticationOrchestrator

REFRESH_COOKIE = "refresh_token"
SESSION_COOKIE = "session_id"
REFRESH_COOKIE_PATH = "/api/v1/auth"

router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _orchestrator(request: Request) -> AuthenticationOrchestrator:
    return request.app.state.orchestrator


def request_context(request: Request) -> RequestContext:
    """Extract best-effort client IP and User-Agent for session metadata.

    The socket peer is the client. X-Forwarded-For is only believed when the
    peer is one of FORWARDED_ALLOW_IPS.
    """
    peer = request.client.host if request.client else None
    ip = peer
    trusted = request.app.state.settings.trusted_proxies
    xff = request.headers.get("x-forwarded-for")
    if xff and ("*" in trusted or (peer is not None and peer in trusted)):
        ip = xff.split(",")[0].strip()
    return RequestContext(ip=ip or "unknown", user_agent=request.headers.get("user-agent") or "unknown")


def _set_session_cookies(request: Request, response: Response, result: AuthResult) -> None:
    """Write the refresh token and session id as httpOnly cookies.

    samesite="strict": the refresh cookie is only needed by same-site XHR
        calls to the refresh endpoint, never by cross-site navigation.
    max_age matches the refresh token lifetime so both expire together.
    """
    settings = request.app.state.settings
    max_age = settings.refresh_token_expire_days * 24 * 60 * 60
    for name, value, path in (
        (REFRESH_COOKIE, result.refresh_token, REFRESH_COOKIE_PATH),
        (SESSION_COOKIE, result.session_id, "/"),
    ):
        response.set_cookie(
            name,
            value=value,
            httponly=True,
            samesite="strict",
            secure=settings.secure_cookies,
            max_age=max_age,
            path=path,
        )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    response.delete_cookie(SESSION_COOKIE, path="/")


def _auth_response(request: Request, result: AuthResult, status_code: int) -> JSONResponse:
    settings = request.app.state.settings
    alert = None
    if result.security_alert is not None:
        alert = SecurityAlertResponse(type=result.security_alert.type, locations=list(result.security_alert.locations))
    body = AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=result.access_token,
        expires_in=settings.access_token_expire_minutes * 60,
        session_id=result.session_id,
        security_alert=alert,
    )
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
    _set_session_cookies(request, resp, result)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    result = _orchestrator(request).register(body.email, body.password, body.role.value, request_context(request))
    return _auth_response(request, result, 201)


@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    The response carries a security_alert when the account has recently been
    used from more distinct locations than plausible. It is advisory: the
    login itself has succeeded.
    """
    result = _orchestrator(request).login(body.email, body.password, request_context(request))
    return _auth_response(request, result, 200)


@router.post("/auth/refresh-token", response_model=AccessTokenResponse)
def refresh_token(
    request: Request,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(default=None, alias=REFRESH_COOKIE),
) -> JSONResponse:
    token = refresh_cookie or (body.refresh_token if body else None)
    if not token:
        raise TokenInvalid("Refresh token is required.")
    access_token = _orchestrator(request).refresh_token(token)
    settings = request.app.state.settings
    resp = JSONResponse(
        content=AccessTokenResponse(
            access_token=access_token,
            expires_in=settings.access_token_expire_minutes * 60,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    session_id = principal.token.session_id or request.cookies.get(SESSION_COOKIE)
    _orchestrator(request).logout(request.state.access_token, session_id)
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully.").model_dump())
    _clear_session_cookies(resp)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    _orchestrator(request).logout_all(principal.user.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out from all devices.").model_dump())
    _clear_session_cookies(resp)
    return resp


@router.get("/auth/me", response_model=UserResponse)
def me(principal: Principal = Depends(get_current_principal)) -> UserResponse:
    return UserResponse.from_user(principal.user)


@router.get("/auth/sessions", response_model=SessionListResponse)
def list_sessions(request: Request, principal: Principal = Depends(get_current_principal)) -> SessionListResponse:
    sessions = _orchestrator(request).list_sessions(principal.user.id)
    return SessionListResponse(
        sessions=[SessionResponse.from_session(s, principal.token.session_id) for s in sessions]
    )


@router.get("/auth/permissions", response_model=PermissionsResponse)
def all_permissions(principal: Principal = Depends(get_current_principal)) -> PermissionsResponse:
    role = principal.user.role
    return PermissionsResponse(role=role, permissions=sorted(default_resolver.all_permissions(role)))


@router.get("/auth/permissions/{permission}", response_model=PermissionCheckResponse)
def has_permission(permission: str, principal: Principal = Depends(get_current_principal)) -> PermissionCheckResponse:
    role = principal.user.role
    return PermissionCheckResponse(
        role=role,
        permission=permission,
        granted=default_resolver.has_with_inheritance(role, permission),
    )


# ---------------------------------------------------------------------------
# Administrative endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/users/{user_id}/permissions", response_model=PermissionsResponse)
def user_permissions(
    user_id: int,
    request: Request,
    _admin: Principal = Depends(require_permission("manage_users")),
) -> PermissionsResponse:
    """Every permission of another user's role. Requires manage_users."""
    user = _orchestrator(request).users.get_by_id(user_id)
    if user is None:
        raise NotFound("User not found.")
    return PermissionsResponse(role=user.role, permissions=sorted(default_resolver.all_permissions(user.role)))
