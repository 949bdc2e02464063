"""
api/routes/v1/integrations.py -- Partner (HubSpot) OAuth connection endpoints.

Routes:
  GET  /api/v1/integrations/hubspot/auth        -- authorization URL for the caller (requires auth)
  GET  /api/v1/integrations/hubspot/callback    -- OAuth redirect target (public; state-verified)
  GET  /api/v1/integrations/hubspot/status      -- connected? plus an auth URL when not (requires auth)
  GET  /api/v1/integrations/hubspot/verify      -- usable (refreshed if needed) partner token? (requires auth)
  POST /api/v1/integrations/hubspot/disconnect  -- delete stored partner tokens (requires auth)

The callback is public because the partner redirects the browser to it, and
a Bearer header does not survive that redirect. Its trust comes from the
signed state parameter. If the callback request happens to be authenticated
(cookie), the caller must also be the user the state was issued to.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import AuthUrlResponse, CallbackResponse, ConnectionStatusResponse, MessageResponse
from auth.dependencies import get_current_principal, try_get_principal
from auth.errors import ExchangeFailed, InvalidState
from auth.models import Principal
from integrations.broker import ExternalTokenBroker
from integrations.dependencies import PartnerAccess, partner_access_token

logger = logging.getLogger("crmidentity.api.integrations")

router = APIRouter()


def _broker(request: Request) -> ExternalTokenBroker:
    return request.app.state.broker


@router.get("/integrations/hubspot/auth", response_model=AuthUrlResponse)
def authorization_url(request: Request, principal: Principal = Depends(get_current_principal)) -> AuthUrlResponse:
    return AuthUrlResponse(auth_url=_broker(request).build_authorization_url(principal.user.id))


@router.get("/integrations/hubspot/callback", response_model=CallbackResponse)
def oauth_callback(
    request: Request,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
) -> CallbackResponse:
    logger.info(
        "Partner callback received (has_code=%s, has_state=%s, error=%s)",
        bool(code),
        bool(state),
        error or "none",
    )
    if error:
        raise ExchangeFailed("Partner authorization error.", detail=error_description or error)
    if not code or not state:
        raise InvalidState("Missing required parameters.")

    caller = try_get_principal(request)
    broker = _broker(request)
    user_id = broker.verify_state(state, caller_user_id=caller.user.id if caller else None)
    broker.exchange_code(code, user_id)
    return CallbackResponse(user_id=user_id)


@router.get("/integrations/hubspot/status", response_model=ConnectionStatusResponse)
def connection_status(
    request: Request, principal: Principal = Depends(get_current_principal)
) -> ConnectionStatusResponse:
    status = _broker(request).connection_status(principal.user.id)
    message = "Partner account is connected." if status["connected"] else "Partner account is not connected."
    return ConnectionStatusResponse(connected=status["connected"], message=message, auth_url=status["auth_url"])


@router.post("/integrations/hubspot/disconnect", response_model=MessageResponse)
def disconnect(request: Request, principal: Principal = Depends(get_current_principal)) -> MessageResponse:
    _broker(request).disconnect(principal.user.id)
    return MessageResponse(message="Integration disconnected successfully.")


@router.get("/integrations/hubspot/verify", response_model=ConnectionStatusResponse)
def verify_connection(access: PartnerAccess = Depends(partner_access_token)) -> ConnectionStatusResponse:
    """Confirm a usable partner access token exists, refreshing it if needed.

    403 with auth_url when not connected; 401 with auth_url when the partner
    rejected the refresh and the user must reconnect.
    """
    logger.info("Partner access verified for user_id=%s", access.principal.user.id)
    return ConnectionStatusResponse(connected=True, message="Partner access token is valid.")
