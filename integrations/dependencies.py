"""
integrations/dependencies.py -- FastAPI Depends() guards for partner API access.

Routes that call the partner CRM on the user's behalf stack these on top of
get_current_principal():

  require_partner_connection  -- 403 with an auth_url when the caller has
                                 never connected (or has disconnected)
  partner_access_token        -- attaches a partner access token that is
                                 valid for at least the refresh-ahead window;
                                 401 with an auth_url when the refresh grant
                                 was rejected and the user must reconnect

Both put the partner consent URL into the error body so a client can send
the user straight back through the authorization flow. Partner outages
(ExchangeFailed, NetworkTimeout) are not reconnect situations and propagate
to the AuthError handler unchanged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from auth.dependencies import get_current_principal
from auth.errors import NotConnected, ReauthorizationRequired
from auth.models import Principal
from integrations.broker import ExternalTokenBroker

logger = logging.getLogger("crmidentity.integrations")


@dataclass
class PartnerAccess:
    principal: Principal
    access_token: str


def _broker(request: Request) -> ExternalTokenBroker:
    return request.app.state.broker


def _reconnect_url(broker: ExternalTokenBroker, user_id: int) -> str | None:
    return broker.build_authorization_url(user_id) if broker.configured else None


def _not_connected(broker: ExternalTokenBroker, user_id: int) -> HTTPException:
    return HTTPException(
        status_code=403,
        detail={
            "code": NotConnected.code,
            "message": "Partner integration is not connected. Connect your account first.",
            "auth_url": _reconnect_url(broker, user_id),
        },
    )


def require_partner_connection(
    request: Request, principal: Principal = Depends(get_current_principal)
) -> Principal:
    """Require a stored partner connection for the authenticated caller."""
    broker = _broker(request)
    if not broker.is_connected(principal.user.id):
        raise _not_connected(broker, principal.user.id)
    return principal


def partner_access_token(
    request: Request, principal: Principal = Depends(require_partner_connection)
) -> PartnerAccess:
    """Resolve a fresh partner access token, refreshing it when near expiry.

    Use as a FastAPI dependency:
        @router.get("/contacts")
        def contacts(access: PartnerAccess = Depends(partner_access_token)): ...
    """
    broker = _broker(request)
    user_id = principal.user.id
    try:
        token = broker.get_valid_access_token(user_id)
    except ReauthorizationRequired as exc:
        logger.warning("Partner authorization expired for user_id=%s: %s", user_id, exc.detail)
        raise HTTPException(
            status_code=401,
            detail={
                "code": exc.code,
                "message": "Partner authorization expired. Reconnect your account.",
                "detail": exc.detail,
                "auth_url": _reconnect_url(broker, user_id),
            },
        ) from exc
    except NotConnected as exc:
        # Disconnected between the connection check and the token read.
        raise _not_connected(broker, user_id) from exc
    return PartnerAccess(principal=principal, access_token=token)
