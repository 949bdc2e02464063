"""Unit tests for auth/dependencies.py and integrations/dependencies.py -- FastAPI guards.

The dependencies only touch request.headers, request.cookies, request.state
and request.app.state, so a SimpleNamespace stands in for the Request.
"""

from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from authlib.integrations.base_client import OAuthError
from fastapi import HTTPException

from auth.dependencies import bearer_token, get_current_principal, require_permission, try_get_principal
from auth.errors import NetworkTimeout, TokenInvalid
from auth.models import RequestContext
from integrations.dependencies import partner_access_token, require_partner_connection


def _request(orchestrator, headers=None, cookies=None):
    return SimpleNamespace(
        headers=headers or {},
        cookies=cookies or {},
        state=SimpleNamespace(),
        app=SimpleNamespace(state=SimpleNamespace(orchestrator=orchestrator)),
    )


@pytest.fixture
def agent_token(orchestrator) -> str:
    return orchestrator.register("agent@example.com", "pw-agent-123", "AGENT", RequestContext()).access_token


def test_bearer_header_preferred_over_cookie(orchestrator):
    req = _request(orchestrator, headers={"Authorization": "Bearer from-header"}, cookies={"access_token": "c"})
    assert bearer_token(req) == "from-header"


def test_cookie_fallback(orchestrator):
    assert bearer_token(_request(orchestrator, cookies={"access_token": "from-cookie"})) == "from-cookie"


def test_current_principal(orchestrator, agent_token):
    req = _request(orchestrator, headers={"Authorization": f"Bearer {agent_token}"})
    principal = get_current_principal(req)
    assert principal.user.email == "agent@example.com"
    assert req.state.access_token == agent_token


def test_missing_token(orchestrator):
    with pytest.raises(TokenInvalid):
        get_current_principal(_request(orchestrator))


def test_soft_variant_never_raises(orchestrator):
    assert try_get_principal(_request(orchestrator)) is None
    assert try_get_principal(_request(orchestrator, headers={"Authorization": "Bearer junk"})) is None


def test_require_permission_grants_inherited(orchestrator):
    token = orchestrator.register("boss@example.com", "pw-boss-123", "MANAGER", RequestContext()).access_token
    guard = require_permission("update_lead_status")
    principal = guard(_request(orchestrator, headers={"Authorization": f"Bearer {token}"}))
    assert principal.user.role == "MANAGER"


def test_require_permission_forbids(orchestrator, agent_token):
    guard = require_permission("manage_users")
    with pytest.raises(HTTPException) as excinfo:
        guard(_request(orchestrator, headers={"Authorization": f"Bearer {agent_token}"}))
    assert excinfo.value.status_code == 403
    assert excinfo.value.detail["code"] == "forbidden"


# ---------------------------------------------------------------------------
# Partner access guards (integrations/dependencies.py)
# ---------------------------------------------------------------------------


def _partner_request(orchestrator, broker):
    req = _request(orchestrator)
    req.app.state.broker = broker
    return req


@pytest.fixture
def agent(orchestrator, agent_token):
    return orchestrator.authenticate(agent_token)


def test_partner_connection_required(orchestrator, broker, agent):
    with pytest.raises(HTTPException) as excinfo:
        require_partner_connection(_partner_request(orchestrator, broker), agent)
    assert excinfo.value.status_code == 403
    assert excinfo.value.detail["code"] == "not_connected"
    assert broker.verify_state(parse_qs(urlparse(excinfo.value.detail["auth_url"]).query)["state"][0]) == agent.user.id


def test_partner_connection_present(orchestrator, broker, agent):
    broker.exchange_code("c", agent.user.id)
    assert require_partner_connection(_partner_request(orchestrator, broker), agent) is agent


def test_partner_access_token_attached(orchestrator, broker, agent):
    broker.exchange_code("c", agent.user.id)
    access = partner_access_token(_partner_request(orchestrator, broker), agent)
    assert access.access_token == "partner-access-1"
    assert access.principal is agent


def test_partner_access_token_refresh_rejected(orchestrator, broker, partner, clock, agent):
    broker.exchange_code("c", agent.user.id)
    partner.refresh_response = OAuthError(error="invalid_grant", description="refresh token revoked")
    clock.advance(hours=2)
    with pytest.raises(HTTPException) as excinfo:
        partner_access_token(_partner_request(orchestrator, broker), agent)
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail["code"] == "reauthorization_required"
    assert excinfo.value.detail["auth_url"]


def test_partner_access_token_disconnected_meanwhile(orchestrator, broker, agent):
    # No row at all: get_valid_access_token raises NotConnected.
    with pytest.raises(HTTPException) as excinfo:
        partner_access_token(_partner_request(orchestrator, broker), agent)
    assert excinfo.value.status_code == 403


def test_partner_outage_is_not_a_reconnect(orchestrator, broker, partner, clock, agent):
    broker.exchange_code("c", agent.user.id)
    partner.refresh_response = requests.Timeout("read timed out")
    clock.advance(hours=2)
    with pytest.raises(NetworkTimeout):
        partner_access_token(_partner_request(orchestrator, broker), agent)
