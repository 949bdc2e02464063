"""Unit tests for core/config.py -- signing secret policy."""

import pytest

from core.config import Settings

STRONG_A = "a" * 40
STRONG_R = "r" * 40
STRONG_S = "s" * 40


def test_debug_generates_missing_secrets():
    s = Settings(debug=True, access_token_secret="", refresh_token_secret="", oauth_state_secret="")
    assert len(s.access_token_secret) >= 32
    assert len(s.oauth_state_secret) >= 32
    assert s.access_token_secret != s.refresh_token_secret


def test_production_requires_secrets():
    with pytest.raises(ValueError, match="ACCESS_TOKEN_SECRET"):
        Settings(debug=False, access_token_secret="", refresh_token_secret=STRONG_R, oauth_state_secret=STRONG_S)


def test_short_secret_rejected_even_in_debug():
    with pytest.raises(ValueError, match="at least 32"):
        Settings(debug=True, access_token_secret="short", refresh_token_secret=STRONG_R, oauth_state_secret=STRONG_S)


def test_access_and_refresh_secrets_must_differ():
    with pytest.raises(ValueError, match="must differ"):
        Settings(debug=False, access_token_secret=STRONG_A, refresh_token_secret=STRONG_A, oauth_state_secret=STRONG_S)


def test_hubspot_configured_needs_id_and_secret():
    base = dict(debug=True, access_token_secret=STRONG_A, refresh_token_secret=STRONG_R, oauth_state_secret=STRONG_S)
    assert not Settings(**base, hubspot_client_id="id", hubspot_client_secret="").hubspot_configured
    assert Settings(**base, hubspot_client_id="id", hubspot_client_secret="secret").hubspot_configured
