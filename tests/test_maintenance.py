"""Tests for the maintenance job triggers -- main.py commands and run_maintenance().

Covers:
- run_maintenance() sweeps idle sessions and prunes expired revocations
- sweep-sessions / prune-revocations commands against a throwaway database
- Argument validation
"""

from dataclasses import replace
from datetime import timedelta

import pytest

from api.main import build_services, run_maintenance
from auth.models import RequestContext, User
from auth.sessions import SessionRegistry
from auth.tokens import TokenAuthority
from conftest import FakeClock, make_settings
from core.config import get_settings
from main import main


@pytest.fixture
def cli_database(tmp_path, monkeypatch):
    """Point get_settings() at a throwaway database for the duration of one test."""
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("DEBUG", "true")
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def test_run_maintenance(tmp_path):
    clock = FakeClock()
    services = build_services(make_settings(tmp_path))
    sessions = SessionRegistry(services.users, clock=clock)
    tokens = TokenAuthority(services.settings, services.tokens.revocations, clock=clock)
    services = replace(services, sessions=sessions, tokens=tokens)

    uid = services.users.create_user(User(email="a@example.com", role="AGENT", password_hash="x"))
    user = services.users.get_by_id(uid)
    sessions.create(uid, RequestContext(ip="203.0.113.10"))
    tokens.revoke(tokens.issue_access_token(user, None))

    clock.advance(minutes=45)
    try:
        assert run_maintenance(services) == (1, 1)
        assert run_maintenance(services) == (0, 0)
    finally:
        services.close()


def test_sweep_sessions_command(cli_database, capsys):
    settings = get_settings()
    services = build_services(settings)
    past = FakeClock()
    past.advance(hours=-2)
    uid = services.users.create_user(User(email="a@example.com", role="AGENT", password_hash="x"))
    SessionRegistry(services.users, clock=past).create(uid, RequestContext())
    SessionRegistry(services.users).create(uid, RequestContext())
    services.close()

    assert main(["sweep-sessions"]) == 0
    assert "Deactivated 1 session(s)" in capsys.readouterr().out


def test_sweep_sessions_custom_timeout(cli_database, capsys):
    assert main(["sweep-sessions", "--timeout", "60"]) == 0
    assert "Deactivated 0 session(s) idle for more than 60 minute(s)." in capsys.readouterr().out


def test_sweep_sessions_rejects_non_positive_timeout(cli_database, capsys):
    assert main(["sweep-sessions", "--timeout", "0"]) == 2


def test_prune_revocations_command(cli_database, capsys):
    settings = get_settings()
    services = build_services(settings)
    past = FakeClock(FakeClock().now - timedelta(days=1))
    stale = TokenAuthority(settings, services.tokens.revocations, clock=past)
    stale.revoke(stale.issue_access_token(User(id=1, email="a@example.com", role="AGENT"), None))
    services.close()

    assert main(["prune-revocations"]) == 0
    assert "Removed 1 expired revocation entry." in capsys.readouterr().out


def test_command_is_required():
    with pytest.raises(SystemExit):
        main([])
