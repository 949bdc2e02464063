"""
tests/conftest.py -- Shared test fixtures for the identity service tests.

This module provides:
  - FakeClock: a settable clock injected into every time-dependent service
  - make_settings(): Settings over a throwaway file-backed SQLite database
  - store / service fixtures built explicitly, the way api/main.py does
  - FakePartner + FakeOAuthSession: a scripted partner token endpoint that
    stands in for authlib's OAuth2Session so no test touches the network
  - api_client: TestClient with a patched lifespan that wires test services
    into app.state

Design: file-backed SQLite under tmp_path (not :memory:) because TestClient
and the broker concurrency tests run handlers on worker threads, and plain
:memory: databases are per-connection.

DEBUG is set before any app import so get_settings() can auto-generate
secrets instead of raising in the rare path that still reaches it.
"""

from __future__ import annotations

import asyncio
import os
import threading
import time
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import Services, app, attach_services, build_services
from auth.revocation import RevocationStore
from auth.service import AuthenticationOrchestrator
from auth.sessions import SessionRegistry
from auth.store import UserStore
from auth.tokens import TokenAuthority
from core.config import Settings
from core.database import create_db_engine
from integrations.broker import ExternalTokenBroker
from integrations.store import IntegrationTokenStore

# ---------------------------------------------------------------------------
# Clock / settings helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "debug": True,
        "database_url": f"sqlite:///{tmp_path / 'identity.db'}",
        "access_token_secret": "a" * 48,
        "refresh_token_secret": "r" * 48,
        "oauth_state_secret": "s" * 48,
        "hubspot_client_id": "test-client-id",
        "hubspot_client_secret": "test-client-secret",
        "hubspot_redirect_uri": "https://crm.example.com/api/v1/integrations/hubspot/callback",
    }
    values.update(overrides)
    return Settings(**values)


class MapGeoLocator:
    """Geo stub: fixed IP -> location table, None for anything else."""

    def __init__(self, table: dict[str, str]) -> None:
        self.table = table

    def lookup(self, ip: str) -> str | None:
        return self.table.get(ip)


GEO_TABLE = {
    "203.0.113.10": "Paris, FR",
    "203.0.113.20": "Tokyo, JP",
    "203.0.113.30": "Lima, PE",
}

# ---------------------------------------------------------------------------
# Partner OAuth stand-in
# ---------------------------------------------------------------------------


class FakePartner:
    """Scripted partner token endpoint shared by every FakeOAuthSession.

    token_response / refresh_response are returned for the matching grant;
    an exception instance is raised instead. ``delay`` widens race windows
    in the concurrency tests.
    """

    def __init__(self) -> None:
        self.token_response: object = {
            "access_token": "partner-access-1",
            "refresh_token": "partner-refresh-1",
            "expires_in": 3600,
            "token_type": "bearer",
        }
        self.refresh_response: object = {
            "access_token": "partner-access-2",
            "refresh_token": "partner-refresh-2",
            "expires_in": 3600,
            "token_type": "bearer",
        }
        self.delay = 0.0
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def respond(self, grant_type: str, **params) -> dict:
        with self._lock:
            self.calls.append((grant_type, params))
        if self.delay:
            time.sleep(self.delay)
        response = self.token_response if grant_type == "authorization_code" else self.refresh_response
        if isinstance(response, BaseException):
            raise response
        return dict(response)

    def grants(self, grant_type: str) -> list[dict]:
        return [params for kind, params in self.calls if kind == grant_type]


class FakeOAuthSession:
    def __init__(self, partner: FakePartner) -> None:
        self.partner = partner

    def create_authorization_url(self, url: str, state: str | None = None, **kwargs):
        return f"{url}?state={state}", state

    def fetch_token(self, url: str, grant_type: str | None = None, code: str | None = None, **kwargs) -> dict:
        return self.partner.respond("authorization_code", url=url, code=code, timeout=kwargs.get("timeout"))

    def refresh_token(self, url: str, refresh_token: str | None = None, **kwargs) -> dict:
        return self.partner.respond("refresh_token", url=url, refresh_token=refresh_token)

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Store / service fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def engine(settings):
    engine = create_db_engine(settings.database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def revocations(engine) -> RevocationStore:
    return RevocationStore(engine)


@pytest.fixture
def tokens(settings, revocations, clock) -> TokenAuthority:
    return TokenAuthority(settings, revocations, clock=clock)


@pytest.fixture
def registry(user_store, clock) -> SessionRegistry:
    return SessionRegistry(user_store, geo=MapGeoLocator(GEO_TABLE), clock=clock)


@pytest.fixture
def orchestrator(user_store, registry, tokens, clock) -> AuthenticationOrchestrator:
    return AuthenticationOrchestrator(user_store, registry, tokens, clock=clock)


@pytest.fixture
def partner() -> FakePartner:
    return FakePartner()


@pytest.fixture
def broker(settings, engine, clock, partner) -> ExternalTokenBroker:
    return ExternalTokenBroker(
        settings,
        IntegrationTokenStore(engine),
        clock=clock,
        session_factory=lambda: FakeOAuthSession(partner),
    )


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(services: Services):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-built test services into app.state so TestClient routes hit an
    isolated database. The maintenance task is a long-sleeping coroutine so
    shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, services)
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(tmp_path, partner) -> Generator[tuple[TestClient, Services], None, None]:
    """Yield (client, services) over a fresh database.

    The broker talks to FakePartner; every other service is the real one
    build_services() produces. The geo locator is the GEO_TABLE stub. The
    TestClient peer ("testclient") is a trusted proxy, so tests pick the
    client IP with X-Forwarded-For.
    """
    settings = make_settings(tmp_path, forwarded_allow_ips="testclient")
    services = build_services(settings)
    sessions = SessionRegistry(services.users, geo=MapGeoLocator(GEO_TABLE))
    services = replace(
        services,
        sessions=sessions,
        orchestrator=AuthenticationOrchestrator(services.users, sessions, services.tokens),
        broker=ExternalTokenBroker(
            settings,
            IntegrationTokenStore(services.engine),
            session_factory=lambda: FakeOAuthSession(partner),
        ),
    )
    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, services

    services.close()
