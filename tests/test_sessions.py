"""Unit tests for auth/sessions.py and the session half of auth/store.py.

Covers:
- create() records parsed User-Agent fields and the geo lookup
- Geo failures and unknown IPs degrade to "unknown"
- touch() only moves active sessions; deactivation is one-way
- invalidate() is idempotent; invalidate_all() reports a count
- list_active() orders by most recent activity
- sweep_idle() deactivates past the threshold and nothing else
- detect_suspicious(): >2 distinct known locations inside the window
"""

from unittest.mock import MagicMock

import pytest

from auth.errors import NotFound
from auth.models import RequestContext, User
from auth.sessions import SessionRegistry
from conftest import FakeClock

CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

PARIS = RequestContext(ip="203.0.113.10", user_agent=CHROME_MAC)
TOKYO = RequestContext(ip="203.0.113.20", user_agent=CHROME_MAC)
LIMA = RequestContext(ip="203.0.113.30", user_agent=CHROME_MAC)
UNMAPPED = RequestContext(ip="198.51.100.99", user_agent=CHROME_MAC)


@pytest.fixture
def uid(user_store) -> int:
    return user_store.create_user(User(email="agent@example.com", role="AGENT", password_hash="x"))


class TestCreate:
    def test_records_metadata(self, registry, uid, clock):
        session = registry.create(uid, PARIS)
        stored = registry.get(session.id)
        assert stored.is_active
        assert stored.device_class == "desktop"
        assert stored.browser == "Chrome"
        assert stored.os == "Mac OS X"
        assert stored.approx_location == "Paris, FR"
        assert stored.ip_address == "203.0.113.10"
        assert stored.created_at == clock.now
        assert stored.last_activity_at == clock.now

    def test_unmapped_ip_is_unknown(self, registry, uid):
        assert registry.create(uid, UNMAPPED).approx_location == "unknown"

    def test_missing_client_facts(self, registry, uid):
        session = registry.create(uid, RequestContext())
        assert session.ip_address == "unknown"
        assert session.browser == "unknown"
        assert session.approx_location == "unknown"

    def test_geo_exception_does_not_fail_create(self, user_store, uid, clock):
        geo = MagicMock()
        geo.lookup.side_effect = RuntimeError("geo service exploded")
        registry = SessionRegistry(user_store, geo=geo, clock=clock)
        assert registry.create(uid, PARIS).approx_location == "unknown"

    def test_get_unknown_session(self, registry):
        with pytest.raises(NotFound):
            registry.get("no-such-session")


class TestLifecycle:
    def test_touch_moves_last_activity(self, registry, uid, clock):
        session = registry.create(uid, PARIS)
        later = clock.advance(minutes=5)
        assert registry.touch(session.id) is True
        assert registry.get(session.id).last_activity_at == later

    def test_touch_inactive_is_noop(self, registry, uid, clock):
        session = registry.create(uid, PARIS)
        registry.invalidate(session.id)
        clock.advance(minutes=5)
        assert registry.touch(session.id) is False
        stored = registry.get(session.id)
        assert not stored.is_active
        assert stored.last_activity_at == session.last_activity_at

    def test_invalidate_is_idempotent(self, registry, uid):
        session = registry.create(uid, PARIS)
        assert registry.invalidate(session.id) is True
        assert registry.invalidate(session.id) is False
        assert not registry.get(session.id).is_active

    def test_invalidate_all(self, registry, uid):
        for ctx in (PARIS, TOKYO, LIMA):
            registry.create(uid, ctx)
        assert registry.invalidate_all(uid) == 3
        assert registry.list_active(uid) == []
        assert registry.invalidate_all(uid) == 0

    def test_list_active_most_recent_first(self, registry, uid, clock):
        first = registry.create(uid, PARIS)
        clock.advance(minutes=1)
        second = registry.create(uid, TOKYO)
        clock.advance(minutes=1)
        registry.touch(first.id)
        closed = registry.create(uid, LIMA)
        registry.invalidate(closed.id)
        assert [s.id for s in registry.list_active(uid)] == [first.id, second.id]


class TestSweepIdle:
    def test_sweeps_only_idle_sessions(self, registry, uid, clock):
        idle = registry.create(uid, PARIS)
        clock.advance(minutes=21)
        recent = registry.create(uid, TOKYO)
        clock.advance(minutes=10)
        # idle: 31 minutes without activity; recent: 10 minutes.
        assert registry.sweep_idle(30) == 1
        assert not registry.get(idle.id).is_active
        assert registry.get(recent.id).is_active

    def test_sweep_is_idempotent(self, registry, uid, clock):
        registry.create(uid, PARIS)
        clock.advance(minutes=45)
        assert registry.sweep_idle(30) == 1
        assert registry.sweep_idle(30) == 0

    def test_touch_keeps_session_alive(self, registry, uid, clock):
        session = registry.create(uid, PARIS)
        clock.advance(minutes=25)
        registry.touch(session.id)
        clock.advance(minutes=25)
        assert registry.sweep_idle(30) == 0


class TestSuspiciousActivity:
    def test_three_locations_is_suspicious(self, registry, uid, clock):
        for ctx in (PARIS, TOKYO, LIMA):
            registry.create(uid, ctx)
            clock.advance(seconds=30)
        report = registry.detect_suspicious(uid)
        assert report.suspicious
        assert report.locations == ["Paris, FR", "Tokyo, JP", "Lima, PE"]
        assert len(report.sessions) == 3

    def test_one_location_is_not_suspicious(self, registry, uid):
        for _ in range(4):
            registry.create(uid, PARIS)
        report = registry.detect_suspicious(uid)
        assert not report.suspicious
        assert report.locations == ["Paris, FR"]

    def test_two_locations_is_not_suspicious(self, registry, uid):
        registry.create(uid, PARIS)
        registry.create(uid, TOKYO)
        assert not registry.detect_suspicious(uid).suspicious

    def test_unknown_locations_are_ignored(self, registry, uid):
        registry.create(uid, PARIS)
        registry.create(uid, TOKYO)
        registry.create(uid, UNMAPPED)
        registry.create(uid, RequestContext())
        assert not registry.detect_suspicious(uid).suspicious

    def test_sessions_outside_window_are_ignored(self, registry, uid, clock):
        registry.create(uid, PARIS)
        clock.advance(minutes=61)
        registry.create(uid, TOKYO)
        registry.create(uid, LIMA)
        assert not registry.detect_suspicious(uid).suspicious

    def test_inactive_sessions_are_ignored(self, registry, uid):
        paris = registry.create(uid, PARIS)
        registry.create(uid, TOKYO)
        registry.create(uid, LIMA)
        registry.invalidate(paris.id)
        assert not registry.detect_suspicious(uid).suspicious

    def test_store_failure_reads_as_not_suspicious(self):
        store = MagicMock()
        store.active_sessions_created_since.side_effect = RuntimeError("database is locked")
        registry = SessionRegistry(store, clock=FakeClock())
        report = registry.detect_suspicious(1)
        assert not report.suspicious
        assert report.locations == []
