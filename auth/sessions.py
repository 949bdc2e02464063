"""
auth/sessions.py -- Session lifecycle and suspicious-activity heuristics.

A session is a tracked device/browser login. It is created at login/register,
its last_activity_at is refreshed by the activity hook on every authenticated
request, and it is deactivated by logout, logout-all or the idle sweep.
Deactivation is one-way: nothing in this module (or the store) ever sets
is_active back to true.

sweep_idle() is a job trigger, not a request-path call. It runs from the
``main.py sweep-sessions`` command and the API maintenance loop, and is safe
alongside live traffic because every transition it performs is monotonic.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import NotFound
from auth.models import UNKNOWN, RequestContext, Session, SuspiciousActivityReport
from auth.store import UserStore
from core.database import utcnow
from core.geo import GeoLocator, NullGeoLocator
from core.useragent import parse_user_agent

logger = logging.getLogger("crmidentity.sessions")


class SessionRegistry:
    def __init__(
        self,
        store: UserStore,
        geo: GeoLocator | None = None,
        clock: Callable[[], datetime] = utcnow,
        suspicious_window: timedelta = timedelta(hours=1),
        location_threshold: int = 2,
    ) -> None:
        self.store = store
        self.geo = geo or NullGeoLocator()
        self._clock = clock
        self.suspicious_window = suspicious_window
        self.location_threshold = location_threshold

    def create(self, user_id: int, ctx: RequestContext) -> Session:
        """Persist and return a new active session for user_id."""
        ua = parse_user_agent(ctx.user_agent)
        now = self._clock()
        session = Session(
            user_id=user_id,
            ip_address=ctx.ip or UNKNOWN,
            user_agent_raw=ctx.user_agent or UNKNOWN,
            device_class=ua.device,
            browser=ua.browser,
            os=ua.os,
            approx_location=self._locate(ctx.ip),
            created_at=now,
            last_activity_at=now,
        )
        return self.store.create_session(session)

    def _locate(self, ip: str) -> str:
        if not ip or ip == UNKNOWN:
            return UNKNOWN
        try:
            return self.geo.lookup(ip) or UNKNOWN
        except Exception:
            # Third-party locators may raise anything; a login never fails on geo.
            logger.warning("Geo locator raised for %s", ip, exc_info=True)
            return UNKNOWN

    def get(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found.")
        return session

    def touch(self, session_id: str) -> bool:
        """Record activity. A no-op (False) for inactive or unknown sessions."""
        return self.store.touch_session(session_id, self._clock())

    def invalidate(self, session_id: str) -> bool:
        changed = self.store.deactivate_session(session_id)
        if changed:
            logger.info("Session %s invalidated", session_id)
        return changed

    def invalidate_all(self, user_id: int) -> int:
        count = self.store.deactivate_user_sessions(user_id)
        logger.info("Invalidated %d sessions for user_id=%s", count, user_id)
        return count

    def list_active(self, user_id: int) -> list[Session]:
        return self.store.list_active_sessions(user_id)

    def sweep_idle(self, timeout_minutes: int) -> int:
        """Deactivate every active session idle for longer than timeout_minutes."""
        cutoff = self._clock() - timedelta(minutes=timeout_minutes)
        count = self.store.deactivate_idle_sessions(cutoff)
        logger.info("Cleaned up %d inactive sessions (idle > %d min)", count, timeout_minutes)
        return count

    def detect_suspicious(self, user_id: int) -> SuspiciousActivityReport:
        """Flag logins from more distinct locations than plausible within the window.

        Considers active sessions created inside the trailing window and counts
        distinct known locations ("unknown" is ignored). More than
        location_threshold locations is suspicious. Never raises: if the
        sessions cannot be read the report is simply "not suspicious".
        """
        since = self._clock() - self.suspicious_window
        try:
            sessions = self.store.active_sessions_created_since(user_id, since)
        except Exception:
            logger.exception("Suspicious-activity check failed for user_id=%s", user_id)
            return SuspiciousActivityReport(suspicious=False)

        locations: list[str] = []
        for s in sessions:
            if s.approx_location and s.approx_location != UNKNOWN and s.approx_location not in locations:
                locations.append(s.approx_location)

        suspicious = len(locations) > self.location_threshold
        if suspicious:
            logger.warning(
                "Suspicious activity for user_id=%s: %d locations in %s",
                user_id,
                len(locations),
                self.suspicious_window,
            )
        return SuspiciousActivityReport(suspicious=suspicious, locations=locations, sessions=sessions)
