"""
auth/service.py -- Login, register, refresh and logout flows.

AuthenticationOrchestrator composes the user store, session registry and
token authority. It is constructed explicitly from those collaborators (see
build_services in api/main.py and main.py); there is no module-level
instance, so tests build one over a throwaway database.

Flow order for login:
  verify credentials -> stamp last login -> create session -> issue tokens
  bound to that session -> suspicious-activity check (advisory only).

Error policy:
  - Unknown email and wrong password both raise InvalidCredentials.
  - Refresh fails closed: a missing user, a generation mismatch or anything
    else that cannot be verified is TokenRevoked / TokenInvalid, never a new
    access token.
  - Database connectivity failures surface as ServiceUnavailable.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from auth.errors import AlreadyExists, InvalidCredentials, NotFound, TokenRevoked, database_guard
from auth.models import AuthResult, Principal, RequestContext, SecurityAlert, Session, User
from auth.sessions import SessionRegistry
from auth.store import UserStore
from auth.tokens import TokenAuthority, hash_password, salt_of, verify_credentials
from core.database import utcnow

logger = logging.getLogger("crmidentity.auth")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthenticationOrchestrator:
    def __init__(
        self,
        users: UserStore,
        sessions: SessionRegistry,
        tokens: TokenAuthority,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.tokens = tokens
        self._clock = clock

    def _issue(self, user: User, session: Session, alert: SecurityAlert | None = None) -> AuthResult:
        return AuthResult(
            user=user,
            access_token=self.tokens.issue_access_token(user, session.id),
            refresh_token=self.tokens.issue_refresh_token(user, session.id),
            session_id=session.id,
            security_alert=alert,
        )

    def login(self, email: str, password: str, ctx: RequestContext) -> AuthResult:
        with database_guard():
            user = verify_credentials(self.users, normalize_email(email), password)
            if user is None:
                logger.info("Failed login attempt from %s", ctx.ip)
                raise InvalidCredentials()
            now = self._clock()
            self.users.update_last_login(user.id, now)
            user.last_login_at = now
            session = self.sessions.create(user.id, ctx)

        result = self._issue(user, session)
        report = self.sessions.detect_suspicious(user.id)
        if report.suspicious:
            result.security_alert = SecurityAlert(type="MULTIPLE_LOCATIONS", locations=tuple(report.locations))
        logger.info("User %s logged in (session %s)", user.id, session.id)
        return result

    def register(self, email: str, password: str, role: str, ctx: RequestContext) -> AuthResult:
        email = normalize_email(email)
        with database_guard():
            if self.users.get_by_email(email) is not None:
                raise AlreadyExists()
            hashed = hash_password(password)
            user = User(
                email=email,
                role=role,
                password_hash=hashed,
                password_salt=salt_of(hashed),
                created_at=self._clock(),
            )
            try:
                user.id = self.users.create_user(user)
            except IntegrityError as exc:
                # A concurrent register for the same email won the race.
                raise AlreadyExists() from exc
            session = self.sessions.create(user.id, ctx)
        logger.info("Registered user %s with role %s", user.id, role)
        return self._issue(user, session)

    def refresh_token(self, refresh_token: str) -> str:
        """Mint a new access token. The refresh token itself is not rotated."""
        payload = self.tokens.validate_refresh_token(refresh_token)
        with database_guard():
            user = self.users.get_by_id(payload.user_id)
        if user is None:
            raise TokenRevoked(detail="user no longer exists")
        if user.token_generation != payload.token_generation:
            raise TokenRevoked(detail="token generation superseded")
        return self.tokens.issue_access_token(user, payload.session_id)

    def logout(self, access_token: str, session_id: str | None) -> None:
        self.tokens.revoke(access_token)
        if session_id:
            with database_guard():
                self.sessions.invalidate(session_id)

    def logout_all(self, user_id: int) -> int:
        """Invalidate every refresh token and active session of user_id.

        Returns the number of sessions deactivated.
        """
        with database_guard():
            try:
                generation = self.users.increment_token_generation(user_id)
            except LookupError as exc:
                raise NotFound(f"User {user_id} not found.") from exc
            count = self.sessions.invalidate_all(user_id)
        logger.info("Logged out user %s everywhere (generation=%d, sessions=%d)", user_id, generation, count)
        return count

    def list_sessions(self, user_id: int) -> list[Session]:
        with database_guard():
            return self.sessions.list_active(user_id)

    def authenticate(self, access_token: str) -> Principal:
        """Resolve an access token to the calling user and record session activity.

        A token whose session has been logged out, logged out everywhere or
        idled out is rejected as revoked even though its signature and
        expiry are still valid.
        """
        payload = self.tokens.validate_access_token(access_token)
        with database_guard():
            user = self.users.get_by_id(payload.user_id)
            if user is None:
                raise TokenRevoked(detail="user no longer exists")
            if payload.session_id is not None and not self.sessions.touch(payload.session_id):
                raise TokenRevoked(detail="session is no longer active")
        return Principal(user=user, token=payload)
