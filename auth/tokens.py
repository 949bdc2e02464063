"""
auth/tokens.py -- JWT issuance/validation/revocation and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh tokens are signed with two
       independent secrets from Settings. Each token carries a random ``jti``
       (the revocation key) and a ``typ`` claim; a token presented to the
       wrong validator fails the signature check first and the type check
       second.

  Validation order: the revocation store is consulted on the *unverified*
       jti before the signature and expiry results are reported. A revoked
       token is always reported as revoked, even once it has also expired.
       If the revocation store cannot be read the token is treated as
       invalid -- revocation fails closed.

  Refresh tokens embed the user's token_generation. This module only decodes
       it; the orchestrator compares it with the stored counter and treats a
       mismatch as revoked.

  Passwords: bcrypt directly (no passlib wrapper). The DUMMY_HASH constant
       enables timing equalization in verify_credentials() so response time
       does not reveal whether an email exists [C1].

Layer rule: no imports from api/ or integrations/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import TokenExpired, TokenInvalid, TokenRevoked
from auth.models import AccessTokenPayload, RefreshTokenPayload, User
from auth.revocation import RevocationStore
from core.config import Settings
from core.database import utcnow

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("crmidentity.auth.tokens")

_ALGORITHM = "HS256"
_ACCESS = "access"
_REFRESH = "refresh"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps the field at 128 characters.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def salt_of(hashed: str) -> str:
    """Return the salt segment ("$2b$12$" + 22 chars) embedded in a bcrypt hash."""
    return hashed[:29]


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
DUMMY_HASH: str = hash_password("crmidentity_timing_dummy")


def verify_credentials(store: UserStore, email: str, password: str) -> User | None:
    """Check an email/password pair with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.password_hash is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# Token authority
# ---------------------------------------------------------------------------


class TokenAuthority:
    """Issue, validate and revoke signed access and refresh tokens.

    Usage:
        authority = TokenAuthority(settings, RevocationStore(engine))
        token = authority.issue_access_token(user, session.id)
        payload = authority.validate_access_token(token)
        authority.revoke(token)
    """

    def __init__(
        self,
        settings: Settings,
        revocations: RevocationStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._access_secret = settings.access_token_secret
        self._refresh_secret = settings.refresh_token_secret
        self.access_lifetime = timedelta(minutes=settings.access_token_expire_minutes)
        self.refresh_lifetime = timedelta(days=settings.refresh_token_expire_days)
        self.revocations = revocations
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_access_token(self, user: User, session_id: str | None) -> str:
        now = self._clock()
        claims = {
            "sub": str(user.id),
            "user_id": user.id,
            "email": user.email,
            "role": user.role,
            "session_id": session_id,
            "jti": uuid.uuid4().hex,
            "typ": _ACCESS,
            "iat": now,
            "exp": now + self.access_lifetime,
        }
        return jwt.encode(claims, self._access_secret, algorithm=_ALGORITHM)

    def issue_refresh_token(self, user: User, session_id: str | None) -> str:
        now = self._clock()
        claims = {
            "sub": str(user.id),
            "user_id": user.id,
            "token_generation": user.token_generation,
            "session_id": session_id,
            "jti": uuid.uuid4().hex,
            "typ": _REFRESH,
            "iat": now,
            "exp": now + self.refresh_lifetime,
        }
        return jwt.encode(claims, self._refresh_secret, algorithm=_ALGORITHM)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_access_token(self, token: str) -> AccessTokenPayload:
        """Return the payload of a valid access token.

        Raises TokenRevoked, TokenExpired or TokenInvalid.
        """
        claims = self._decode(token, self._access_secret, _ACCESS)
        try:
            return AccessTokenPayload(
                user_id=int(claims["user_id"]),
                email=str(claims["email"]),
                role=str(claims["role"]),
                session_id=claims.get("session_id"),
                jti=str(claims["jti"]),
                expires_at=_exp_to_datetime(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid(detail="missing or malformed claims") from exc

    def validate_refresh_token(self, token: str) -> RefreshTokenPayload:
        """Return the payload of a valid refresh token.

        The caller must still compare payload.token_generation with the
        user's current generation.
        """
        claims = self._decode(token, self._refresh_secret, _REFRESH)
        try:
            return RefreshTokenPayload(
                user_id=int(claims["user_id"]),
                token_generation=int(claims["token_generation"]),
                session_id=claims.get("session_id"),
                jti=str(claims["jti"]),
                expires_at=_exp_to_datetime(claims["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid(detail="missing or malformed claims") from exc

    def _decode(self, token: str, secret: str, expected_type: str) -> dict:
        self._ensure_not_revoked(token)
        try:
            claims = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTError as exc:
            raise TokenInvalid() from exc
        if claims.get("typ") != expected_type:
            raise TokenInvalid(detail="unexpected token type")
        return claims

    def _ensure_not_revoked(self, token: str) -> None:
        try:
            unverified = jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenInvalid() from exc
        jti = unverified.get("jti")
        if not isinstance(jti, str) or not jti:
            raise TokenInvalid(detail="missing token identifier")
        try:
            revoked = self.revocations.contains(jti)
        except SQLAlchemyError as exc:
            logger.error("Revocation lookup failed, rejecting token: %s", exc)
            raise TokenInvalid(detail="revocation status unavailable") from exc
        if revoked:
            raise TokenRevoked()

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> bool:
        """Add a token's identifier to the revocation store until the token expires.

        Only tokens signed by this authority (either secret) are accepted;
        expiry is ignored so an already-expired token can still be revoked.
        Returns False if the token was already revoked.
        """
        claims = None
        for secret in (self._access_secret, self._refresh_secret):
            try:
                claims = jwt.decode(token, secret, algorithms=[_ALGORITHM], options={"verify_exp": False})
                break
            except JWTError:
                continue
        if claims is None or not claims.get("jti") or "exp" not in claims:
            raise TokenInvalid()
        added = self.revocations.add(claims["jti"], _exp_to_datetime(claims["exp"]), self._clock())
        if added:
            logger.info("Revoked %s token for user_id=%s", claims.get("typ"), claims.get("user_id"))
        return added

    def prune_revocations(self) -> int:
        return self.revocations.purge_expired(self._clock())


def _exp_to_datetime(exp) -> datetime:
    return datetime.fromtimestamp(int(exp), tz=timezone.utc)
