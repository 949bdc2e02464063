"""
integrations/broker.py -- OAuth2 credential broker for the partner CRM API.

Per-user state machine:

  Disconnected --exchange_code--> Connected(valid)
  Connected(valid) --time passes--> Connected(near-expiry)
  Connected(near-expiry) --get_valid_access_token--> Connected(refreshed)
  Connected(near-expiry) --refresh rejected--> Connected(refresh-failed):
      ReauthorizationRequired is raised; the user must run the
      authorization flow again (exchange_code upserts over the stale row).
  any Connected --disconnect--> Disconnected

HTTP: authlib's requests-based OAuth2Session performs both grants with a
form-encoded body and client_secret_post authentication. Every call carries
a bounded timeout; requests.Timeout surfaces as NetworkTimeout.

Concurrency:
  A refresh is a check-then-write across the network. Two requests for the
  same user arriving inside the refresh-ahead window would otherwise both
  spend the refresh token, and with partners that rotate refresh tokens the
  second grant fails and the user is disconnected. A per-user lock wraps
  "read row -> check expiry -> refresh -> persist". The first caller performs
  the grant; callers queued behind it re-read the persisted row, find it
  fresh and return the new access token without a second grant. When the
  grant fails instead, callers that were already queued re-raise the same
  failure while the row still holds the refresh token that was rejected.
  Lock waits are bounded by PARTNER_LOCK_TIMEOUT_SECONDS.

  Per-user slots live in a WeakValueDictionary: an entry exists only while
  some call for that user holds it, so the table does not grow with the
  number of users ever seen.

  The locks are process-local. Multiple API processes can still race on one
  user; the partner then sees two refresh grants, which is harmless for
  partners that do not rotate refresh tokens (HubSpot does not).

Partner errors:
  HubSpot answers a rejected grant with a 4xx and a body such as
  ``{"status": "BAD_AUTH_CODE", "message": "..."}`` rather than an RFC 6749
  ``error`` member, which authlib would otherwise hand back as a token.
  Compliance hooks on the token responses turn any 4xx/5xx into
  ExchangeFailed (code grant) or ReauthorizationRequired (refresh grant)
  carrying the HTTP status and the partner's status and message.

State parameter:
  The state is a short-lived JWT signed with OAUTH_STATE_SECRET carrying the
  user id and a nonce -- base64url JSON with an integrity tag. The callback
  verifies signature, expiry and shape, and, when the callback request is
  itself authenticated, that the caller is the user the state was minted for.

Security:
  The client secret is never logged. Partner error codes and descriptions
  are logged and surfaced in ExchangeFailed.detail.
"""

from __future__ import annotations

import logging
import threading
import uuid
import weakref
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

import requests
from authlib.integrations.base_client import OAuthError
from authlib.integrations.requests_client import OAuth2Session
from jose import JWTError, jwt

from auth.errors import (
    AuthError,
    ExchangeFailed,
    InvalidState,
    NetworkTimeout,
    NotConnected,
    ReauthorizationRequired,
    ServiceUnavailable,
    database_guard,
)
from core.config import Settings
from core.database import utcnow
from integrations.models import IntegrationToken
from integrations.store import IntegrationTokenStore

logger = logging.getLogger("crmidentity.integrations")

_STATE_ALGORITHM = "HS256"
_STATE_PURPOSE = "partner_oauth"


def partner_error_detail(resp: requests.Response) -> str:
    """Render a failed token response as "HTTP <status>: <partner status>: <message>"."""
    try:
        body = resp.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        text = (resp.text or "").strip()[:500]
        return f"HTTP {resp.status_code}: {text}" if text else f"HTTP {resp.status_code}"
    code = body.get("status") or body.get("error")
    message = body.get("message") or body.get("error_description")
    parts = [f"HTTP {resp.status_code}"] + [str(p) for p in (code, message) if p]
    return ": ".join(parts)


class _UserSlot:
    """Lock for one user's token row plus the last failed refresh outcome.

    ``failures`` counts refresh failures; a caller compares the count it saw
    before queueing with the count it sees once it holds the lock.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.failures = 0
        self.failed_refresh_token: str | None = None
        self.failure: AuthError | None = None


class ExternalTokenBroker:
    """Hold, exchange and refresh one partner's OAuth tokens for every user.

    Usage:
        broker = ExternalTokenBroker(settings, IntegrationTokenStore(engine))
        url = broker.build_authorization_url(user.id)
        # ... partner redirects back with ?code=...&state=...
        broker.exchange_code(code, broker.verify_state(state, caller_user_id=user.id))
        token = broker.get_valid_access_token(user.id)
    """

    def __init__(
        self,
        settings: Settings,
        store: IntegrationTokenStore,
        clock: Callable[[], datetime] = utcnow,
        session_factory: Callable[[], OAuth2Session] | None = None,
    ) -> None:
        self.store = store
        self.client_id = settings.hubspot_client_id
        self._client_secret = settings.hubspot_client_secret
        self.redirect_uri = settings.hubspot_redirect_uri
        self.scopes = settings.hubspot_scopes
        self.auth_url = settings.hubspot_auth_url
        self.token_url = settings.hubspot_token_url
        self.refresh_ahead = timedelta(seconds=settings.partner_refresh_ahead_seconds)
        self.http_timeout = settings.partner_http_timeout_seconds
        self.lock_timeout = settings.partner_lock_timeout_seconds
        self._state_secret = settings.oauth_state_secret
        self._state_lifetime = timedelta(seconds=settings.oauth_state_expire_seconds)
        self._configured = settings.hubspot_configured
        self._clock = clock
        self._session_factory = session_factory or self._new_session
        self._slots: weakref.WeakValueDictionary[int, _UserSlot] = weakref.WeakValueDictionary()
        self._slots_guard = threading.Lock()

    @property
    def configured(self) -> bool:
        return self._configured

    def _new_session(self) -> OAuth2Session:
        session = OAuth2Session(
            client_id=self.client_id,
            client_secret=self._client_secret,
            scope=self.scopes,
            redirect_uri=self.redirect_uri,
            token_endpoint_auth_method="client_secret_post",
        )
        session.max_redirects = 3
        session.register_compliance_hook("access_token_response", self._check_code_response)
        session.register_compliance_hook("refresh_token_response", self._check_refresh_response)
        return session

    @staticmethod
    def _check_code_response(resp: requests.Response) -> requests.Response:
        if resp.status_code >= 400:
            raise ExchangeFailed(detail=partner_error_detail(resp))
        return resp

    @staticmethod
    def _check_refresh_response(resp: requests.Response) -> requests.Response:
        if resp.status_code >= 500:
            # Partner outage: the refresh token may still be good.
            raise ExchangeFailed(detail=partner_error_detail(resp))
        if resp.status_code >= 400:
            raise ReauthorizationRequired(detail=partner_error_detail(resp))
        return resp

    def _slot_for(self, user_id: int) -> _UserSlot:
        with self._slots_guard:
            slot = self._slots.get(user_id)
            if slot is None:
                slot = _UserSlot()
                self._slots[user_id] = slot
            return slot

    @contextmanager
    def _holding(self, slot: _UserSlot) -> Iterator[_UserSlot]:
        if not slot.lock.acquire(timeout=self.lock_timeout):
            raise NetworkTimeout("Timed out waiting for an in-flight partner token refresh.")
        try:
            yield slot
        finally:
            slot.lock.release()

    # ------------------------------------------------------------------
    # Authorization request / state
    # ------------------------------------------------------------------

    def _ensure_configured(self) -> None:
        if not self._configured:
            raise ServiceUnavailable("Partner integration is not configured.")

    def build_authorization_url(self, user_id: int) -> str:
        """Return the partner consent URL for user_id (client_id, redirect_uri, scope, state)."""
        self._ensure_configured()
        now = self._clock()
        state = jwt.encode(
            {
                "user_id": user_id,
                "nonce": uuid.uuid4().hex,
                "purpose": _STATE_PURPOSE,
                "iat": now,
                "exp": now + self._state_lifetime,
            },
            self._state_secret,
            algorithm=_STATE_ALGORITHM,
        )
        session = self._session_factory()
        try:
            url, _ = session.create_authorization_url(self.auth_url, state=state)
        finally:
            session.close()
        return url

    def verify_state(self, state: str, caller_user_id: int | None = None) -> int:
        """Return the user id bound into a state parameter.

        Raises InvalidState for a forged, expired or malformed state, and for a
        state minted for someone other than an authenticated caller.
        """
        try:
            claims = jwt.decode(state, self._state_secret, algorithms=[_STATE_ALGORITHM])
        except JWTError as exc:
            raise InvalidState(detail="state signature or expiry check failed") from exc
        user_id = claims.get("user_id")
        if claims.get("purpose") != _STATE_PURPOSE or not isinstance(user_id, int) or isinstance(user_id, bool):
            raise InvalidState(detail="state payload has an unexpected shape")
        if caller_user_id is not None and caller_user_id != user_id:
            logger.warning("OAuth state for user_id=%s presented by user_id=%s", user_id, caller_user_id)
            raise InvalidState(detail="state was issued to a different user")
        return user_id

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def _expiry(self, token: dict) -> datetime:
        try:
            expires_in = int(token["expires_in"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ExchangeFailed(detail="token response has no usable expires_in") from exc
        return self._clock() + timedelta(seconds=expires_in)

    def _call_token_endpoint(self, grant: Callable[[OAuth2Session], dict], user_id: int, grant_type: str) -> dict:
        session = self._session_factory()
        try:
            return grant(session)
        except ExchangeFailed as exc:
            # Raised by the response hooks on a 4xx/5xx token response.
            logger.error("Partner rejected %s grant for user_id=%s: %s", grant_type, user_id, exc.detail)
            raise
        except requests.Timeout as exc:
            logger.error("Partner %s grant timed out for user_id=%s", grant_type, user_id)
            raise NetworkTimeout() from exc
        except OAuthError as exc:
            detail = f"{exc.error}: {exc.description}" if exc.description else str(exc.error)
            logger.error("Partner rejected %s grant for user_id=%s: %s", grant_type, user_id, detail)
            if grant_type == "refresh_token":
                raise ReauthorizationRequired(detail=detail) from exc
            raise ExchangeFailed(detail=detail) from exc
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            body = exc.response.text[:500] if exc.response is not None else ""
            logger.error("Partner %s grant failed for user_id=%s: HTTP %s", grant_type, user_id, status)
            raise ExchangeFailed(detail=f"HTTP {status}: {body}") from exc
        except (requests.RequestException, ValueError) as exc:
            logger.error("Partner %s grant failed for user_id=%s: %s", grant_type, user_id, type(exc).__name__)
            raise ExchangeFailed(detail=str(exc)) from exc
        finally:
            session.close()

    def exchange_code(self, code: str, user_id: int) -> IntegrationToken:
        """Run the authorization_code grant and upsert the user's token row."""
        self._ensure_configured()
        with self._holding(self._slot_for(user_id)):
            logger.info("Exchanging authorization code for user_id=%s (redirect_uri=%s)", user_id, self.redirect_uri)
            token = self._call_token_endpoint(
                lambda s: s.fetch_token(
                    self.token_url,
                    grant_type="authorization_code",
                    code=code,
                    timeout=self.http_timeout,
                ),
                user_id,
                "authorization_code",
            )
            access_token = token.get("access_token")
            if not access_token:
                logger.error("Partner token response for user_id=%s has no access_token", user_id)
                raise ExchangeFailed(detail="No access token received from partner.")
            scopes = token.get("scope") or self.scopes
            if isinstance(scopes, (list, tuple)):
                scopes = " ".join(scopes)
            with database_guard():
                stored = self.store.upsert(
                    IntegrationToken(
                        user_id=user_id,
                        access_token=access_token,
                        refresh_token=token.get("refresh_token"),
                        expires_at=self._expiry(token),
                        scopes=scopes,
                        updated_at=self._clock(),
                    )
                )
            logger.info("Partner integration connected for user_id=%s", user_id)
            return stored

    def get_valid_access_token(self, user_id: int) -> str:
        """Return an access token valid for at least the refresh-ahead window.

        Raises NotConnected, ReauthorizationRequired, ExchangeFailed or
        NetworkTimeout. Callers that queued behind a refresh that failed get
        that failure without a second grant.
        """
        slot = self._slot_for(user_id)
        seen_failures = slot.failures
        with self._holding(slot):
            with database_guard():
                row = self.store.get(user_id)
            if row is None:
                raise NotConnected()
            if self._clock() < row.expires_at - self.refresh_ahead:
                return row.access_token
            if slot.failures != seen_failures and slot.failed_refresh_token == row.refresh_token:
                failure = slot.failure
                logger.info("Reusing failed partner refresh outcome for user_id=%s", user_id)
                raise type(failure)(failure.message, detail=failure.detail)
            try:
                return self._refresh(row)
            except AuthError as exc:
                slot.failures += 1
                slot.failed_refresh_token = row.refresh_token
                slot.failure = type(exc)(exc.message, detail=exc.detail)
                raise

    def _refresh(self, row: IntegrationToken) -> str:
        """Refresh grant for a row whose lock the caller holds."""
        if not row.refresh_token:
            raise ReauthorizationRequired(detail="no refresh token stored")
        logger.info("Refreshing partner access token for user_id=%s (expires %s)", row.user_id, row.expires_at)
        token = self._call_token_endpoint(
            lambda s: s.refresh_token(
                self.token_url,
                refresh_token=row.refresh_token,
                timeout=self.http_timeout,
            ),
            row.user_id,
            "refresh_token",
        )
        access_token = token.get("access_token")
        if not access_token:
            raise ReauthorizationRequired(detail="refresh response has no access_token")
        # Partners may omit a new refresh token; the old one stays valid then.
        refresh_token = token.get("refresh_token") or row.refresh_token
        with database_guard():
            still_connected = self.store.update_tokens(
                row.user_id,
                access_token,
                refresh_token,
                self._expiry(token),
                self._clock(),
            )
        if not still_connected:
            raise NotConnected()
        return access_token

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def is_connected(self, user_id: int) -> bool:
        """True if a token row exists. Never raises: lookup failure reads as disconnected."""
        try:
            return self.store.get(user_id) is not None
        except Exception:
            logger.exception("Error checking partner connection for user_id=%s", user_id)
            return False

    def connection_status(self, user_id: int) -> dict:
        if self.is_connected(user_id):
            return {"connected": True, "auth_url": None}
        auth_url = self.build_authorization_url(user_id) if self._configured else None
        return {"connected": False, "auth_url": auth_url}

    def disconnect(self, user_id: int) -> bool:
        with self._holding(self._slot_for(user_id)):
            with database_guard():
                removed = self.store.delete(user_id)
        logger.info("Partner integration disconnected for user_id=%s (rows=%d)", user_id, removed)
        return removed > 0
