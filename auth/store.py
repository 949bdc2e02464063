"""
auth/store.py -- SQLAlchemy Core persistence layer for users and sessions.

Pattern: Repository + Data Mapper. UserStore is the repository;
_row_to_user / _row_to_session are the mappers. Service code never touches
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  Every session state change is a single conditional UPDATE
  (``... WHERE is_active = 1``). Two requests racing to touch and invalidate
  the same session can therefore never resurrect it: once the deactivating
  UPDATE commits, the touch UPDATE matches zero rows.

  increment_token_generation() uses ``token_generation = token_generation + 1``
  in SQL, not read-modify-write in Python, so concurrent logout-all calls
  each advance the counter.

Layer rule: no imports from api/ or integrations/.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine

from auth.models import Session, User
from core.database import from_iso, to_iso, utcnow

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),
    Column("password_salt", String(64)),
    Column("role", String(30), nullable=False, server_default="AGENT"),
    Column("token_generation", Integer, nullable=False, server_default="0"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("ip_address", String(45), nullable=False),
    Column("user_agent_raw", Text, nullable=False),
    Column("device_class", String(50), nullable=False),
    Column("browser", String(50), nullable=False),
    Column("os", String(50), nullable=False),
    Column("approx_location", String(255), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_activity_at", String(32), nullable=False),
    Index("ix_sessions_user_active", "user_id", "is_active"),
    Index("ix_sessions_active_activity", "is_active", "last_activity_at"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and Session entities.

    Usage:
        store = UserStore(create_db_engine("sqlite:///crm_identity.db"))
        uid = store.create_user(User(email="a@x.com", role="AGENT", password_hash=...))
        user = store.get_by_email("a@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        The orchestrator catches it as the signal that a concurrent register
        won the race.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    password_hash=user.password_hash,
                    password_salt=user.password_salt,
                    role=user.role,
                    token_generation=user.token_generation,
                    created_at=to_iso(user.created_at or utcnow()),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_last_login(self, user_id: int, when: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login_at=to_iso(when)))
            conn.commit()

    def increment_token_generation(self, user_id: int) -> int:
        """Advance the user's token generation and return the new value.

        Raises LookupError if the user does not exist.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(token_generation=_users.c.token_generation + 1)
            )
            if result.rowcount == 0:
                raise LookupError(f"user {user_id} not found")
            return conn.execute(select(_users.c.token_generation).where(_users.c.id == user_id)).scalar_one()

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        """Persist a new active session, assigning id and timestamps if unset."""
        session.id = session.id or str(uuid.uuid4())
        now = utcnow()
        session.created_at = session.created_at or now
        session.last_activity_at = session.last_activity_at or session.created_at
        session.is_active = True
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent_raw=session.user_agent_raw,
                    device_class=session.device_class,
                    browser=session.browser,
                    os=session.os,
                    approx_location=session.approx_location,
                    is_active=1,
                    created_at=to_iso(session.created_at),
                    last_activity_at=to_iso(session.last_activity_at),
                )
            )
            conn.commit()
        return session

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, session_id: str, when: datetime) -> bool:
        """Stamp last_activity_at on an active session. Returns False if inactive or missing."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.is_active == 1))
                .values(last_activity_at=to_iso(when))
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_session(self, session_id: str) -> bool:
        """Flip one session inactive. Returns True only for the call that flipped it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_user_sessions(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def deactivate_idle_sessions(self, cutoff: datetime) -> int:
        """Deactivate every active session whose last activity precedes cutoff."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.is_active == 1) & (_sessions.c.last_activity_at < to_iso(cutoff)))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def list_active_sessions(self, user_id: int) -> list[Session]:
        """Return a user's active sessions, most recently active first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.is_active == 1))
                .order_by(_sessions.c.last_activity_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def active_sessions_created_since(self, user_id: int, since: datetime) -> list[Session]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.is_active == 1)
                    & (_sessions.c.created_at > to_iso(since))
                )
                .order_by(_sessions.c.created_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        password_salt=row.password_salt,
        role=row.role,
        token_generation=row.token_generation,
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent_raw=row.user_agent_raw,
        device_class=row.device_class,
        browser=row.browser,
        os=row.os,
        approx_location=row.approx_location,
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
        last_activity_at=from_iso(row.last_activity_at),
    )
