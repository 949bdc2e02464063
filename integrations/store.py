"""
integrations/store.py -- SQLAlchemy Core persistence for partner OAuth tokens.

Pattern: Repository + Data Mapper, same as auth/store.py.

At-most-one-row-per-user is enforced twice: a UNIQUE constraint on user_id,
and upsert() writing through a single ``INSERT ... ON CONFLICT (user_id) DO
UPDATE`` statement. There is no read-then-branch window in which two
concurrent OAuth callbacks could both decide to insert.

Supported dialects: SQLite and PostgreSQL (both implement ON CONFLICT).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, Integer, MetaData, String, Table, Text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine

from core.database import from_iso, to_iso, utcnow
from integrations.models import IntegrationToken

_metadata = MetaData()

_integration_tokens = Table(
    "integration_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, unique=True),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("expires_at", String(32), nullable=False),
    Column("scopes", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class IntegrationTokenStore:
    def __init__(self, engine: Engine) -> None:
        if engine.dialect.name not in _UPSERT_DIALECTS:
            raise ValueError(f"IntegrationTokenStore does not support the {engine.dialect.name!r} dialect")
        self.engine = engine
        self._insert = _UPSERT_DIALECTS[engine.dialect.name]
        _metadata.create_all(self.engine)

    def get(self, user_id: int) -> IntegrationToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _integration_tokens.select().where(_integration_tokens.c.user_id == user_id)
            ).fetchone()
        return _row_to_token(row) if row is not None else None

    def upsert(self, token: IntegrationToken) -> IntegrationToken | None:
        """Insert or replace the user's row atomically and return the stored state."""
        now = to_iso(token.updated_at or utcnow())
        values = {
            "access_token": token.access_token,
            "refresh_token": token.refresh_token,
            "expires_at": to_iso(token.expires_at),
            "scopes": token.scopes,
            "updated_at": now,
        }
        stmt = self._insert(_integration_tokens).values(user_id=token.user_id, created_at=now, **values)
        stmt = stmt.on_conflict_do_update(index_elements=[_integration_tokens.c.user_id], set_=values)
        with self.engine.connect() as conn:
            conn.execute(stmt)
            conn.commit()
        return self.get(token.user_id)

    def update_tokens(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
        updated_at: datetime,
    ) -> bool:
        """Replace the token pair after a refresh. Returns False if the row vanished (disconnect)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _integration_tokens.update()
                .where(_integration_tokens.c.user_id == user_id)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_at=to_iso(expires_at),
                    updated_at=to_iso(updated_at),
                )
            )
            conn.commit()
        return result.rowcount > 0

    def delete(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_integration_tokens.delete().where(_integration_tokens.c.user_id == user_id))
            conn.commit()
        return result.rowcount


def _row_to_token(row) -> IntegrationToken:
    return IntegrationToken(
        id=row.id,
        user_id=row.user_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=from_iso(row.expires_at),
        scopes=row.scopes,
        updated_at=from_iso(row.updated_at),
    )
