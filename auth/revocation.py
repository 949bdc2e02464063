"""
auth/revocation.py -- Shared, TTL-pruned store of revoked token identifiers.

A revoked token stays signed and unexpired, so the only way to reject it is
to remember its identifier (the ``jti`` claim) until its own expiry passes.
After that the signature check rejects it anyway and the record is dead
weight -- purge_expired() removes it.

The records live in the same SQL database as users and sessions, so every
API process pointed at one DATABASE_URL sees the same revocations. Processes
with separate databases do NOT share revocations; that is a deployment
limitation, not something this module papers over.

Usage:
    revocations = RevocationStore(engine)
    revocations.add(jti, expires_at)
    revocations.contains(jti)            # True until pruned
    revocations.purge_expired(utcnow())  # call periodically to trim old entries
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import Column, Index, MetaData, String, Table, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from core.database import to_iso

logger = logging.getLogger("crmidentity.auth.revocation")

_metadata = MetaData()

_revoked_tokens = Table(
    "revoked_tokens",
    _metadata,
    Column("jti", String(64), primary_key=True),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32), nullable=False),
    Index("ix_revoked_tokens_expires_at", "expires_at"),
)


class RevocationStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(self.engine)

    def add(self, jti: str, expires_at: datetime, revoked_at: datetime) -> bool:
        """Record jti as revoked until expires_at. Returns False if it already was.

        The primary key makes concurrent revocations of the same token safe:
        exactly one insert wins, the others hit IntegrityError, and either way
        the token ends up revoked.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _revoked_tokens.insert().values(
                        jti=jti,
                        expires_at=to_iso(expires_at),
                        revoked_at=to_iso(revoked_at),
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def contains(self, jti: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_revoked_tokens.c.jti).where(_revoked_tokens.c.jti == jti)).fetchone()
        return row is not None

    def purge_expired(self, now: datetime) -> int:
        """Delete records whose token has expired. Returns number of rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_revoked_tokens.delete().where(_revoked_tokens.c.expires_at < to_iso(now)))
            conn.commit()
        if result.rowcount:
            logger.info("Pruned %d expired revocation records", result.rowcount)
        return result.rowcount
