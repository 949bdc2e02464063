"""
integrations/models.py -- Domain dataclass for stored partner credentials.

Pattern: Data class (pure data container, zero logic).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class IntegrationToken:
    """The partner OAuth credentials held for one user.

    At most one row exists per user_id. It is created by the first OAuth
    callback, updated in place by refresh and re-authorization, and deleted
    by disconnect.
    """

    user_id: int
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: str = ""
    id: int | None = None
    updated_at: datetime | None = None
