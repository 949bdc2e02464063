"""
core/useragent.py -- Best-effort User-Agent parsing for session metadata.

Sessions only need a coarse label for the "active devices" list: device class
(desktop/mobile/tablet/bot), browser family and OS family. Versions are not
recorded. Parsing is delegated to the user-agents package (ua-parser's
regex database underneath); this module only maps its result onto those
three labels. Anything unrecognised comes back as "unknown".

Families are ua-parser's names, e.g. "Chrome", "Mobile Safari", "Mac OS X",
"Ubuntu".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from user_agents import parse

logger = logging.getLogger("crmidentity.useragent")

UNKNOWN = "unknown"

# ua-parser's catch-all family
_OTHER = "Other"


@dataclass(frozen=True)
class UserAgentInfo:
    device: str = UNKNOWN
    browser: str = UNKNOWN
    os: str = UNKNOWN


def _family(value: str | None) -> str:
    if not value or value == _OTHER:
        return UNKNOWN
    return value


def parse_user_agent(user_agent: str | None) -> UserAgentInfo:
    """Classify a raw User-Agent header. Never raises."""
    ua_string = (user_agent or "").strip()
    if not ua_string or ua_string == UNKNOWN:
        return UserAgentInfo()

    try:
        ua = parse(ua_string)
    except Exception:
        logger.warning("Unparseable User-Agent header (%d chars)", len(ua_string))
        return UserAgentInfo()

    # Bots first: crawlers often also claim a desktop browser.
    if ua.is_bot:
        device = "bot"
    elif ua.is_tablet:
        device = "tablet"
    elif ua.is_mobile:
        device = "mobile"
    elif ua.is_pc:
        device = "desktop"
    else:
        device = UNKNOWN

    return UserAgentInfo(
        device=device,
        browser=_family(ua.browser.family),
        os=_family(ua.os.family),
    )
