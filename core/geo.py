"""
core/geo.py -- IP address to approximate location lookup.

Two implementations of the same ``lookup(ip) -> str | None`` interface:

  NullGeoLocator  -- always None. Used when GEO_LOOKUP_URL is not configured
                     and in tests.
  HttpGeoLocator  -- queries an ip-api.com compatible JSON endpoint
                     (``{"status": "success", "city": ..., "countryCode": ...}``)
                     with a short timeout.

Lookups are best-effort. Any failure -- network error, non-JSON body, a
private or malformed address -- yields None, which the session registry
records as "unknown". A location service outage must never block a login.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Protocol

import requests

logger = logging.getLogger("crmidentity.geo")


class GeoLocator(Protocol):
    def lookup(self, ip: str) -> str | None: ...


class NullGeoLocator:
    def lookup(self, ip: str) -> str | None:
        return None


def is_public_ip(ip: str) -> bool:
    """Return True only for globally routable addresses worth looking up."""
    try:
        return ipaddress.ip_address(ip).is_global
    except ValueError:
        return False


class HttpGeoLocator:
    """Resolve "City, CC" from a JSON geo-IP endpoint.

    url_template must contain one ``{ip}`` placeholder, e.g.
    ``http://ip-api.com/json/{ip}?fields=status,city,countryCode``.
    """

    def __init__(self, url_template: str, timeout: float = 2.0, session: requests.Session | None = None) -> None:
        self.url_template = url_template
        self.timeout = timeout
        # Shared session for connection pooling; redirects capped as in every
        # other outbound client.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def lookup(self, ip: str) -> str | None:
        if not is_public_ip(ip):
            return None
        try:
            resp = self._session.get(self.url_template.format(ip=ip), timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning("Geo lookup failed for %s: %s", ip, e)
            return None
        if not isinstance(data, dict) or data.get("status", "success") != "success":
            return None
        city = data.get("city")
        country = data.get("countryCode") or data.get("country")
        if city and country:
            return f"{city}, {country}"
        return country or None


def build_geo_locator(url_template: str, timeout: float = 2.0) -> GeoLocator:
    if url_template:
        return HttpGeoLocator(url_template, timeout=timeout)
    return NullGeoLocator()
