"""
IP geolocation provider (ipapi.co-compatible JSON API).

The provider is strictly best-effort: any failure (timeout, HTTP error,
malformed body, rate limiting) produces an "Unknown" sample. Location risk then
treats the attempt as an unknown location instead of blocking the login.
"""
import ipaddress
import logging
from datetime import datetime
from typing import Optional

import httpx

from accessgate.config import settings
from accessgate.schemas.ledger import UNKNOWN, LocationSample

logger = logging.getLogger(__name__)


def _is_public(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_global


def _coordinate(value) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class IpApiGeolocationProvider:
    def __init__(
        self,
        url_template: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url_template = url_template or settings.geolocation_url_template
        self.timeout = httpx.Timeout(timeout_seconds or settings.geolocation_timeout_seconds)
        self._transport = transport

    async def lookup(self, ip: str, observed_at: datetime) -> LocationSample:
        if not _is_public(ip):
            # Loopback/private ranges have no meaningful geolocation
            return LocationSample.unknown(ip, observed_at)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url_template.format(ip=ip))
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"Geolocation lookup failed: {exc.__class__.__name__}")
            return LocationSample.unknown(ip, observed_at)

        if not isinstance(data, dict) or data.get("error"):
            return LocationSample.unknown(ip, observed_at)

        latitude = _coordinate(data.get("latitude"))
        longitude = _coordinate(data.get("longitude"))
        if latitude is None or longitude is None:
            latitude = longitude = None

        return LocationSample(
            ip=ip,
            city=data.get("city") or UNKNOWN,
            country=data.get("country_name") or UNKNOWN,
            latitude=latitude,
            longitude=longitude,
            observed_at=observed_at,
        )
