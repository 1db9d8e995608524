"""
Location risk assessment.

Two independent signals, whichever is available:
  - IP geolocation (coarse city/country) → score_risk() gives 0–100
  - browser geolocation (precise lat/lng) → within_radius() gives a yes/no
    against the signup location

Neither is required; the orchestrator uses the precise check only when both
the current attempt and the reference sample carry coordinates.
"""
import logging
import math
from typing import Iterable, Optional, Protocol

from accessgate.config import settings
from accessgate.core.clock import Clock, system_clock
from accessgate.schemas.ledger import LocationSample

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

RISK_NEW_USER = 75
RISK_KNOWN_CITY = 10
RISK_KNOWN_COUNTRY = 30
RISK_DENYLISTED_COUNTRY = 90
RISK_NEW_COUNTRY = 60


class GeolocationProvider(Protocol):
    async def lookup(self, ip: str, observed_at) -> LocationSample: ...


async def resolve(provider: GeolocationProvider, ip: str, clock: Clock = system_clock) -> LocationSample:
    """
    Never raises: provider failures degrade to an Unknown sample.
    """
    observed_at = clock.now()
    try:
        return await provider.lookup(ip, observed_at)
    except Exception as exc:
        logger.warning(f"Geolocation provider error, using Unknown location: {exc.__class__.__name__}")
        return LocationSample.unknown(ip, observed_at)


def score_risk(
    current: LocationSample,
    history: Iterable[LocationSample],
    high_risk_countries: Optional[frozenset[str]] = None,
) -> int:
    """
    90  current country is denylisted (regardless of any history match)
    75  no history (new user)
    10  city seen before
    30  country seen before
    60  new, non-denylisted country
    """
    denylist = settings.high_risk_countries_set if high_risk_countries is None else high_risk_countries
    history = list(history)

    if current.country in denylist:
        return RISK_DENYLISTED_COUNTRY
    if not history:
        return RISK_NEW_USER
    if any(sample.city == current.city for sample in history):
        return RISK_KNOWN_CITY
    if any(sample.country == current.country for sample in history):
        return RISK_KNOWN_COUNTRY
    return RISK_NEW_COUNTRY


def verification_required(risk_score: int) -> bool:
    return risk_score > settings.location_risk_threshold


def haversine_distance_km(a: LocationSample, b: LocationSample) -> float:
    """Great-circle distance between two samples that both carry coordinates."""
    lat1, lng1 = math.radians(a.latitude), math.radians(a.longitude)
    lat2, lng2 = math.radians(b.latitude), math.radians(b.longitude)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def within_radius(
    current: LocationSample,
    reference: LocationSample,
    radius_km: Optional[float] = None,
) -> Optional[bool]:
    """
    True/False when both samples have coordinates, None when the precise check
    cannot be made.
    """
    if not (current.has_coordinates and reference.has_coordinates):
        return None
    limit = settings.location_radius_km if radius_km is None else radius_km
    return haversine_distance_km(current, reference) <= limit
