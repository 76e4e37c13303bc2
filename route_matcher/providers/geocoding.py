"""Reverse geocoding used to give route groups human-readable names."""

from __future__ import annotations

import logging
import re
from threading import RLock
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

import requests
from cachetools import TTLCache
from requests import Session

from ..config import (
    GEOCODER_CACHE_PRECISION,
    GEOCODER_CACHE_SIZE,
    GEOCODER_CACHE_TTL_SECONDS,
    GEOCODER_MIN_INTERVAL_SECONDS,
    GEOCODER_USER_AGENT,
    NOMINATIM_URL,
    REQUEST_TIMEOUT,
    ROUTE_NAME_MAX_PART_LENGTH,
)
from ..models import LatLng
from .rate_limiter import RateLimiter
from .session import create_session

_CacheKey = Tuple[float, float]
_LEADING_DIGIT = re.compile(r"^\d")


class Geocoder(Protocol):
    def reverse_geocode(self, lat: float, lng: float) -> Optional[str]: ...


def cache_key(lat: float, lng: float) -> _CacheKey:
    """Round to roughly 500 m so nearby points share a lookup."""

    precision = GEOCODER_CACHE_PRECISION
    return (round(lat * precision) / precision, round(lng * precision) / precision)


def extract_location_name(payload: Mapping[str, Any]) -> Optional[str]:
    """Pick the most specific short name from a Nominatim response."""

    address = payload.get("address")
    if not isinstance(address, Mapping):
        return None
    name = payload.get("name")
    if name and not _LEADING_DIGIT.match(str(name)):
        return str(name)
    road = address.get("road")
    if road:
        qualifier = address.get("neighbourhood") or address.get("suburb")
        if qualifier and qualifier != road:
            return f"{road}, {qualifier}"
        return str(road)
    for key in ("neighbourhood", "suburb", "village", "town"):
        if address.get(key):
            return str(address[key])
    city = address.get("city")
    if city:
        qualifier = address.get("county") or address.get("state")
        return f"{city}, {qualifier}" if qualifier else str(city)
    return None


def _short(name: str) -> str:
    if len(name) > ROUTE_NAME_MAX_PART_LENGTH and "," in name:
        return name.split(",")[0].strip()
    return name


def generate_route_name(
    geocoder: Geocoder, start: LatLng, end: LatLng, is_loop: bool
) -> Optional[str]:
    """Build "X Loop" or "A to B" from geocoded endpoints."""

    start_name = geocoder.reverse_geocode(start[0], start[1])
    if is_loop:
        return f"{_short(start_name)} Loop" if start_name else None
    end_name = geocoder.reverse_geocode(end[0], end[1])
    if start_name and end_name:
        if start_name == end_name:
            return _short(start_name)
        return f"{_short(start_name)} to {_short(end_name)}"
    if start_name or end_name:
        return _short(start_name or end_name or "")
    return None


class NominatimGeocoder:
    """OpenStreetMap Nominatim client, limited to one request per second.

    Lookups are cached in memory by rounded coordinate. Failures are logged
    and reported as None.
    """

    def __init__(
        self,
        url: str = NOMINATIM_URL,
        session: Optional[Session] = None,
        limiter: Optional[RateLimiter] = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._url = url
        self._session = session or create_session(
            {"User-Agent": GEOCODER_USER_AGENT, "Accept-Language": "en"}
        )
        self._limiter = limiter or RateLimiter(
            max_concurrent=1,
            jitter_range=(0.0, 0.0),
            min_interval=GEOCODER_MIN_INTERVAL_SECONDS,
        )
        self._timeout = timeout
        self._cache: TTLCache[_CacheKey, Optional[str]] = TTLCache(
            maxsize=GEOCODER_CACHE_SIZE, ttl=GEOCODER_CACHE_TTL_SECONDS
        )
        self._cache_lock = RLock()
        self._log = logging.getLogger(self.__class__.__name__)

    def reverse_geocode(self, lat: float, lng: float) -> Optional[str]:
        key = cache_key(lat, lng)
        with self._cache_lock:
            if key in self._cache:
                return self._cache[key]
        name = self._lookup(lat, lng)
        if name is not None:
            with self._cache_lock:
                self._cache[key] = name
        return name

    def _lookup(self, lat: float, lng: float) -> Optional[str]:
        params: Dict[str, Any] = {
            "format": "json",
            "lat": lat,
            "lon": lng,
            "zoom": 18,
            "addressdetails": 1,
        }
        self._limiter.before_request()
        headers = None
        status = None
        try:
            response = self._session.get(self._url, params=params, timeout=self._timeout)
            headers, status = response.headers, response.status_code
            if status != 200:
                self._log.warning("Nominatim returned HTTP %s", status)
                return None
            return extract_location_name(response.json())
        except (requests.RequestException, ValueError) as exc:
            self._log.warning("Reverse geocoding failed for %.5f,%.5f: %s", lat, lng, exc)
            return None
        finally:
            self._limiter.after_response(headers, status)
