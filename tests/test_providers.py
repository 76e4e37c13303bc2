"""Tests for the GPS stream provider and reverse geocoding."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
import requests

from route_matcher.errors import StreamFetchError, StreamRateLimitedError
from route_matcher.providers.geocoding import (
    NominatimGeocoder,
    cache_key,
    extract_location_name,
    generate_route_name,
)
from route_matcher.providers.rate_limiter import RateLimiter
from route_matcher.providers.streams import HttpStreamProvider, parse_latlng_stream


class _FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _FakeSession:
    def __init__(self, responses: List[Any]):
        self._responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> _FakeResponse:
        self.calls.append({"url": url, **kwargs})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _limiter() -> RateLimiter:
    return RateLimiter(max_concurrent=2, jitter_range=(0.0, 0.0))


# --- Streams -----------------------------------------------------------
def test_parse_latlng_stream_shapes():
    assert parse_latlng_stream({"latlng": [[1.0, 2.0], None, [3.0]]}) == [[1.0, 2.0]]
    assert parse_latlng_stream({"latlng": {"data": [[1.0, 2.0]]}}) == [[1.0, 2.0]]
    assert parse_latlng_stream(
        [{"type": "watts", "data": [1]}, {"type": "latlng", "data": [1.0, 3.0], "data2": [2.0, 4.0]}]
    ) == [[1.0, 2.0], [3.0, 4.0]]
    assert parse_latlng_stream("nonsense") == []


def test_stream_provider_returns_latlng():
    session = _FakeSession([_FakeResponse(payload={"latlng": [[51.5, -0.1], [51.6, -0.2]]})])
    provider = HttpStreamProvider(
        base_url="https://example.test/api/", api_key="k", limiter=_limiter(), session=session
    )
    payload = provider.get_activity_streams("42")
    assert payload == {"latlng": [[51.5, -0.1], [51.6, -0.2]]}
    call = session.calls[0]
    assert call["url"] == "https://example.test/api/activity/42/streams"
    assert call["params"] == {"types": "latlng"}
    assert call["auth"] == ("API_KEY", "k")


@pytest.mark.parametrize(
    "response, error",
    [
        (_FakeResponse(status_code=429), StreamRateLimitedError),
        (_FakeResponse(status_code=404), StreamFetchError),
        (_FakeResponse(payload=ValueError("bad json")), StreamFetchError),
        (requests.ConnectionError("down"), StreamFetchError),
    ],
)
def test_stream_provider_errors(response, error):
    provider = HttpStreamProvider(limiter=_limiter(), session=_FakeSession([response]))
    with pytest.raises(error):
        provider.get_activity_streams("1")


# --- Geocoding ---------------------------------------------------------
def test_extract_location_name_preference():
    assert extract_location_name({"name": "Hyde Park", "address": {"road": "X"}}) == "Hyde Park"
    assert extract_location_name({"name": "12", "address": {"road": "Mall", "suburb": "Soho"}}) == "Mall, Soho"
    assert extract_location_name({"address": {"village": "Ham"}}) == "Ham"
    assert extract_location_name({"address": {"city": "Leeds", "county": "Yorks"}}) == "Leeds, Yorks"
    assert extract_location_name({"address": {}}) is None
    assert extract_location_name({}) is None


class _StubGeocoder:
    def __init__(self, names: Dict[tuple, Optional[str]]):
        self._names = names

    def reverse_geocode(self, lat: float, lng: float) -> Optional[str]:
        return self._names.get((lat, lng))


def test_generate_route_name_variants():
    geocoder = _StubGeocoder({(1.0, 1.0): "Richmond Park", (2.0, 2.0): "Kew Bridge, Brentford Riverside"})
    assert generate_route_name(geocoder, (1.0, 1.0), (1.0, 1.0), True) == "Richmond Park Loop"
    assert generate_route_name(geocoder, (1.0, 1.0), (2.0, 2.0), False) == "Richmond Park to Kew Bridge"
    assert generate_route_name(geocoder, (1.0, 1.0), (1.0, 1.0), False) == "Richmond Park"
    assert generate_route_name(geocoder, (3.0, 3.0), (2.0, 2.0), False) == "Kew Bridge"
    assert generate_route_name(geocoder, (3.0, 3.0), (4.0, 4.0), False) is None


def test_nominatim_caches_by_rounded_coordinate():
    session = _FakeSession([_FakeResponse(payload={"name": "Bushy Park", "address": {}})])
    geocoder = NominatimGeocoder(url="https://geo.test/reverse", session=session, limiter=_limiter())
    assert geocoder.reverse_geocode(51.41001, -0.33501) == "Bushy Park"
    assert geocoder.reverse_geocode(51.41002, -0.33502) == "Bushy Park"
    assert len(session.calls) == 1
    assert session.calls[0]["params"]["lat"] == 51.41001
    assert cache_key(51.41001, -0.33501) == cache_key(51.41002, -0.33502)


def test_nominatim_failures_return_none():
    session = _FakeSession(
        [requests.Timeout("slow"), _FakeResponse(status_code=500), _FakeResponse(payload=ValueError("bad"))]
    )
    geocoder = NominatimGeocoder(session=session, limiter=_limiter())
    assert geocoder.reverse_geocode(1.0, 1.0) is None
    assert geocoder.reverse_geocode(1.0, 1.0) is None
    assert geocoder.reverse_geocode(1.0, 1.0) is None
    # Failures are not cached.
    assert len(session.calls) == 3
