"""Upstream collaborators: GPS streams and reverse geocoding."""

from .geocoding import Geocoder, NominatimGeocoder, extract_location_name, generate_route_name
from .rate_limiter import RateLimiter
from .session import create_session
from .streams import HttpStreamProvider, StreamProvider, parse_latlng_stream

__all__ = [
    "Geocoder",
    "NominatimGeocoder",
    "extract_location_name",
    "generate_route_name",
    "RateLimiter",
    "create_session",
    "HttpStreamProvider",
    "StreamProvider",
    "parse_latlng_stream",
]
