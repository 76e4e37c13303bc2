"""Central error types used across the route matching engine."""

from __future__ import annotations


class RouteMatcherError(RuntimeError):
    """Base error for route matching failures."""


class StreamFetchError(RouteMatcherError):
    """Raised when an activity GPS stream cannot be retrieved."""


class StreamRateLimitedError(StreamFetchError):
    """Raised when the upstream provider rejects a request with HTTP 429."""


class CacheVersionError(RouteMatcherError):
    """Raised when a persisted cache was written with another schema version."""


__all__ = [
    "RouteMatcherError",
    "StreamFetchError",
    "StreamRateLimitedError",
    "CacheVersionError",
]
