"""GPS stream provider interface and its HTTP implementation."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests
from requests import Session

from ..config import REQUEST_TIMEOUT, STREAMS_API_KEY, STREAMS_BASE_URL
from ..errors import StreamFetchError, StreamRateLimitedError
from .rate_limiter import RateLimiter
from .session import create_session

StreamPayload = Dict[str, List[List[float]]]


class StreamProvider(Protocol):
    """Anything able to return an activity's lat/lng stream."""

    def get_activity_streams(
        self, activity_id: str, keys: Sequence[str] = ("latlng",)
    ) -> StreamPayload: ...


class HttpStreamProvider:
    """Fetches ``latlng`` streams over HTTP through a shared rate limiter.

    Accepts either a ``{"latlng": [[lat, lng], ...]}`` object or a list of
    stream objects (``{"type": "latlng", "data": lats, "data2": lngs}``).
    """

    def __init__(
        self,
        base_url: str = STREAMS_BASE_URL,
        api_key: str = STREAMS_API_KEY,
        limiter: Optional[RateLimiter] = None,
        session: Optional[Session] = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = ("API_KEY", api_key) if api_key else None
        self._limiter = limiter or RateLimiter()
        self._session = session or create_session()
        self._timeout = timeout
        self._log = logging.getLogger(self.__class__.__name__)

    def get_activity_streams(
        self, activity_id: str, keys: Sequence[str] = ("latlng",)
    ) -> StreamPayload:
        url = f"{self._base_url}/activity/{activity_id}/streams"
        self._limiter.before_request()
        headers = None
        status = None
        try:
            response = self._session.get(
                url,
                params={"types": ",".join(keys)},
                auth=self._auth,
                timeout=self._timeout,
            )
            headers, status = response.headers, response.status_code
        except requests.RequestException as exc:
            raise StreamFetchError(
                f"Stream request failed for activity={activity_id}: {exc}"
            ) from exc
        finally:
            self._limiter.after_response(headers, status)

        if status == 429:
            raise StreamRateLimitedError(f"Rate limited fetching activity={activity_id}")
        if status is None or status >= 400:
            raise StreamFetchError(
                f"Stream request for activity={activity_id} returned HTTP {status}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise StreamFetchError(
                f"Invalid stream JSON for activity={activity_id}"
            ) from exc
        latlng = parse_latlng_stream(payload)
        self._log.debug("Fetched %d points for activity=%s", len(latlng), activity_id)
        return {"latlng": latlng}


def parse_latlng_stream(payload: Any) -> List[List[float]]:
    """Normalise the supported stream payload shapes to ``[[lat, lng], ...]``."""

    if isinstance(payload, dict):
        raw = payload.get("latlng")
        if isinstance(raw, dict):
            raw = raw.get("data")
        return [list(p) for p in raw or [] if p is not None and len(p) == 2]
    if isinstance(payload, list):
        for stream in payload:
            if not isinstance(stream, dict) or stream.get("type") != "latlng":
                continue
            data = stream.get("data") or []
            data2 = stream.get("data2")
            if data2 is not None:
                return [[lat, lng] for lat, lng in zip(data, data2)]
            return [list(p) for p in data if p is not None and len(p) == 2]
    return []
