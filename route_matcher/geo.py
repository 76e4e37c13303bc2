"""Geographic helpers: haversine distances, route length and point hygiene."""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence

import numpy as np
from numpy.typing import NDArray

from .config import (
    EARTH_RADIUS_M,
    MAX_STEP_DISTANCE_M,
    OUTLIER_STEP_FACTOR,
    OUTLIER_STEP_MIN_M,
    REGION_GRID_DEGREES,
)
from .models import LatLng

FloatArray = NDArray[np.float64]


def haversine(a: Sequence[float], b: Sequence[float]) -> float:
    """Great-circle distance in metres between two (lat, lng) points."""

    lat1, lng1 = math.radians(a[0]), math.radians(a[1])
    lat2, lng2 = math.radians(b[0]), math.radians(b[1])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = (
        math.sin(dlat / 2.0) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2.0) ** 2
    )
    return 2.0 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1.0 - h))


def as_latlng_array(points: Iterable[Sequence[float]]) -> FloatArray:
    array = np.asarray(list(points), dtype=float)
    if array.size == 0:
        return np.empty((0, 2), dtype=float)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError("Expected a sequence of (lat, lng) pairs")
    return array


def haversine_matrix(
    a: Iterable[Sequence[float]], b: Iterable[Sequence[float]]
) -> FloatArray:
    """Pairwise haversine distances (metres) as an ``len(a) x len(b)`` matrix."""

    arr_a = np.radians(as_latlng_array(a))
    arr_b = np.radians(as_latlng_array(b))
    lat1 = arr_a[:, 0][:, None]
    lat2 = arr_b[:, 0][None, :]
    dlat = lat2 - lat1
    dlng = arr_b[:, 1][None, :] - arr_a[:, 1][:, None]
    h = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng / 2.0) ** 2
    h = np.clip(h, 0.0, 1.0)
    return 2.0 * EARTH_RADIUS_M * np.arctan2(np.sqrt(h), np.sqrt(1.0 - h))


def step_distances(points: Sequence[Sequence[float]]) -> FloatArray:
    """Distances between consecutive points."""

    array = as_latlng_array(points)
    if len(array) < 2:
        return np.empty(0, dtype=float)
    rad = np.radians(array)
    dlat = np.diff(rad[:, 0])
    dlng = np.diff(rad[:, 1])
    h = (
        np.sin(dlat / 2.0) ** 2
        + np.cos(rad[:-1, 0]) * np.cos(rad[1:, 0]) * np.sin(dlng / 2.0) ** 2
    )
    h = np.clip(h, 0.0, 1.0)
    return 2.0 * EARTH_RADIUS_M * np.arctan2(np.sqrt(h), np.sqrt(1.0 - h))


def nearest_distances(
    points: Sequence[Sequence[float]], targets: Sequence[Sequence[float]]
) -> FloatArray:
    """For each point, the distance to the closest target point."""

    if len(points) == 0:
        return np.empty(0, dtype=float)
    if len(targets) == 0:
        return np.full(len(points), np.inf, dtype=float)
    return haversine_matrix(points, targets).min(axis=1)


def is_valid_point(point: Sequence[float]) -> bool:
    try:
        lat = float(point[0])
        lng = float(point[1])
    except (TypeError, ValueError, IndexError):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def filter_valid_points(points: Iterable[Sequence[float]]) -> List[LatLng]:
    """Drop NaN, non-numeric and out-of-range coordinates."""

    valid: List[LatLng] = []
    for point in points:
        if point is None or not is_valid_point(point):
            continue
        valid.append((float(point[0]), float(point[1])))
    return valid


def outlier_step_threshold(steps: FloatArray) -> float:
    """Step length above which a jump is treated as a GPS dropout."""

    if steps.size == 0:
        return MAX_STEP_DISTANCE_M
    median = float(np.median(steps))
    return min(max(median * OUTLIER_STEP_FACTOR, OUTLIER_STEP_MIN_M), MAX_STEP_DISTANCE_M)


def route_distance(points: Sequence[Sequence[float]]) -> float:
    """Path length in metres, skipping outlier jumps between fixes."""

    steps = step_distances(points)
    if steps.size == 0:
        return 0.0
    threshold = outlier_step_threshold(steps)
    return float(steps[steps <= threshold].sum())


def plain_distance(points: Sequence[Sequence[float]]) -> float:
    """Path length in metres with every step counted."""

    return float(step_distances(points).sum())


def region_hash(point: Sequence[float]) -> str:
    """Coarse grid-cell key for a coordinate (~500 m cells)."""

    lat_cell = math.floor(point[0] / REGION_GRID_DEGREES)
    lng_cell = math.floor(point[1] / REGION_GRID_DEGREES)
    return f"{lat_cell},{lng_cell}"


def meters_to_degrees(meters: float, latitude: float = 0.0) -> float:
    """Conservative degree span covering ``meters`` at the given latitude."""

    lat_deg = meters / 111_320.0
    cos_lat = max(math.cos(math.radians(latitude)), 0.01)
    return max(lat_deg, lat_deg / cos_lat)
