"""Global pytest fixtures & helpers.

Adds project root to path and provides synthetic GPS routes shared across
the matching, clustering and pipeline tests.
"""
from __future__ import annotations

import math
import os
import random
import sys
from typing import List, Sequence, Tuple

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from route_matcher.geo import region_hash
from route_matcher.models import Bounds, RouteSignature

LatLng = Tuple[float, float]

ORIGIN: LatLng = (51.5, -0.12)
METRES_PER_DEG_LAT = 111_320.0

# Waypoints in metres (east, north) from an origin.
L_ROUTE = [(0.0, 0.0), (1500.0, 0.0), (1500.0, 800.0)]
HOOK_ROUTE = [(0.0, 0.0), (0.0, 1200.0), (600.0, 1200.0), (600.0, 600.0)]
SQUARE_LOOP = [(0.0, 0.0), (400.0, 0.0), (400.0, 400.0), (0.0, 400.0), (0.0, 0.0)]


# --- Factory helpers -------------------------------------------------
def offset(origin: Sequence[float], east_m: float, north_m: float) -> LatLng:
    lat = origin[0] + north_m / METRES_PER_DEG_LAT
    lng = origin[1] + east_m / (METRES_PER_DEG_LAT * math.cos(math.radians(origin[0])))
    return (lat, lng)


def make_track(
    waypoints: Sequence[Tuple[float, float]],
    spacing_m: float = 10.0,
    origin: Sequence[float] = ORIGIN,
) -> List[LatLng]:
    """Interpolate metre waypoints into a dense lat/lng trace."""
    points: List[LatLng] = []
    for (x0, y0), (x1, y1) in zip(waypoints, waypoints[1:]):
        steps = max(1, int(math.hypot(x1 - x0, y1 - y0) // spacing_m))
        for k in range(steps):
            t = k / steps
            points.append(offset(origin, x0 + (x1 - x0) * t, y0 + (y1 - y0) * t))
    points.append(offset(origin, *waypoints[-1]))
    return points


def jitter(points: Sequence[LatLng], sigma_m: float = 3.0, seed: int = 0) -> List[LatLng]:
    rng = random.Random(seed)
    return [offset(p, rng.gauss(0.0, sigma_m), rng.gauss(0.0, sigma_m)) for p in points]


def make_signature(
    activity_id: str, points: Sequence[LatLng], distance: float, is_loop: bool = False
) -> RouteSignature:
    """Signature with exactly the given points (no simplification)."""
    return RouteSignature(
        activity_id=activity_id,
        points=tuple(points),
        distance=distance,
        bounds=Bounds.from_points(points),
        start_region=region_hash(points[0]),
        end_region=region_hash(points[-1]),
        is_loop=is_loop,
        point_count=len(points),
    )


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def l_track() -> List[LatLng]:
    return make_track(L_ROUTE)


@pytest.fixture
def hook_origin() -> LatLng:
    # ~5.5 km north of the L route so the two never overlap.
    return offset(ORIGIN, 0.0, 5500.0)


@pytest.fixture
def far_origin() -> LatLng:
    return offset(ORIGIN, 20_000.0, 0.0)
