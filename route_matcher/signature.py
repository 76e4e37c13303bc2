"""Build compact route signatures from raw GPS traces.

A signature is the comparable form of an activity: a simplified, evenly
spaced point list plus the derived bounding box, endpoint region hashes and
loop flag. Simplification happens in a local metric projection so tolerances
and spacing are expressed in metres.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
import logging
import math
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from pyproj import CRS, Transformer
from pyproj.enums import TransformDirection
from shapely.geometry import LineString

from .config import (
    LOOP_THRESHOLD_M,
    SIGNATURE_BATCH_WORKERS,
    SIGNATURE_MAX_SPACING_M,
    SIGNATURE_MIN_SPACING_M,
    SIGNATURE_SIMPLIFY_TOLERANCE_M,
    SIGNATURE_TARGET_POINTS,
)
from .geo import filter_valid_points, haversine, region_hash, route_distance
from .models import Bounds, LatLng, RouteSignature

MetricArray = NDArray[np.float64]
TrackInput = Tuple[str, Sequence[Sequence[float]]]

_log = logging.getLogger(__name__)


@dataclass(slots=True)
class SignatureConfig:
    target_points: int = SIGNATURE_TARGET_POINTS
    simplify_tolerance_m: float = SIGNATURE_SIMPLIFY_TOLERANCE_M
    min_spacing_m: float = SIGNATURE_MIN_SPACING_M
    max_spacing_m: float = SIGNATURE_MAX_SPACING_M
    loop_threshold_m: float = LOOP_THRESHOLD_M


def build_signature(
    activity_id: str,
    latlngs: Iterable[Sequence[float]],
    config: Optional[SignatureConfig] = None,
) -> Optional[RouteSignature]:
    """Return the signature for one trace, or None when it has under 2 valid points."""

    cfg = config or SignatureConfig()
    valid = filter_valid_points(latlngs)
    if len(valid) < 2:
        _log.debug(
            "Skipping signature for activity=%s: %d valid points",
            activity_id,
            len(valid),
        )
        return None
    points = simplify_track(valid, cfg)
    start, end = valid[0], valid[-1]
    return RouteSignature(
        activity_id=str(activity_id),
        points=tuple(points),
        distance=route_distance(valid),
        bounds=Bounds.from_points(valid),
        start_region=region_hash(start),
        end_region=region_hash(end),
        is_loop=haversine(start, end) <= cfg.loop_threshold_m,
        point_count=len(points),
    )


def build_signatures_batch(
    tracks: Sequence[TrackInput],
    config: Optional[SignatureConfig] = None,
    max_workers: Optional[int] = None,
) -> List[RouteSignature]:
    """Build signatures for many traces, preserving input order.

    Traces that do not yield a signature are left out of the result.
    """

    if not tracks:
        return []
    cfg = config or SignatureConfig()
    workers = max(1, min(max_workers or SIGNATURE_BATCH_WORKERS, len(tracks)))

    def _build(track: TrackInput) -> Optional[RouteSignature]:
        activity_id, latlngs = track
        return build_signature(activity_id, latlngs, cfg)

    if workers == 1:
        results = [_build(track) for track in tracks]
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(_build, tracks))
    signatures = [sig for sig in results if sig is not None]
    _log.debug("Built %d/%d signatures in batch", len(signatures), len(tracks))
    return signatures


def resample_signature_points(
    latlngs: Iterable[Sequence[float]], config: Optional[SignatureConfig] = None
) -> Tuple[LatLng, ...]:
    """Recompute only the simplified point list for a raw trace."""

    valid = filter_valid_points(latlngs)
    if len(valid) < 2:
        return tuple(valid)
    return tuple(simplify_track(valid, config or SignatureConfig()))


def simplify_track(points: Sequence[LatLng], config: SignatureConfig) -> List[LatLng]:
    """Simplify then evenly resample a trace, returning lat/lng points."""

    if len(points) <= 2:
        return list(points)
    transformer = _build_local_transformer(points)
    metric = _project(points, transformer)
    target = point_budget(_path_length(metric), config)
    simplified = _simplify_with_budget(metric, config.simplify_tolerance_m, target)
    resampled = _resample_to_budget(simplified, config.min_spacing_m, target)
    if len(resampled) < 3:
        # Degenerate geometry (e.g. all fixes in one place).
        return _decimate(list(points), target)
    return _unproject(resampled, transformer)


def point_budget(length_m: float, config: SignatureConfig) -> int:
    """Number of resampled points for a path of ``length_m`` metres.

    ``target_points`` is used as is while it keeps the spacing within
    ``max_spacing_m``; longer paths get enough points to honour the cap.
    """

    target = max(2, config.target_points)
    if config.max_spacing_m > 0 and length_m > 0:
        target = max(target, int(math.ceil(length_m / config.max_spacing_m)) + 1)
    return target


def simplify_points(points: MetricArray, tolerance_m: float) -> MetricArray:
    """Douglas-Peucker simplification keeping the endpoints."""

    if len(points) < 3 or tolerance_m <= 0:
        return points
    line = LineString(points)
    simplified = line.simplify(tolerance_m, preserve_topology=False)
    coords = np.asarray(simplified.coords, dtype=float)
    if coords.ndim != 2 or len(coords) < 2:
        return points[[0, -1]]
    return coords


def resample_by_distance(points: MetricArray, interval_m: float) -> MetricArray:
    """Resample coordinates so successive points are ``interval_m`` metres apart."""

    if interval_m <= 0:
        raise ValueError("interval_m must be greater than zero")
    count = len(points)
    if count < 2:
        return points.copy()
    segment_lengths = np.linalg.norm(np.diff(points, axis=0), axis=1)
    cumulative = np.concatenate(([0.0], np.cumsum(segment_lengths)))
    total_length = float(cumulative[-1])
    if total_length == 0:
        return points[:1].copy()
    steps = int(np.floor(total_length / interval_m + 1e-9))
    targets = np.arange(steps + 1, dtype=float) * interval_m
    if total_length - targets[-1] > 1e-6 * interval_m:
        targets = np.append(targets, total_length)
    else:
        targets[-1] = total_length
    x = np.interp(targets, cumulative, points[:, 0])
    y = np.interp(targets, cumulative, points[:, 1])
    return np.column_stack((x, y))


def _simplify_with_budget(
    points: MetricArray, tolerance_m: float, max_points: int
) -> MetricArray:
    """Simplify, widening the tolerance while the output is over budget."""

    tolerance = max(tolerance_m, 0.0)
    simplified = simplify_points(points, tolerance)
    attempts = 0
    while len(simplified) > max_points and attempts < 5:
        tolerance = tolerance * 1.5 if tolerance > 0 else 1.0
        simplified = simplify_points(points, tolerance)
        attempts += 1
    return simplified


def _resample_to_budget(
    points: MetricArray, min_spacing_m: float, max_points: int
) -> MetricArray:
    """Resample to evenly spaced points, at most ``max_points`` of them."""

    if len(points) < 2:
        return points
    length = _path_length(points)
    if length == 0:
        return points[:1].copy()
    interval = max(length / float(max_points - 1), min_spacing_m, 1e-3)
    resampled = resample_by_distance(points, interval)
    if len(resampled) > max_points:
        indices = np.linspace(0, len(resampled) - 1, num=max_points).round().astype(int)
        resampled = resampled[indices]
    return resampled


def _path_length(points: MetricArray) -> float:
    if len(points) < 2:
        return 0.0
    return float(np.linalg.norm(np.diff(points, axis=0), axis=1).sum())


def _decimate(points: List[LatLng], max_points: int) -> List[LatLng]:
    """Uniformly sample down to ``max_points`` while keeping both endpoints."""

    if len(points) <= max_points:
        return list(points)
    indices = np.linspace(0, len(points) - 1, num=max_points).round().astype(int)
    return [points[i] for i in indices]


def _build_local_transformer(points: Sequence[LatLng]) -> Transformer:
    """Build a local UTM transformer centred on the provided coordinates."""

    mean_lat = float(np.mean([pt[0] for pt in points]))
    mean_lng = float(np.mean([pt[1] for pt in points]))
    zone = int((mean_lng + 180.0) // 6.0) + 1
    zone = max(1, min(zone, 60))
    epsg = 32600 + zone if mean_lat >= 0 else 32700 + zone
    return Transformer.from_crs(
        CRS.from_epsg(4326), CRS.from_epsg(epsg), always_xy=True
    )


def _project(points: Sequence[LatLng], transformer: Transformer) -> MetricArray:
    lats = np.asarray([pt[0] for pt in points], dtype=float)
    lngs = np.asarray([pt[1] for pt in points], dtype=float)
    xs, ys = transformer.transform(lngs, lats)
    return np.column_stack((xs, ys)).astype(float, copy=False)


def _unproject(points: MetricArray, transformer: Transformer) -> List[LatLng]:
    lngs, lats = transformer.transform(
        points[:, 0], points[:, 1], direction=TransformDirection.INVERSE
    )
    return [(float(lat), float(lng)) for lat, lng in zip(lats, lngs)]
