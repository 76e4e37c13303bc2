"""Pairwise route comparison and the grouping predicate."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, List, Optional, Sequence, Tuple

from ..config import (
    CONFIDENCE_FULL_POINT_COUNT,
    DIRECTION_MIN_PERCENTAGE,
    FRECHET_MIN_SCORE,
    FRECHET_ZERO_SCORE_FACTOR,
    GROUP_ENDPOINT_THRESHOLD_M,
    GROUP_MAX_DISTANCE_DIFF,
    GROUP_MIDPOINT_THRESHOLD_M,
    GROUP_MIN_ROUTE_DISTANCE_M,
    GROUP_REQUIRES_FULL_DIRECTION,
    GROUPING_THRESHOLD,
    MATCH_DISTANCE_THRESHOLD_M,
    MATCH_DISTANCE_TOLERANCE,
    MATCH_MAX_POINT_DISTANCE_FACTOR,
    MATCH_MIN_BOUNDS_OVERLAP,
    MATCH_MIN_PERCENTAGE,
)
from ..geo import haversine
from ..models import (
    DIRECTION_PARTIAL,
    DIRECTION_REVERSE,
    DIRECTION_SAME,
    LatLng,
    MatchResult,
    RouteSignature,
)
from ..spatial_index import distances_compatible
from .similarity import Coverage, coverage_from_alignment, dtw_align, frechet_score

_log = logging.getLogger(__name__)


@dataclass(slots=True)
class MatchConfig:
    """Tunable thresholds for matching and grouping."""

    distance_threshold: float = MATCH_DISTANCE_THRESHOLD_M
    max_point_distance_factor: float = MATCH_MAX_POINT_DISTANCE_FACTOR
    min_match_percentage: float = MATCH_MIN_PERCENTAGE
    min_bounds_overlap: float = MATCH_MIN_BOUNDS_OVERLAP
    distance_tolerance: float = MATCH_DISTANCE_TOLERANCE
    direction_min_percentage: float = DIRECTION_MIN_PERCENTAGE
    frechet_min_score: float = FRECHET_MIN_SCORE
    frechet_zero_score_factor: float = FRECHET_ZERO_SCORE_FACTOR
    confidence_full_point_count: int = CONFIDENCE_FULL_POINT_COUNT
    grouping_threshold: float = GROUPING_THRESHOLD
    group_requires_full_direction: bool = GROUP_REQUIRES_FULL_DIRECTION
    min_route_distance: float = GROUP_MIN_ROUTE_DISTANCE_M
    max_distance_diff: float = GROUP_MAX_DISTANCE_DIFF
    endpoint_threshold: float = GROUP_ENDPOINT_THRESHOLD_M
    midpoint_threshold: float = GROUP_MIDPOINT_THRESHOLD_M

    @property
    def max_point_distance(self) -> float:
        return self.distance_threshold * self.max_point_distance_factor


@dataclass(slots=True)
class _DirectionalScore:
    reversed: bool
    coverage_a: Coverage
    coverage_b: Coverage
    dtw_distance: float
    max_distance: float

    @property
    def percentage(self) -> float:
        return min(self.coverage_a.percentage, self.coverage_b.percentage)


def passes_quick_filter(
    sig1: RouteSignature, sig2: RouteSignature, config: MatchConfig
) -> bool:
    """Bounding-box and distance screen applied before alignment."""

    if sig1.bounds.overlap_ratio(sig2.bounds) < config.min_bounds_overlap:
        return False
    return distances_compatible(sig1.distance, sig2.distance, config.distance_tolerance)


def compare_routes(
    sig1: RouteSignature,
    sig2: RouteSignature,
    config: Optional[MatchConfig] = None,
) -> Optional[MatchResult]:
    """Compare two signatures; None when they do not match.

    Overlap positions are reported along ``sig1``. The alignment itself is
    computed on a canonical ordering of the pair, so swapping the arguments
    yields the same percentage and direction.
    """

    cfg = config or MatchConfig()
    if len(sig1.points) < 2 or len(sig2.points) < 2:
        return None
    if not passes_quick_filter(sig1, sig2, cfg):
        return None

    swapped = _canonical_key(sig2) < _canonical_key(sig1)
    first, second = (sig2, sig1) if swapped else (sig1, sig2)
    forward = _score_direction(first.points, second.points, False, cfg)
    backward = _score_direction(first.points, second.points[::-1], True, cfg)
    best = forward if forward.percentage >= backward.percentage else backward

    percentage = int(round(best.percentage))
    if percentage < cfg.min_match_percentage:
        return None

    shape_score = frechet_score(
        best.max_distance, cfg.distance_threshold * cfg.frechet_zero_score_factor
    )
    if (
        percentage >= cfg.direction_min_percentage
        and shape_score >= cfg.frechet_min_score
    ):
        direction = DIRECTION_REVERSE if best.reversed else DIRECTION_SAME
    else:
        direction = DIRECTION_PARTIAL

    base_coverage = best.coverage_b if swapped else best.coverage_a
    base_mask = base_coverage.mask
    if swapped and best.reversed:
        base_mask = base_mask[::-1]
    overlap_start, overlap_end = _overlap_span(base_mask)

    return MatchResult(
        activity_id_1=sig1.activity_id,
        activity_id_2=sig2.activity_id,
        match_percentage=percentage,
        direction=direction,
        overlap_start=overlap_start,
        overlap_end=overlap_end,
        overlap_distance=max(
            best.coverage_a.matched_distance, best.coverage_b.matched_distance
        ),
        dtw_distance=best.dtw_distance,
        frechet_score=shape_score,
        confidence=_confidence(first, second, best, cfg),
    )


def find_matches(
    signature: RouteSignature,
    candidates: Iterable[RouteSignature],
    config: Optional[MatchConfig] = None,
) -> List[MatchResult]:
    """Matches of ``signature`` against ``candidates``, best first."""

    results = []
    for candidate in candidates:
        if candidate.activity_id == signature.activity_id:
            continue
        match = compare_routes(signature, candidate, config)
        if match is not None:
            results.append(match)
    results.sort(key=lambda m: m.match_percentage, reverse=True)
    return results


def should_group_routes(
    sig1: RouteSignature,
    sig2: RouteSignature,
    match_percentage: float,
    direction: Optional[str] = None,
    config: Optional[MatchConfig] = None,
) -> bool:
    """Stricter test than matching: both activities follow the whole route.

    Routes that merely share a section (a common access path, a partial
    detour) fail on the endpoint or midpoint checks even when the reported
    percentage is high.
    """

    cfg = config or MatchConfig()
    if sig1.distance < cfg.min_route_distance or sig2.distance < cfg.min_route_distance:
        return False
    if match_percentage < cfg.grouping_threshold:
        return False
    if (
        cfg.group_requires_full_direction
        and direction is not None
        and direction == DIRECTION_PARTIAL
    ):
        return False
    longest = max(sig1.distance, sig2.distance)
    if longest > 0 and abs(sig1.distance - sig2.distance) / longest > cfg.max_distance_diff:
        return False
    if len(sig1.points) < 2 or len(sig2.points) < 2:
        return False

    same_ok, reverse_ok = _endpoint_pairings(sig1, sig2, cfg)
    if same_ok and _midpoints_close(sig1.points, sig2.points, False, cfg):
        return True
    return reverse_ok and _midpoints_close(sig1.points, sig2.points, True, cfg)


def _endpoint_pairings(
    sig1: RouteSignature, sig2: RouteSignature, cfg: MatchConfig
) -> Tuple[bool, bool]:
    start1, end1 = sig1.points[0], sig1.points[-1]
    start2, end2 = sig2.points[0], sig2.points[-1]
    limit = cfg.endpoint_threshold
    if sig1.is_loop and sig2.is_loop:
        # Loops can be joined anywhere near the shared start/finish.
        close = haversine(start1, start2) <= limit
        return close, close
    same = haversine(start1, start2) <= limit and haversine(end1, end2) <= limit
    reverse = haversine(start1, end2) <= limit and haversine(end1, start2) <= limit
    return same, reverse


def _midpoints_close(
    points_a: Sequence[LatLng],
    points_b: Sequence[LatLng],
    reversed_b: bool,
    cfg: MatchConfig,
) -> bool:
    b = points_b[::-1] if reversed_b else points_b
    for fraction in (0.25, 0.5, 0.75):
        pa = points_a[int(fraction * (len(points_a) - 1))]
        pb = b[int(fraction * (len(b) - 1))]
        if haversine(pa, pb) > cfg.midpoint_threshold:
            return False
    return True


def _score_direction(
    points_a: Sequence[LatLng],
    points_b: Sequence[LatLng],
    reversed_b: bool,
    cfg: MatchConfig,
) -> _DirectionalScore:
    alignment = dtw_align(points_a, points_b, cfg.max_point_distance)
    coverage_a = coverage_from_alignment(
        points_a, alignment.path_a, alignment.distances, cfg.distance_threshold
    )
    coverage_b = coverage_from_alignment(
        points_b, alignment.path_b, alignment.distances, cfg.distance_threshold
    )
    return _DirectionalScore(
        reversed=reversed_b,
        coverage_a=coverage_a,
        coverage_b=coverage_b,
        dtw_distance=alignment.dtw_distance,
        max_distance=alignment.max_distance,
    )


def _confidence(
    first: RouteSignature,
    second: RouteSignature,
    score: _DirectionalScore,
    cfg: MatchConfig,
) -> float:
    min_points = min(len(first.points), len(second.points))
    density = min(1.0, min_points / float(max(cfg.confidence_full_point_count, 1)))
    threshold = cfg.distance_threshold
    if score.dtw_distance < threshold:
        quality = 1.0
    else:
        quality = max(0.0, 1.0 - score.dtw_distance / (threshold * 3.0))
    fragments = max(len(score.coverage_a.ranges), len(score.coverage_b.ranges))
    penalty = 0.1 * (fragments - 1) if fragments > 2 else 0.0
    return max(0.0, min(1.0, (density + quality) / 2.0 - penalty))


def _overlap_span(mask: Sequence[bool]) -> Tuple[float, float]:
    indices = [i for i, flag in enumerate(mask) if flag]
    if not indices or len(mask) < 2:
        return 0.0, 0.0
    last = float(len(mask) - 1)
    return indices[0] / last, indices[-1] / last


def _canonical_key(sig: RouteSignature) -> Tuple[str, float, int]:
    return (sig.activity_id, sig.distance, len(sig.points))


__all__ = [
    "MatchConfig",
    "compare_routes",
    "find_matches",
    "passes_quick_filter",
    "should_group_routes",
]
