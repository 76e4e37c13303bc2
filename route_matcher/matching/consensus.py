"""Consensus paths for route groups and lap segmentation of single activities."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..config import (
    CONSENSUS_GAP_MEDIAN_FACTOR,
    CONSENSUS_MAX_GAP_M,
    CONSENSUS_MIN_GAP_M,
    CONSENSUS_NEIGHBOR_WINDOW,
    CONSENSUS_PROXIMITY_M,
    CONSENSUS_QUORUM,
    LAP_DISTANCE_THRESHOLD_M,
    LAP_MERGE_GAP_M,
    LAP_MIN_DISTANCE_M,
    PREVIEW_POINT_COUNT,
)
from ..geo import filter_valid_points, haversine, nearest_distances, plain_distance, step_distances
from ..models import DIRECTION_REVERSE, DIRECTION_SAME, LatLng, RouteLap, RouteSignature

_log = logging.getLogger(__name__)


@dataclass(slots=True)
class ConsensusConfig:
    proximity_m: float = CONSENSUS_PROXIMITY_M
    quorum: float = CONSENSUS_QUORUM
    neighbor_window: int = CONSENSUS_NEIGHBOR_WINDOW
    gap_median_factor: float = CONSENSUS_GAP_MEDIAN_FACTOR
    min_gap_m: float = CONSENSUS_MIN_GAP_M
    max_gap_m: float = CONSENSUS_MAX_GAP_M
    lap_distance_threshold_m: float = LAP_DISTANCE_THRESHOLD_M
    lap_min_distance_m: float = LAP_MIN_DISTANCE_M
    lap_merge_gap_m: float = LAP_MERGE_GAP_M


def compute_consensus_route(
    signatures: Sequence[RouteSignature],
    config: Optional[ConsensusConfig] = None,
) -> List[LatLng]:
    """Points of the longest member that a quorum of the group passes through.

    Each base point collects one vote from every member (the base included)
    with a point within ``proximity_m``. Points under quorum are dropped,
    isolated survivors are removed, and the result is cut at large gaps
    keeping only the longest continuous run.
    """

    cfg = config or ConsensusConfig()
    members = [s for s in signatures if len(s.points) >= 2]
    if not members:
        return []
    base = max(members, key=lambda s: (s.distance, len(s.points)))
    base_points = list(base.points)
    if len(members) == 1:
        return base_points

    votes = np.ones(len(base_points), dtype=int)
    for member in members:
        if member is base:
            continue
        nearest = nearest_distances(base_points, member.points)
        votes += nearest <= cfg.proximity_m
    required = math.ceil(len(members) * cfg.quorum)
    kept = votes >= required
    kept = _drop_isolated(kept, cfg.neighbor_window)
    consensus = _longest_chunk(base_points, kept, cfg)
    _log.debug(
        "Consensus for %d members: %d/%d base points kept (quorum=%d)",
        len(members),
        len(consensus),
        len(base_points),
        required,
    )
    return consensus


def consensus_distance(points: Sequence[LatLng]) -> float:
    return plain_distance(points)


def build_preview_points(
    points: Sequence[LatLng], count: int = PREVIEW_POINT_COUNT
) -> List[LatLng]:
    """Down-sample a path and normalise it into the unit square."""

    valid = filter_valid_points(points)
    if len(valid) < 2:
        return []
    indices = np.linspace(0, len(valid) - 1, num=min(count, len(valid))).round()
    sampled = [valid[int(i)] for i in indices]
    lats = [p[0] for p in sampled]
    lngs = [p[1] for p in sampled]
    lat_span = (max(lats) - min(lats)) or 1.0
    lng_span = (max(lngs) - min(lngs)) or 1.0
    return [
        ((lat - min(lats)) / lat_span, (lng - min(lngs)) / lng_span)
        for lat, lng in sampled
    ]


def detect_laps(
    activity_points: Sequence[LatLng],
    consensus_points: Sequence[LatLng],
    activity_distance: float,
    activity_duration: float,
    config: Optional[ConsensusConfig] = None,
) -> List[RouteLap]:
    """Split one activity into passes over a consensus route."""

    cfg = config or ConsensusConfig()
    points = list(activity_points)
    consensus = list(consensus_points)
    if len(points) < 2 or len(consensus) < 2:
        return []

    on_route = nearest_distances(points, consensus) <= cfg.lap_distance_threshold_m
    min_length = min(cfg.lap_min_distance_m, 0.5 * consensus_distance(consensus))
    runs: List[Tuple[int, int]] = []
    for start, end in _true_runs(on_route):
        if end > start and plain_distance(points[start : end + 1]) >= min_length:
            runs.append((start, end))
    runs = _merge_close_runs(points, runs, cfg.lap_merge_gap_m)

    speed = activity_distance / activity_duration if activity_duration > 0 else 0.0
    consensus_start, consensus_end = consensus[0], consensus[-1]
    laps = []
    for number, (start, end) in enumerate(runs, start=1):
        lap_points = points[start : end + 1]
        distance = plain_distance(lap_points)
        first = lap_points[0]
        direction = (
            DIRECTION_SAME
            if haversine(first, consensus_start) <= haversine(first, consensus_end)
            else DIRECTION_REVERSE
        )
        laps.append(
            RouteLap(
                lap_number=number,
                start_index=start,
                end_index=end,
                distance=distance,
                estimated_duration=distance / speed if speed > 0 else 0.0,
                direction=direction,
                points=lap_points,
            )
        )
    return laps


def _drop_isolated(kept: np.ndarray, window: int) -> np.ndarray:
    """Keep a point only if another kept point lies within ``window`` positions."""

    result = np.zeros_like(kept)
    count = len(kept)
    for index in np.flatnonzero(kept):
        lo = max(0, index - window)
        hi = min(count, index + window + 1)
        if kept[lo:hi].sum() > 1:
            result[index] = True
    return result


def _longest_chunk(
    points: Sequence[LatLng], kept: np.ndarray, cfg: ConsensusConfig
) -> List[LatLng]:
    selected = [points[i] for i in np.flatnonzero(kept)]
    if len(selected) < 2:
        return selected
    steps = step_distances(selected)
    median = float(np.median(steps))
    max_gap = min(max(median * cfg.gap_median_factor, cfg.min_gap_m), cfg.max_gap_m)
    chunks: List[List[LatLng]] = [[selected[0]]]
    for point, step in zip(selected[1:], steps):
        if step > max_gap:
            chunks.append([point])
        else:
            chunks[-1].append(point)
    return max(chunks, key=lambda chunk: (plain_distance(chunk), len(chunk)))


def _true_runs(mask: Sequence[bool]) -> List[Tuple[int, int]]:
    runs = []
    start = None
    for index, flag in enumerate(mask):
        if flag and start is None:
            start = index
        elif not flag and start is not None:
            runs.append((start, index - 1))
            start = None
    if start is not None:
        runs.append((start, len(mask) - 1))
    return runs


def _merge_close_runs(
    points: Sequence[LatLng], runs: List[Tuple[int, int]], max_gap_m: float
) -> List[Tuple[int, int]]:
    """Join runs separated by a short off-route stretch (e.g. a GPS dropout)."""

    merged: List[Tuple[int, int]] = []
    for start, end in runs:
        if merged:
            prev_start, prev_end = merged[-1]
            gap = plain_distance(points[prev_end : start + 1])
            if gap <= max_gap_m:
                merged[-1] = (prev_start, end)
                continue
        merged.append((start, end))
    return merged


__all__ = [
    "ConsensusConfig",
    "build_preview_points",
    "compute_consensus_route",
    "consensus_distance",
    "detect_laps",
]
