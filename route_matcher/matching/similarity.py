"""Alignment primitives used to score how closely two routes follow each other."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from ..geo import haversine_matrix, plain_distance
from ..models import LatLng

IndexRange = Tuple[int, int]


@dataclass(slots=True)
class Alignment:
    """Optimal DTW correspondence between two point sequences."""

    path_a: NDArray[np.int64]
    path_b: NDArray[np.int64]
    distances: NDArray[np.float64]
    dtw_distance: float

    @property
    def max_distance(self) -> float:
        if self.distances.size == 0:
            return float("inf")
        return float(self.distances.max())


@dataclass(slots=True)
class Coverage:
    """Which points of one route found a close partner in the other."""

    mask: NDArray[np.bool_]
    percentage: float
    ranges: List[IndexRange]
    matched_distance: float


def dtw_align(
    points_a: Sequence[LatLng],
    points_b: Sequence[LatLng],
    max_point_distance: float,
) -> Alignment:
    """Dynamic time warping over haversine costs capped at ``max_point_distance``.

    The cumulative cost matrix is filled row by row and the optimal path is
    recovered by walking back from the final cell, preferring the diagonal.
    ``dtw_distance`` is the cumulative cost divided by the path length.
    """

    n, m = len(points_a), len(points_b)
    if n == 0 or m == 0:
        empty = np.empty(0, dtype=np.int64)
        return Alignment(empty, empty, np.empty(0, dtype=float), float("inf"))
    raw = haversine_matrix(points_a, points_b)
    capped = np.minimum(raw, max_point_distance).tolist()
    inf = float("inf")
    cost = [[inf] * (m + 1) for _ in range(n + 1)]
    cost[0][0] = 0.0
    for i in range(1, n + 1):
        row = cost[i]
        prev = cost[i - 1]
        step = capped[i - 1]
        for j in range(1, m + 1):
            best = prev[j - 1]
            if prev[j] < best:
                best = prev[j]
            if row[j - 1] < best:
                best = row[j - 1]
            row[j] = step[j - 1] + best

    path: List[Tuple[int, int]] = []
    i, j = n, m
    while i > 0 and j > 0:
        path.append((i - 1, j - 1))
        diag = cost[i - 1][j - 1]
        up = cost[i - 1][j]
        left = cost[i][j - 1]
        if diag <= up and diag <= left:
            i -= 1
            j -= 1
        elif up <= left:
            i -= 1
        else:
            j -= 1
    path.reverse()
    path_a = np.fromiter((p[0] for p in path), dtype=np.int64, count=len(path))
    path_b = np.fromiter((p[1] for p in path), dtype=np.int64, count=len(path))
    return Alignment(
        path_a=path_a,
        path_b=path_b,
        distances=raw[path_a, path_b],
        dtw_distance=cost[n][m] / len(path),
    )


def coverage_from_alignment(
    points: Sequence[LatLng],
    path_indices: NDArray[np.int64],
    distances: NDArray[np.float64],
    threshold_m: float,
) -> Coverage:
    """Mark a point as matched when any aligned partner lies within ``threshold_m``."""

    mask = np.zeros(len(points), dtype=bool)
    mask[path_indices[distances <= threshold_m]] = True
    ranges = matched_ranges(mask)
    matched_distance = sum(
        plain_distance(points[start : end + 1]) for start, end in ranges
    )
    percentage = 100.0 * float(mask.sum()) / len(mask) if len(mask) else 0.0
    return Coverage(mask, percentage, ranges, matched_distance)


def matched_ranges(mask: Sequence[bool]) -> List[IndexRange]:
    """Inclusive index ranges of consecutive True values."""

    ranges: List[IndexRange] = []
    start = None
    for index, flag in enumerate(mask):
        if flag and start is None:
            start = index
        elif not flag and start is not None:
            ranges.append((start, index - 1))
            start = None
    if start is not None:
        ranges.append((start, len(mask) - 1))
    return ranges


def frechet_score(max_aligned_distance: float, zero_score_distance: float) -> int:
    """Convert the worst aligned distance to 0-100 (100 = identical shape)."""

    if zero_score_distance <= 0 or not np.isfinite(max_aligned_distance):
        return 0
    score = 100.0 * (1.0 - max_aligned_distance / zero_score_distance)
    return int(round(max(0.0, min(100.0, score))))


__all__ = [
    "Alignment",
    "Coverage",
    "coverage_from_alignment",
    "dtw_align",
    "frechet_score",
    "matched_ranges",
]
