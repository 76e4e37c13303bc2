"""Bounding-box index used to find plausible route counterparts quickly.

The index is only a speed-up: every query result is passed through the same
acceptance policy the brute-force scan uses, so both paths return the same
candidate set.
"""

from __future__ import annotations

from dataclasses import replace
import logging
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from shapely import STRtree
from shapely.geometry import box

from .config import (
    MATCH_DISTANCE_TOLERANCE,
    MATCH_MIN_BOUNDS_OVERLAP,
    SPATIAL_QUERY_PADDING_DEG,
)
from .geo import meters_to_degrees
from .models import ActivityBoundsItem, Bounds

_log = logging.getLogger(__name__)

AcceptancePolicy = Callable[[ActivityBoundsItem, ActivityBoundsItem], bool]


def distances_compatible(
    distance_a: Optional[float],
    distance_b: Optional[float],
    tolerance: float = MATCH_DISTANCE_TOLERANCE,
) -> bool:
    """True when two distances are within ``tolerance`` of each other, or unknown."""

    if not distance_a or not distance_b:
        return True
    ratio = min(distance_a, distance_b) / max(distance_a, distance_b)
    return ratio >= 1.0 - tolerance


def could_be_route_match(
    a: ActivityBoundsItem,
    b: ActivityBoundsItem,
    min_overlap: float = MATCH_MIN_BOUNDS_OVERLAP,
    distance_tolerance: float = MATCH_DISTANCE_TOLERANCE,
) -> bool:
    """Cheap acceptance test run before any GPS data is fetched."""

    if a.activity_type != b.activity_type:
        return False
    if a.bounds.overlap_ratio(b.bounds) < min_overlap:
        return False
    return distances_compatible(a.distance, b.distance, distance_tolerance)


def normalize_item(item: ActivityBoundsItem) -> Optional[ActivityBoundsItem]:
    """Fix inverted bounds; None when the box has non-finite edges."""

    bounds = item.bounds
    if not bounds.is_finite:
        return None
    if bounds.min_lat <= bounds.max_lat and bounds.min_lng <= bounds.max_lng:
        return item
    return replace(
        item,
        bounds=Bounds.normalized(
            bounds.min_lat, bounds.min_lng, bounds.max_lat, bounds.max_lng
        ),
    )


class SpatialIndex:
    """R-tree over activity bounding boxes backed by shapely's STRtree.

    STRtree is immutable, so mutations mark the tree stale and the next query
    rebuilds it in one bulk load.
    """

    def __init__(self, padding_deg: float = SPATIAL_QUERY_PADDING_DEG) -> None:
        self._padding = padding_deg
        self._items: Dict[str, ActivityBoundsItem] = {}
        self._order: List[str] = []
        self._tree: Optional[STRtree] = None
        self._stale = False
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def size(self) -> int:
        return len(self._items)

    def build(self, items: Iterable[ActivityBoundsItem]) -> None:
        """Replace the index contents with ``items``."""

        self._items.clear()
        for item in items:
            self._add(item)
        self._rebuild()
        self._ready = True
        _log.debug("Spatial index built with %d items", len(self._items))

    def insert(self, item: ActivityBoundsItem) -> None:
        if self._add(item):
            self._stale = True

    def bulk_insert(self, items: Iterable[ActivityBoundsItem]) -> None:
        added = sum(1 for item in items if self._add(item))
        if added:
            self._rebuild()

    def remove(self, activity_id: str) -> bool:
        if self._items.pop(str(activity_id), None) is None:
            return False
        self._stale = True
        return True

    def clear(self) -> None:
        self._items.clear()
        self._order = []
        self._tree = None
        self._stale = False
        self._ready = False

    def get(self, activity_id: str) -> Optional[ActivityBoundsItem]:
        return self._items.get(str(activity_id))

    def query(self, bounds: Bounds) -> List[str]:
        """Ids whose boxes intersect ``bounds`` padded by the query margin."""

        return self._query_ids(bounds.expanded(self._padding))

    def query_viewport(self, bounds: Bounds) -> List[ActivityBoundsItem]:
        """Items whose boxes intersect a map viewport (no padding)."""

        return [self._items[i] for i in self._query_ids(bounds)]

    def query_radius(self, lat: float, lng: float, radius_m: float) -> List[str]:
        span = meters_to_degrees(radius_m, lat)
        return self._query_ids(Bounds(lat - span, lat + span, lng - span, lng + span))

    def find_potential_matches(
        self,
        item: ActivityBoundsItem,
        policy: Optional[AcceptancePolicy] = None,
    ) -> List[str]:
        """Ids accepted by ``policy`` as counterparts of ``item``, excluding itself."""

        accept = policy or could_be_route_match
        matches = []
        for other_id in self.query(item.bounds):
            if other_id == item.id:
                continue
            if accept(item, self._items[other_id]):
                matches.append(other_id)
        return matches

    def _add(self, item: ActivityBoundsItem) -> bool:
        normalized = normalize_item(item)
        if normalized is None:
            _log.debug("Skipping non-finite bounds for activity=%s", item.id)
            return False
        self._items[str(normalized.id)] = normalized
        return True

    def _rebuild(self) -> None:
        self._order = list(self._items.keys())
        geoms = [
            box(b.min_lng, b.min_lat, b.max_lng, b.max_lat)
            for b in (self._items[i].bounds for i in self._order)
        ]
        self._tree = STRtree(geoms) if geoms else None
        self._stale = False

    def _query_ids(self, bounds: Bounds) -> List[str]:
        if self._stale:
            self._rebuild()
        if self._tree is None:
            return []
        geom = box(bounds.min_lng, bounds.min_lat, bounds.max_lng, bounds.max_lat)
        hits = self._tree.query(geom, predicate="intersects")
        return [self._order[int(i)] for i in sorted(hits)]


def find_activities_with_potential_matches(
    candidate_ids: Sequence[str],
    all_bounds: Sequence[ActivityBoundsItem],
    index: Optional[SpatialIndex] = None,
    min_overlap: float = MATCH_MIN_BOUNDS_OVERLAP,
    distance_tolerance: float = MATCH_DISTANCE_TOLERANCE,
) -> List[str]:
    """Candidates with at least one plausible counterpart, in input order.

    Uses ``index`` when it is ready, otherwise scans every pair of boxes.
    """

    normalized = [n for n in (normalize_item(item) for item in all_bounds) if n]
    by_id = {str(item.id): item for item in normalized}

    def _policy(a: ActivityBoundsItem, b: ActivityBoundsItem) -> bool:
        return could_be_route_match(a, b, min_overlap, distance_tolerance)

    tree = index if index is not None and index.ready and min_overlap > 0 else None
    result: List[str] = []
    for activity_id in candidate_ids:
        item = by_id.get(str(activity_id))
        if item is None:
            continue
        if tree is not None:
            found = bool(tree.find_potential_matches(item, _policy))
        else:
            found = any(
                other.id != item.id and _policy(item, other) for other in normalized
            )
        if found:
            result.append(item.id)
    _log.debug(
        "Pre-filter kept %d of %d candidates (index=%s)",
        len(result),
        len(candidate_ids),
        tree is not None,
    )
    return result
