"""Union-find clustering of signatures into route groups."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from ..config import CLUSTER_MAX_WORKERS, SPATIAL_QUERY_PADDING_DEG
from ..models import ActivityBoundsItem, RouteSignature
from ..spatial_index import SpatialIndex
from .matcher import MatchConfig, compare_routes, should_group_routes

_log = logging.getLogger(__name__)

Pair = Tuple[str, str]


class UnionFind:
    """Disjoint sets over activity ids with path compression."""

    def __init__(self, items: Iterable[str] = ()) -> None:
        self._parent: Dict[str, str] = {}
        for item in items:
            self.add(item)

    def add(self, item: str) -> None:
        self._parent.setdefault(item, item)

    def find(self, item: str) -> str:
        self.add(item)
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> bool:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return False
        # Keep the lexically smaller root so results do not depend on pair order.
        if root_b < root_a:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        return True

    def groups(self) -> Dict[str, List[str]]:
        result: Dict[str, List[str]] = {}
        for item in self._parent:
            result.setdefault(self.find(item), []).append(item)
        return result


def group_signatures(
    signatures: Sequence[RouteSignature],
    config: Optional[MatchConfig] = None,
    max_workers: Optional[int] = None,
    activity_types: Optional[Mapping[str, str]] = None,
) -> Dict[str, List[str]]:
    """Cluster every signature against every other plausible signature.

    Returns a mapping of cluster root to member ids (singletons included).
    When ``activity_types`` is given, activities of different known types
    are never compared.
    """

    ids = [s.activity_id for s in signatures]
    pairs = _candidate_pairs(signatures, signatures, config, activity_types)
    return _cluster(ids, {s.activity_id: s for s in signatures}, pairs, (), config, max_workers)


def group_incremental(
    new_signatures: Sequence[RouteSignature],
    existing_signatures: Sequence[RouteSignature],
    existing_groups: Iterable[Sequence[str]] = (),
    config: Optional[MatchConfig] = None,
    max_workers: Optional[int] = None,
    activity_types: Optional[Mapping[str, str]] = None,
) -> Dict[str, List[str]]:
    """Extend an existing clustering with new signatures.

    Existing groups seed the union-find so their membership is preserved;
    only pairs involving at least one new signature are compared.
    """

    by_id: Dict[str, RouteSignature] = {s.activity_id: s for s in existing_signatures}
    by_id.update({s.activity_id: s for s in new_signatures})
    new_ids = {s.activity_id for s in new_signatures}
    ids = list(by_id.keys())
    for group in existing_groups:
        ids.extend(a for a in group if a not in by_id)
    pairs = [
        pair
        for pair in _candidate_pairs(
            new_signatures, list(by_id.values()), config, activity_types
        )
        if pair[0] in new_ids or pair[1] in new_ids
    ]
    return _cluster(ids, by_id, pairs, existing_groups, config, max_workers)


def _cluster(
    ids: Sequence[str],
    by_id: Mapping[str, RouteSignature],
    pairs: Sequence[Pair],
    seed_groups: Iterable[Sequence[str]],
    config: Optional[MatchConfig],
    max_workers: Optional[int],
) -> Dict[str, List[str]]:
    uf = UnionFind(ids)
    for group in seed_groups:
        members = list(group)
        for other in members[1:]:
            uf.union(members[0], other)

    def _should_union(pair: Pair) -> bool:
        a, b = by_id[pair[0]], by_id[pair[1]]
        match = compare_routes(a, b, config)
        if match is None:
            return False
        return should_group_routes(a, b, match.match_percentage, match.direction, config)

    workers = max(1, min(max_workers or CLUSTER_MAX_WORKERS, len(pairs) or 1))
    unions = 0
    if workers == 1:
        for pair in pairs:
            if _should_union(pair) and uf.union(*pair):
                unions += 1
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {executor.submit(_should_union, pair): pair for pair in pairs}
            for future in as_completed(future_map):
                pair = future_map[future]
                if future.result() and uf.union(*pair):
                    unions += 1
    _log.debug(
        "Clustered %d signatures: %d comparisons, %d unions", len(ids), len(pairs), unions
    )
    groups = uf.groups()
    order = {activity_id: index for index, activity_id in enumerate(ids)}
    return {
        root: sorted(members, key=lambda a: order.get(a, len(order)))
        for root, members in sorted(groups.items())
    }


def same_activity_type(a: str, b: str, activity_types: Mapping[str, str]) -> bool:
    """True unless both activities have a known type and the types differ."""

    type_a = activity_types.get(a, "")
    type_b = activity_types.get(b, "")
    return not type_a or not type_b or type_a == type_b


def _candidate_pairs(
    sources: Sequence[RouteSignature],
    targets: Sequence[RouteSignature],
    config: Optional[MatchConfig],
    activity_types: Optional[Mapping[str, str]] = None,
) -> List[Pair]:
    """Unordered same-type pairs whose boxes could pass the matcher's quick filter."""

    cfg = config or MatchConfig()
    types = activity_types or {}
    seen: Set[Pair] = set()
    pairs: List[Pair] = []

    def _add(a: str, b: str) -> None:
        if a == b or not same_activity_type(a, b, types):
            return
        key = (a, b) if a < b else (b, a)
        if key not in seen:
            seen.add(key)
            pairs.append(key)

    if cfg.min_bounds_overlap <= 0:
        for source in sources:
            for target in targets:
                _add(source.activity_id, target.activity_id)
        return pairs

    index = SpatialIndex(padding_deg=SPATIAL_QUERY_PADDING_DEG)
    index.build(
        ActivityBoundsItem(
            id=t.activity_id,
            bounds=t.bounds,
            activity_type=types.get(t.activity_id, ""),
        )
        for t in targets
    )
    for source in sources:
        for other_id in index.query(source.bounds):
            _add(source.activity_id, other_id)
    return pairs


__all__ = [
    "UnionFind",
    "group_incremental",
    "group_signatures",
    "same_activity_type",
]
