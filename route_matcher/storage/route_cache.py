"""Persistence and pure helpers for the route-match ``ProcessingCache``.

Saved caches never contain signature point arrays; those are rebuilt from the
GPS track store on first use. A version mismatch on load is treated as an
absent cache.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import PLACEHOLDER_ROUTE_NAME, ROUTE_CACHE_VERSION
from ..errors import CacheVersionError
from ..models import (
    DIRECTION_SAME,
    ActivityMetadata,
    ProcessingCache,
    RouteGroup,
    RouteMatch,
    RouteSignature,
)
from ..utils import read_json, stable_id, utc_now_iso, write_json_atomic

_log = logging.getLogger(__name__)

ROUTE_CACHE_FILE = "route_cache.json"


class RouteCacheStore:
    def __init__(self, base_dir: Path | str, version: int = ROUTE_CACHE_VERSION) -> None:
        self._path = Path(base_dir) / ROUTE_CACHE_FILE
        self._version = version

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[ProcessingCache]:
        """Return the stored cache, or None if missing, stale or unreadable."""

        payload = read_json(self._path)
        if payload is None:
            return None
        try:
            return self._decode(payload)
        except CacheVersionError as exc:
            _log.info("Ignoring route cache: %s", exc)
            return None
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            _log.warning("Ignoring corrupt route cache %s: %s", self._path, exc)
            return None

    def save(self, cache: ProcessingCache) -> None:
        """Rewrite the whole cache with point arrays stripped."""

        write_json_atomic(self._path, cache.to_dict(include_points=False))

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()

    def _decode(self, payload: object) -> ProcessingCache:
        if not isinstance(payload, dict):
            raise ValueError("route cache root must be an object")
        version = payload.get("version")
        if version != self._version:
            raise CacheVersionError(
                f"stored version {version!r}, expected {self._version}"
            )
        return ProcessingCache.from_dict(payload)


def create_empty_cache(version: int = ROUTE_CACHE_VERSION) -> ProcessingCache:
    return ProcessingCache(version=version, last_updated=utc_now_iso())


def add_signatures_to_cache(
    cache: ProcessingCache, signatures: Iterable[RouteSignature]
) -> ProcessingCache:
    """Store signatures, mark them processed and queue them for clustering."""

    pending = set(cache.pending_cluster_ids)
    for signature in signatures:
        cache.signatures[signature.activity_id] = signature
        cache.processed_ids.add(signature.activity_id)
        if signature.activity_id not in pending:
            cache.pending_cluster_ids.append(signature.activity_id)
            pending.add(signature.activity_id)
    cache.last_updated = utc_now_iso()
    return cache


def derive_route_name(activity_name: str) -> str:
    """Strip a leading "<prefix> - " from an activity name."""

    name = (activity_name or "").strip()
    if " - " in name:
        name = name.split(" - ")[-1].strip()
    return name


def create_route_group(
    activity_ids: Sequence[str],
    signatures: Mapping[str, RouteSignature],
    metadata: Mapping[str, ActivityMetadata],
) -> RouteGroup:
    """New group whose first activity is the representative."""

    representative_id = activity_ids[0]
    rep_meta = metadata.get(representative_id)
    name = derive_route_name(rep_meta.name if rep_meta else "")
    members = [meta for meta in (metadata.get(a) for a in activity_ids) if meta]
    dates = sorted(meta.date for meta in members if meta.date)
    types = [meta.activity_type for meta in members if meta.activity_type]
    now = utc_now_iso()
    return RouteGroup(
        id=stable_id("route", [representative_id]),
        name=name or PLACEHOLDER_ROUTE_NAME,
        name_is_placeholder=not name,
        representative=signatures[representative_id],
        activity_ids=list(activity_ids),
        activity_count=len(activity_ids),
        first_date=dates[0] if dates else now,
        last_date=dates[-1] if dates else now,
        activity_type=types[0] if types else "",
        distance=signatures[representative_id].distance,
        created_at=now,
        updated_at=now,
    )


def update_route_groups(
    cache: ProcessingCache,
    clusters: Mapping[str, Sequence[str]],
    metadata: Mapping[str, ActivityMetadata],
) -> List[RouteGroup]:
    """Fold clustering output into the cache's groups.

    Clusters touching existing groups extend the first of them and absorb the
    others, keeping name, preview and distance. Singletons never form groups.
    Returns the groups that were created or changed.
    """

    groups_by_id: Dict[str, RouteGroup] = {g.id: g for g in cache.groups}
    touched: List[RouteGroup] = []
    absorbed: set[str] = set()

    for members in clusters.values():
        members = [m for m in members if m in cache.signatures or m in cache.activity_to_group]
        if len(members) < 2:
            continue
        prior: List[RouteGroup] = []
        for activity_id in members:
            group_id = cache.activity_to_group.get(activity_id)
            group = groups_by_id.get(group_id) if group_id else None
            if group is not None and group not in prior:
                prior.append(group)
        if not prior:
            fresh = [m for m in members if m in cache.signatures]
            if len(fresh) < 2:
                continue
            group = create_route_group(fresh, cache.signatures, metadata)
            groups_by_id[group.id] = group
            touched.append(group)
            continue

        base = prior[0]
        ordered: List[str] = list(base.activity_ids)
        for other in prior[1:]:
            ordered.extend(a for a in other.activity_ids if a not in ordered)
            absorbed.add(other.id)
            _inherit_metadata(base, other)
        ordered.extend(m for m in members if m not in ordered)
        if ordered == base.activity_ids and len(prior) == 1:
            continue
        base.activity_ids = ordered
        base.activity_count = len(ordered)
        dates = sorted(
            d
            for d in [base.first_date, base.last_date]
            + [m.date for m in (metadata.get(a) for a in ordered) if m]
            if d
        )
        if dates:
            base.first_date, base.last_date = dates[0], dates[-1]
        if not base.activity_type:
            base.activity_type = next(
                (m.activity_type for m in (metadata.get(a) for a in ordered) if m and m.activity_type),
                "",
            )
        base.updated_at = utc_now_iso()
        touched.append(base)

    cache.groups = [g for g in groups_by_id.values() if g.id not in absorbed]
    rebuild_group_index(cache)
    cache.last_updated = utc_now_iso()
    return [g for g in touched if g.id not in absorbed]


def rebuild_group_index(cache: ProcessingCache) -> None:
    """Recompute ``activity_to_group`` and the per-activity match records."""

    index: Dict[str, str] = {}
    matches: Dict[str, RouteMatch] = {}
    for group in cache.groups:
        representative_id = group.representative.activity_id
        for activity_id in group.activity_ids:
            index[activity_id] = group.id
            cache.processed_ids.add(activity_id)
            if activity_id == representative_id:
                continue
            existing = cache.matches.get(activity_id)
            if existing is not None:
                existing.route_group_id = group.id
                matches[activity_id] = existing
            else:
                matches[activity_id] = RouteMatch(
                    activity_id=activity_id,
                    route_group_id=group.id,
                    match_percentage=100.0,
                    direction=DIRECTION_SAME,
                    confidence=1.0,
                )
    cache.activity_to_group = index
    cache.matches = matches


def get_route_group_for_activity(
    cache: ProcessingCache, activity_id: str
) -> Optional[RouteGroup]:
    group_id = cache.activity_to_group.get(str(activity_id))
    return cache.group_by_id(group_id) if group_id else None


def get_unprocessed_activity_ids(
    cache: ProcessingCache, activity_ids: Iterable[str]
) -> List[str]:
    return [a for a in (str(x) for x in activity_ids) if a not in cache.processed_ids]


def get_cache_stats(cache: ProcessingCache) -> Dict[str, int]:
    grouped = sum(len(g.activity_ids) for g in cache.groups)
    return {
        "signatures": len(cache.signatures),
        "groups": len(cache.groups),
        "matches": len(cache.matches),
        "processed": len(cache.processed_ids),
        "grouped_activities": grouped,
        "largest_group": max((len(g.activity_ids) for g in cache.groups), default=0),
    }


def _inherit_metadata(target: RouteGroup, source: RouteGroup) -> None:
    if target.name_is_placeholder and not source.name_is_placeholder:
        target.name = source.name
        target.name_is_placeholder = False
    if not target.preview_points and source.preview_points:
        target.preview_points = list(source.preview_points)
    if not target.distance and source.distance:
        target.distance = source.distance
