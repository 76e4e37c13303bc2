"""Lightweight per-activity bounding boxes plus sync bookkeeping."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

from ..geo import filter_valid_points
from ..models import ActivityBoundsItem, Bounds
from ..utils import read_json, utc_now_iso, write_json_atomic

_log = logging.getLogger(__name__)

BOUNDS_FILE = "activity_bounds.json"


@dataclass(slots=True)
class BoundsCache:
    items: Dict[str, ActivityBoundsItem] = field(default_factory=dict)
    last_sync: str = ""
    oldest_synced: Optional[str] = None
    newest_synced: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "items": {k: v.to_dict() for k, v in self.items.items()},
            "last_sync": self.last_sync,
            "oldest_synced": self.oldest_synced,
            "newest_synced": self.newest_synced,
        }


def build_bounds_item(
    activity_id: str,
    latlngs: Iterable[Sequence[float]],
    activity_type: str,
    name: str = "",
    date: str = "",
    distance: Optional[float] = None,
    duration: Optional[float] = None,
) -> Optional[ActivityBoundsItem]:
    """Bounds record for one activity, or None when the trace has no valid fix."""

    valid = filter_valid_points(latlngs)
    if not valid:
        return None
    return ActivityBoundsItem(
        id=str(activity_id),
        bounds=Bounds.from_points(valid),
        activity_type=activity_type,
        name=name,
        date=date,
        distance=distance,
        duration=duration,
    )


def find_oldest_date(items: Iterable[ActivityBoundsItem]) -> Optional[str]:
    dates = [item.date for item in items if item.date]
    return min(dates) if dates else None


def find_newest_date(items: Iterable[ActivityBoundsItem]) -> Optional[str]:
    dates = [item.date for item in items if item.date]
    return max(dates) if dates else None


class BoundsCacheStore:
    """Persists the bounds cache as a single JSON document."""

    def __init__(self, base_dir: Path | str) -> None:
        self._path = Path(base_dir) / BOUNDS_FILE

    def load(self) -> BoundsCache:
        payload = read_json(self._path)
        if not isinstance(payload, dict):
            return BoundsCache()
        try:
            items = {
                str(k): ActivityBoundsItem.from_dict(v)
                for k, v in (payload.get("items") or {}).items()
            }
        except (KeyError, TypeError, ValueError) as exc:
            _log.warning("Discarding unreadable bounds cache: %s", exc)
            return BoundsCache()
        return BoundsCache(
            items=items,
            last_sync=str(payload.get("last_sync") or ""),
            oldest_synced=payload.get("oldest_synced"),
            newest_synced=payload.get("newest_synced"),
        )

    def save(self, cache: BoundsCache) -> None:
        write_json_atomic(self._path, cache.to_dict())

    def merge(self, new_items: Iterable[ActivityBoundsItem]) -> BoundsCache:
        """Add or replace items and refresh the synced date range."""

        cache = self.load()
        added = 0
        for item in new_items:
            if item.id not in cache.items:
                added += 1
            cache.items[item.id] = item
        values = list(cache.items.values())
        cache.oldest_synced = find_oldest_date(values)
        cache.newest_synced = find_newest_date(values)
        cache.last_sync = utc_now_iso()
        self.save(cache)
        _log.info(
            "Bounds cache merged: %d new, %d total", added, len(cache.items)
        )
        return cache

    def clear(self) -> None:
        if self._path.exists():
            self._path.unlink()
