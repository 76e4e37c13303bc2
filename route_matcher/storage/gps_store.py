"""On-disk store for raw GPS traces, one JSON blob per activity."""

from __future__ import annotations

import logging
from pathlib import Path
from threading import RLock
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from ..config import GPS_STORE_BATCH_SIZE
from ..models import LatLng
from ..utils import read_json, sanitize_key, utc_now_iso, write_json_atomic

_log = logging.getLogger(__name__)

INDEX_FILE = "gps_index.json"
TRACK_PREFIX = "gps_track_"


class GpsTrackStore:
    """Raw lat/lng traces kept apart from the metadata caches.

    Tracks live in ``<base_dir>/gps_tracks`` with an index file listing the
    stored activity ids.
    """

    def __init__(self, base_dir: Path | str) -> None:
        self._dir = Path(base_dir) / "gps_tracks"
        self._lock = RLock()

    @property
    def directory(self) -> Path:
        return self._dir

    def store(self, activity_id: str, latlngs: Sequence[Sequence[float]]) -> None:
        self.store_many({activity_id: latlngs})

    def store_many(self, tracks: Mapping[str, Sequence[Sequence[float]]]) -> int:
        """Write tracks in batches, updating the index once per batch."""

        items = [(str(k), v) for k, v in tracks.items() if v]
        stored = 0
        with self._lock:
            for offset in range(0, len(items), GPS_STORE_BATCH_SIZE):
                batch = items[offset : offset + GPS_STORE_BATCH_SIZE]
                for activity_id, latlngs in batch:
                    write_json_atomic(
                        self._track_path(activity_id),
                        [[float(p[0]), float(p[1])] for p in latlngs],
                    )
                    stored += 1
                ids = self._read_index()
                known = set(ids)
                ids.extend(a for a, _ in batch if a not in known)
                self._write_index(ids)
        if stored:
            _log.debug("Stored %d GPS tracks", stored)
        return stored

    def get(self, activity_id: str) -> Optional[List[LatLng]]:
        payload = read_json(self._track_path(str(activity_id)))
        if not isinstance(payload, list):
            return None
        try:
            return [(float(p[0]), float(p[1])) for p in payload]
        except (TypeError, ValueError, IndexError) as exc:
            _log.warning("Corrupt GPS track for activity=%s: %s", activity_id, exc)
            return None

    def get_many(self, activity_ids: Iterable[str]) -> Dict[str, List[LatLng]]:
        """Tracks that are present, keyed by id; missing ids are omitted."""

        result: Dict[str, List[LatLng]] = {}
        ids = [str(a) for a in activity_ids]
        for offset in range(0, len(ids), GPS_STORE_BATCH_SIZE):
            for activity_id in ids[offset : offset + GPS_STORE_BATCH_SIZE]:
                track = self.get(activity_id)
                if track:
                    result[activity_id] = track
        return result

    def has(self, activity_id: str) -> bool:
        return self._track_path(str(activity_id)).exists()

    def remove(self, activity_id: str) -> bool:
        activity_id = str(activity_id)
        with self._lock:
            path = self._track_path(activity_id)
            existed = path.exists()
            if existed:
                path.unlink()
            ids = self._read_index()
            if activity_id in ids:
                ids.remove(activity_id)
                self._write_index(ids)
        return existed

    def clear_all(self) -> int:
        removed = 0
        with self._lock:
            if not self._dir.exists():
                return 0
            for path in self._dir.glob(f"{TRACK_PREFIX}*.json"):
                path.unlink()
                removed += 1
            index = self._dir / INDEX_FILE
            if index.exists():
                index.unlink()
        _log.info("Cleared %d GPS tracks", removed)
        return removed

    def count(self) -> int:
        return len(self._read_index())

    def activity_ids(self) -> List[str]:
        return self._read_index()

    def estimate_size(self) -> int:
        """Approximate bytes used by stored tracks."""

        if not self._dir.exists():
            return 0
        return sum(p.stat().st_size for p in self._dir.glob(f"{TRACK_PREFIX}*.json"))

    def _track_path(self, activity_id: str) -> Path:
        return self._dir / f"{TRACK_PREFIX}{sanitize_key(activity_id)}.json"

    def _read_index(self) -> List[str]:
        payload = read_json(self._dir / INDEX_FILE)
        if not isinstance(payload, dict):
            return []
        return [str(a) for a in payload.get("activity_ids") or []]

    def _write_index(self, ids: List[str]) -> None:
        write_json_atomic(
            self._dir / INDEX_FILE,
            {"activity_ids": ids, "last_updated": utc_now_iso()},
        )
