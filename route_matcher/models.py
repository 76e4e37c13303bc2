"""Dataclasses describing signatures, matches, groups and the processing cache."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

LatLng = Tuple[float, float]

DIRECTION_SAME = "same"
DIRECTION_REVERSE = "reverse"
DIRECTION_PARTIAL = "partial"


def _points_to_list(points: Sequence[LatLng]) -> List[List[float]]:
    return [[float(lat), float(lng)] for lat, lng in points]


def _points_from_list(raw: Any) -> List[LatLng]:
    if not raw:
        return []
    return [(float(item[0]), float(item[1])) for item in raw]


@dataclass(slots=True, frozen=True)
class Bounds:
    """Axis-aligned bounding box in degrees."""

    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    @classmethod
    def from_points(cls, points: Sequence[LatLng]) -> "Bounds":
        if not points:
            raise ValueError("Cannot compute bounds of an empty point list")
        lats = [p[0] for p in points]
        lngs = [p[1] for p in points]
        return cls(min(lats), max(lats), min(lngs), max(lngs))

    @classmethod
    def normalized(
        cls, lat_a: float, lng_a: float, lat_b: float, lng_b: float
    ) -> "Bounds":
        """Build bounds from two corners in any order."""

        return cls(
            min(lat_a, lat_b), max(lat_a, lat_b), min(lng_a, lng_b), max(lng_a, lng_b)
        )

    @property
    def is_finite(self) -> bool:
        return all(
            math.isfinite(v)
            for v in (self.min_lat, self.max_lat, self.min_lng, self.max_lng)
        )

    @property
    def area(self) -> float:
        return max(0.0, self.max_lat - self.min_lat) * max(
            0.0, self.max_lng - self.min_lng
        )

    @property
    def center(self) -> LatLng:
        return (
            (self.min_lat + self.max_lat) / 2.0,
            (self.min_lng + self.max_lng) / 2.0,
        )

    def intersects(self, other: "Bounds") -> bool:
        return not (
            self.max_lat < other.min_lat
            or self.min_lat > other.max_lat
            or self.max_lng < other.min_lng
            or self.min_lng > other.max_lng
        )

    def intersection_area(self, other: "Bounds") -> float:
        lat_overlap = min(self.max_lat, other.max_lat) - max(
            self.min_lat, other.min_lat
        )
        lng_overlap = min(self.max_lng, other.max_lng) - max(
            self.min_lng, other.min_lng
        )
        if lat_overlap <= 0 or lng_overlap <= 0:
            return 0.0
        return lat_overlap * lng_overlap

    def overlap_ratio(self, other: "Bounds") -> float:
        """Intersection area as a fraction of the smaller box's area."""

        smaller = min(self.area, other.area)
        if smaller <= 0:
            return 0.0
        return self.intersection_area(other) / smaller

    def expanded(self, padding_deg: float) -> "Bounds":
        return Bounds(
            self.min_lat - padding_deg,
            self.max_lat + padding_deg,
            self.min_lng - padding_deg,
            self.max_lng + padding_deg,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "min_lat": self.min_lat,
            "max_lat": self.max_lat,
            "min_lng": self.min_lng,
            "max_lng": self.max_lng,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bounds":
        return cls(
            float(data["min_lat"]),
            float(data["max_lat"]),
            float(data["min_lng"]),
            float(data["max_lng"]),
        )


@dataclass(slots=True, frozen=True)
class RouteSignature:
    """Compact, comparable representation of one activity's route."""

    activity_id: str
    points: Tuple[LatLng, ...]
    distance: float
    bounds: Bounds
    start_region: str
    end_region: str
    is_loop: bool
    point_count: int

    @property
    def has_points(self) -> bool:
        return len(self.points) > 0

    @property
    def start(self) -> Optional[LatLng]:
        return self.points[0] if self.points else None

    @property
    def end(self) -> Optional[LatLng]:
        return self.points[-1] if self.points else None

    def to_dict(self, include_points: bool = True) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "points": _points_to_list(self.points) if include_points else [],
            "distance": self.distance,
            "bounds": self.bounds.to_dict(),
            "start_region": self.start_region,
            "end_region": self.end_region,
            "is_loop": self.is_loop,
            "point_count": self.point_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteSignature":
        points = tuple(_points_from_list(data.get("points")))
        return cls(
            activity_id=str(data["activity_id"]),
            points=points,
            distance=float(data.get("distance", 0.0)),
            bounds=Bounds.from_dict(data["bounds"]),
            start_region=str(data.get("start_region", "")),
            end_region=str(data.get("end_region", "")),
            is_loop=bool(data.get("is_loop", False)),
            point_count=int(data.get("point_count", len(points))),
        )


@dataclass(slots=True)
class MatchResult:
    """Outcome of comparing two signatures."""

    activity_id_1: str
    activity_id_2: str
    match_percentage: int
    direction: str
    overlap_start: float
    overlap_end: float
    overlap_distance: float
    dtw_distance: float
    frechet_score: int
    confidence: float


@dataclass(slots=True)
class RouteMatch:
    """Per-activity record linking an activity to its route group."""

    activity_id: str
    route_group_id: str
    match_percentage: float
    direction: str
    confidence: float = 1.0
    overlap_start: float = 0.0
    overlap_end: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "route_group_id": self.route_group_id,
            "match_percentage": self.match_percentage,
            "direction": self.direction,
            "confidence": self.confidence,
            "overlap_start": self.overlap_start,
            "overlap_end": self.overlap_end,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteMatch":
        return cls(
            activity_id=str(data["activity_id"]),
            route_group_id=str(data["route_group_id"]),
            match_percentage=float(data.get("match_percentage", 0.0)),
            direction=str(data.get("direction", DIRECTION_SAME)),
            confidence=float(data.get("confidence", 1.0)),
            overlap_start=float(data.get("overlap_start", 0.0)),
            overlap_end=float(data.get("overlap_end", 1.0)),
        )


@dataclass(slots=True)
class RouteGroup:
    """Cluster of activities believed to follow the same physical route."""

    id: str
    name: str
    representative: RouteSignature
    activity_ids: List[str]
    activity_count: int
    first_date: str
    last_date: str
    activity_type: str
    average_match_quality: float = 100.0
    name_is_placeholder: bool = True
    consensus_points: Optional[List[LatLng]] = None
    distance: float = 0.0
    preview_points: List[LatLng] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self, include_points: bool = True) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "name_is_placeholder": self.name_is_placeholder,
            "representative": self.representative.to_dict(include_points),
            "activity_ids": list(self.activity_ids),
            "activity_count": self.activity_count,
            "first_date": self.first_date,
            "last_date": self.last_date,
            "activity_type": self.activity_type,
            "average_match_quality": self.average_match_quality,
            "consensus_points": (
                _points_to_list(self.consensus_points)
                if self.consensus_points is not None
                else None
            ),
            "distance": self.distance,
            "preview_points": _points_to_list(self.preview_points),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RouteGroup":
        consensus = data.get("consensus_points")
        activity_ids = [str(a) for a in data.get("activity_ids", [])]
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            name_is_placeholder=bool(data.get("name_is_placeholder", True)),
            representative=RouteSignature.from_dict(data["representative"]),
            activity_ids=activity_ids,
            activity_count=int(data.get("activity_count", len(activity_ids))),
            first_date=str(data.get("first_date", "")),
            last_date=str(data.get("last_date", "")),
            activity_type=str(data.get("activity_type", "")),
            average_match_quality=float(data.get("average_match_quality", 100.0)),
            consensus_points=(
                _points_from_list(consensus) if consensus is not None else None
            ),
            distance=float(data.get("distance", 0.0)),
            preview_points=_points_from_list(data.get("preview_points")),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
        )


@dataclass(slots=True)
class RouteLap:
    """One pass over a consensus route inside a single activity."""

    lap_number: int
    start_index: int
    end_index: int
    distance: float
    estimated_duration: float
    direction: str
    points: List[LatLng] = field(default_factory=list)


@dataclass(slots=True)
class ActivityMetadata:
    activity_id: str
    name: str = ""
    date: str = ""
    activity_type: str = ""
    has_gps: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "name": self.name,
            "date": self.date,
            "activity_type": self.activity_type,
            "has_gps": self.has_gps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityMetadata":
        return cls(
            activity_id=str(data["activity_id"]),
            name=str(data.get("name", "")),
            date=str(data.get("date", "")),
            activity_type=str(data.get("activity_type", "")),
            has_gps=bool(data.get("has_gps", True)),
        )


@dataclass(slots=True)
class ActivityBoundsItem:
    """Lightweight per-activity record kept in the bounds cache."""

    id: str
    bounds: Bounds
    activity_type: str
    name: str = ""
    date: str = ""
    distance: Optional[float] = None
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bounds": self.bounds.to_dict(),
            "activity_type": self.activity_type,
            "name": self.name,
            "date": self.date,
            "distance": self.distance,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityBoundsItem":
        distance = data.get("distance")
        duration = data.get("duration")
        return cls(
            id=str(data["id"]),
            bounds=Bounds.from_dict(data["bounds"]),
            activity_type=str(data.get("activity_type", "")),
            name=str(data.get("name", "")),
            date=str(data.get("date", "")),
            distance=float(distance) if distance is not None else None,
            duration=float(duration) if duration is not None else None,
        )


@dataclass(slots=True)
class ProcessingCache:
    """Durable aggregate owned by the processing pipeline."""

    version: int
    signatures: Dict[str, RouteSignature] = field(default_factory=dict)
    groups: List[RouteGroup] = field(default_factory=list)
    matches: Dict[str, RouteMatch] = field(default_factory=dict)
    processed_ids: Set[str] = field(default_factory=set)
    activity_to_group: Dict[str, str] = field(default_factory=dict)
    pending_cluster_ids: List[str] = field(default_factory=list)
    last_updated: str = ""

    def group_by_id(self, group_id: str) -> Optional[RouteGroup]:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None

    def to_dict(self, include_points: bool = True) -> Dict[str, Any]:
        return {
            "version": self.version,
            "signatures": {
                key: sig.to_dict(include_points) for key, sig in self.signatures.items()
            },
            "groups": [group.to_dict(include_points) for group in self.groups],
            "matches": {key: m.to_dict() for key, m in self.matches.items()},
            "processed_ids": sorted(self.processed_ids),
            "activity_to_group": dict(self.activity_to_group),
            "pending_cluster_ids": list(self.pending_cluster_ids),
            "last_updated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingCache":
        return cls(
            version=int(data["version"]),
            signatures={
                str(key): RouteSignature.from_dict(value)
                for key, value in (data.get("signatures") or {}).items()
            },
            groups=[RouteGroup.from_dict(g) for g in data.get("groups") or []],
            matches={
                str(key): RouteMatch.from_dict(value)
                for key, value in (data.get("matches") or {}).items()
            },
            processed_ids={str(a) for a in data.get("processed_ids") or []},
            activity_to_group={
                str(k): str(v) for k, v in (data.get("activity_to_group") or {}).items()
            },
            pending_cluster_ids=[str(a) for a in data.get("pending_cluster_ids") or []],
            last_updated=str(data.get("last_updated", "")),
        )


@dataclass(slots=True)
class ProcessingProgress:
    status: str = "idle"
    current: int = 0
    total: int = 0
    message: str = ""
    routes_found: int = 0
    matches_found: int = 0


@dataclass(slots=True)
class ProcessingCheckpoint:
    """Resumable record of candidates still waiting to be processed."""

    pending_ids: List[str]
    metadata: Dict[str, ActivityMetadata]
    timestamp: str
    prefilter_generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pending_ids": list(self.pending_ids),
            "metadata": {k: v.to_dict() for k, v in self.metadata.items()},
            "timestamp": self.timestamp,
            "prefilter_generation": self.prefilter_generation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingCheckpoint":
        return cls(
            pending_ids=[str(a) for a in data.get("pending_ids") or []],
            metadata={
                str(k): ActivityMetadata.from_dict(v)
                for k, v in (data.get("metadata") or {}).items()
            },
            timestamp=str(data.get("timestamp", "")),
            prefilter_generation=int(data.get("prefilter_generation", 0)),
        )


__all__ = [
    "LatLng",
    "DIRECTION_SAME",
    "DIRECTION_REVERSE",
    "DIRECTION_PARTIAL",
    "Bounds",
    "RouteSignature",
    "MatchResult",
    "RouteMatch",
    "RouteGroup",
    "RouteLap",
    "ActivityMetadata",
    "ActivityBoundsItem",
    "ProcessingCache",
    "ProcessingProgress",
    "ProcessingCheckpoint",
]
