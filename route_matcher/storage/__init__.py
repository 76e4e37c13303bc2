"""Persistent stores: bounds metadata, raw GPS tracks and the route-match cache."""

from .bounds_cache import BoundsCache, BoundsCacheStore, build_bounds_item
from .checkpoint import CheckpointStore
from .gps_store import GpsTrackStore
from .route_cache import (
    RouteCacheStore,
    add_signatures_to_cache,
    create_empty_cache,
    get_cache_stats,
    get_route_group_for_activity,
    get_unprocessed_activity_ids,
    update_route_groups,
)

__all__ = [
    "BoundsCache",
    "BoundsCacheStore",
    "build_bounds_item",
    "CheckpointStore",
    "GpsTrackStore",
    "RouteCacheStore",
    "add_signatures_to_cache",
    "create_empty_cache",
    "get_cache_stats",
    "get_route_group_for_activity",
    "get_unprocessed_activity_ids",
    "update_route_groups",
]
