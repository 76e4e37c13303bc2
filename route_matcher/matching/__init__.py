"""Route comparison, clustering and consensus."""

from .clustering import (
    UnionFind,
    group_incremental,
    group_signatures,
    same_activity_type,
)
from .consensus import (
    ConsensusConfig,
    build_preview_points,
    compute_consensus_route,
    detect_laps,
)
from .matcher import MatchConfig, compare_routes, find_matches, should_group_routes

__all__ = [
    "UnionFind",
    "group_incremental",
    "group_signatures",
    "same_activity_type",
    "ConsensusConfig",
    "build_preview_points",
    "compute_consensus_route",
    "detect_laps",
    "MatchConfig",
    "compare_routes",
    "find_matches",
    "should_group_routes",
]
