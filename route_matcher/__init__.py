"""Detect repeated routes across GPS-tracked activities."""

from .errors import CacheVersionError, RouteMatcherError, StreamFetchError
from .matching import (
    MatchConfig,
    compare_routes,
    compute_consensus_route,
    detect_laps,
    find_matches,
    group_incremental,
    group_signatures,
    should_group_routes,
)
from .models import (
    ActivityBoundsItem,
    ActivityMetadata,
    Bounds,
    MatchResult,
    ProcessingCache,
    ProcessingProgress,
    RouteGroup,
    RouteLap,
    RouteSignature,
)
from .pipeline import PipelineConfig, RouteProcessingPipeline, get_pipeline
from .signature import SignatureConfig, build_signature, build_signatures_batch
from .spatial_index import SpatialIndex, find_activities_with_potential_matches

__all__ = [
    "CacheVersionError",
    "RouteMatcherError",
    "StreamFetchError",
    "MatchConfig",
    "compare_routes",
    "compute_consensus_route",
    "detect_laps",
    "find_matches",
    "group_incremental",
    "group_signatures",
    "should_group_routes",
    "ActivityBoundsItem",
    "ActivityMetadata",
    "Bounds",
    "MatchResult",
    "ProcessingCache",
    "ProcessingProgress",
    "RouteGroup",
    "RouteLap",
    "RouteSignature",
    "PipelineConfig",
    "RouteProcessingPipeline",
    "get_pipeline",
    "SignatureConfig",
    "build_signature",
    "build_signatures_batch",
    "SpatialIndex",
    "find_activities_with_potential_matches",
]
