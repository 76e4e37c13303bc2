"""Central configuration for the route matching engine.

All values are constants imported by the rest of the package. Most can be
overridden through environment variables (optionally via a local `.env`).
Run-time configuration dataclasses take their defaults from here.
"""

from __future__ import annotations

import os

from dotenv import load_dotenv


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env from the current directory or any parent folder.
load_dotenv()


# ---------------------------------------------------------------------------
# Geo math
# ---------------------------------------------------------------------------
# Mean Earth radius used by haversine (metres).
EARTH_RADIUS_M = 6_371_000.0

# Grid cell size (degrees) for start/end region hashes. ~500 m at mid latitudes.
REGION_GRID_DEGREES = 0.005

# A step longer than OUTLIER_STEP_FACTOR x median step (and at least
# OUTLIER_STEP_MIN_M) is treated as a GPS dropout and left out of the distance.
OUTLIER_STEP_FACTOR = _env_float("OUTLIER_STEP_FACTOR", 50.0)
OUTLIER_STEP_MIN_M = _env_float("OUTLIER_STEP_MIN_M", 500.0)
# Steps above this are never counted, whatever the median says.
MAX_STEP_DISTANCE_M = _env_float("MAX_STEP_DISTANCE_M", 10_000.0)


# ---------------------------------------------------------------------------
# Signature builder
# ---------------------------------------------------------------------------
# Point budget per signature. Bounds DTW cost at O(n*m) for routes short
# enough that the budget keeps spacing under SIGNATURE_MAX_SPACING_M.
SIGNATURE_TARGET_POINTS = _env_int("SIGNATURE_TARGET_POINTS", 100)

# Douglas-Peucker tolerance (metres) before resampling.
SIGNATURE_SIMPLIFY_TOLERANCE_M = _env_float("SIGNATURE_SIMPLIFY_TOLERANCE_M", 15.0)

# Lower bound on spacing between resampled points (metres).
SIGNATURE_MIN_SPACING_M = _env_float("SIGNATURE_MIN_SPACING_M", 5.0)

# Upper bound on spacing between resampled points (metres). Longer routes get
# more points than the budget. Kept at half the match threshold so two traces
# of one road interleave closer than the threshold wherever they start.
# 0 disables the cap.
SIGNATURE_MAX_SPACING_M = _env_float("SIGNATURE_MAX_SPACING_M", 25.0)

# Start/end proximity that marks a route as a loop (metres).
LOOP_THRESHOLD_M = _env_float("LOOP_THRESHOLD_M", 200.0)

# Worker threads for batched signature construction.
SIGNATURE_BATCH_WORKERS = _env_int("SIGNATURE_BATCH_WORKERS", 4)


# ---------------------------------------------------------------------------
# Pairwise matching
# ---------------------------------------------------------------------------
# Aligned points closer than this count as matched (metres).
MATCH_DISTANCE_THRESHOLD_M = _env_float("MATCH_DISTANCE_THRESHOLD_M", 50.0)

# Per-pair DTW cost cap, as a multiple of the distance threshold.
MATCH_MAX_POINT_DISTANCE_FACTOR = _env_float("MATCH_MAX_POINT_DISTANCE_FACTOR", 3.0)

# Results under this percentage are discarded.
MATCH_MIN_PERCENTAGE = _env_float("MATCH_MIN_PERCENTAGE", 20.0)

# Bounding-box overlap ratio required before alignment runs.
MATCH_MIN_BOUNDS_OVERLAP = _env_float("MATCH_MIN_BOUNDS_OVERLAP", 0.3)

# Relative distance tolerance for the quick filter.
MATCH_DISTANCE_TOLERANCE = _env_float("MATCH_DISTANCE_TOLERANCE", 0.5)

# Direction is `same`/`reverse` only when both cutoffs are cleared.
DIRECTION_MIN_PERCENTAGE = _env_float("DIRECTION_MIN_PERCENTAGE", 75.0)
FRECHET_MIN_SCORE = _env_float("FRECHET_MIN_SCORE", 50.0)

# Multiple of the distance threshold that maps to a Frechet score of zero.
FRECHET_ZERO_SCORE_FACTOR = _env_float("FRECHET_ZERO_SCORE_FACTOR", 5.0)

# Point count at which point-density confidence saturates.
CONFIDENCE_FULL_POINT_COUNT = _env_int("CONFIDENCE_FULL_POINT_COUNT", 30)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------
GROUPING_THRESHOLD = _env_float("GROUPING_THRESHOLD", 70.0)
GROUP_REQUIRES_FULL_DIRECTION = _env_bool("GROUP_REQUIRES_FULL_DIRECTION", True)
GROUP_MIN_ROUTE_DISTANCE_M = _env_float("GROUP_MIN_ROUTE_DISTANCE_M", 500.0)
GROUP_MAX_DISTANCE_DIFF = _env_float("GROUP_MAX_DISTANCE_DIFF", 0.2)
GROUP_ENDPOINT_THRESHOLD_M = _env_float("GROUP_ENDPOINT_THRESHOLD_M", 200.0)
# Middle checkpoints (25/50/75%) may drift twice as far as endpoints.
GROUP_MIDPOINT_THRESHOLD_M = _env_float("GROUP_MIDPOINT_THRESHOLD_M", 400.0)

# Worker threads used for pairwise comparisons while clustering.
CLUSTER_MAX_WORKERS = _env_int("CLUSTER_MAX_WORKERS", 4)


# ---------------------------------------------------------------------------
# Consensus and laps
# ---------------------------------------------------------------------------
CONSENSUS_PROXIMITY_M = _env_float("CONSENSUS_PROXIMITY_M", 50.0)
CONSENSUS_QUORUM = _env_float("CONSENSUS_QUORUM", 0.8)
CONSENSUS_NEIGHBOR_WINDOW = _env_int("CONSENSUS_NEIGHBOR_WINDOW", 2)
CONSENSUS_GAP_MEDIAN_FACTOR = _env_float("CONSENSUS_GAP_MEDIAN_FACTOR", 5.0)
CONSENSUS_MIN_GAP_M = _env_float("CONSENSUS_MIN_GAP_M", 30.0)
CONSENSUS_MAX_GAP_M = _env_float("CONSENSUS_MAX_GAP_M", 100.0)

LAP_DISTANCE_THRESHOLD_M = _env_float("LAP_DISTANCE_THRESHOLD_M", 50.0)
LAP_MIN_DISTANCE_M = _env_float("LAP_MIN_DISTANCE_M", 100.0)
LAP_MERGE_GAP_M = _env_float("LAP_MERGE_GAP_M", 30.0)

# Number of points kept for a group's preview thumbnail.
PREVIEW_POINT_COUNT = 20


# ---------------------------------------------------------------------------
# Spatial index
# ---------------------------------------------------------------------------
# Padding (degrees) applied around boxes before tree queries.
SPATIAL_QUERY_PADDING_DEG = 0.001


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
PIPELINE_BATCH_SIZE = _env_int("PIPELINE_BATCH_SIZE", 20)

# In-flight GPS stream fetches per batch.
PIPELINE_FETCH_CONCURRENCY = _env_int("PIPELINE_FETCH_CONCURRENCY", 10)

# Checkpoints above this size from an older pre-filter generation are dropped.
CHECKPOINT_MAX_PENDING = _env_int("CHECKPOINT_MAX_PENDING", 200)

# Bump when the candidate pre-filter changes so oversized checkpoints rebuild.
PREFILTER_GENERATION = 2

# Minimum gap between non-terminal progress notifications (seconds).
PROGRESS_THROTTLE_SECONDS = _env_float("PROGRESS_THROTTLE_SECONDS", 0.3)

# Short pause between CPU-heavy batches (seconds).
PIPELINE_BATCH_YIELD_RANGE = (0.05, 0.2)

# Name given to groups until geocoding replaces it.
PLACEHOLDER_ROUTE_NAME = "Unknown Route"

# Run geocoded naming after each successful pipeline run.
ENRICHMENT_ENABLED = _env_bool("ENRICHMENT_ENABLED", True)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
STORAGE_DIR = os.getenv("ROUTE_MATCHER_STORAGE_DIR", "route_matcher_data")

# Bump whenever the persisted ProcessingCache layout changes.
ROUTE_CACHE_VERSION = 3

# GPS tracks are read and written in chunks of this size.
GPS_STORE_BATCH_SIZE = 20


# ---------------------------------------------------------------------------
# Upstream streams API
# ---------------------------------------------------------------------------
STREAMS_BASE_URL = os.getenv("ROUTE_MATCHER_STREAMS_URL", "https://intervals.icu/api/v1")
STREAMS_API_KEY = os.getenv("ROUTE_MATCHER_STREAMS_API_KEY", "")

# HTTP session pool sizes for concurrent requests.
HTTP_POOL_CONNECTIONS = 20
HTTP_POOL_MAXSIZE = 20

# Request timeout in seconds.
REQUEST_TIMEOUT = 15

# Rate limiter settings.
# RATE_LIMIT_MAX_CONCURRENT caps total in-flight requests.
RATE_LIMIT_MAX_CONCURRENT = _env_int("RATE_LIMIT_MAX_CONCURRENT", 10)
# RATE_LIMIT_JITTER_RANGE adds random delay (seconds) to smooth bursts.
RATE_LIMIT_JITTER_RANGE = (0.0, 0.05)
# RATE_LIMIT_NEAR_LIMIT_BUFFER starts throttling when this close to the short-window limit.
RATE_LIMIT_NEAR_LIMIT_BUFFER = 3
# RATE_LIMIT_THROTTLE_SECONDS is the pause applied on 429s or near-limit signals.
RATE_LIMIT_THROTTLE_SECONDS = _env_float("RATE_LIMIT_THROTTLE_SECONDS", 15.0)


# ---------------------------------------------------------------------------
# Geocoding
# ---------------------------------------------------------------------------
NOMINATIM_URL = "https://nominatim.openstreetmap.org/reverse"
GEOCODER_USER_AGENT = os.getenv(
    "ROUTE_MATCHER_USER_AGENT", "route-matcher/0.1 (route naming)"
)
# Nominatim usage policy allows one request per second.
GEOCODER_MIN_INTERVAL_SECONDS = 1.0
GEOCODER_CACHE_SIZE = 500
GEOCODER_CACHE_TTL_SECONDS = 30 * 24 * 3600
# Coordinates are rounded to 1/GEOCODER_CACHE_PRECISION degrees for cache keys.
GEOCODER_CACHE_PRECISION = 200
# Names longer than this are cut at the first comma.
ROUTE_NAME_MAX_PART_LENGTH = 25
