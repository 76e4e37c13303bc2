"""Background route processing pipeline.

One pipeline instance per process owns the route-match cache. A run moves
through ``filtering -> fetching/processing -> matching -> complete`` (or
``error``; ``idle`` after cancellation). Work is checkpointed before it
starts and after every batch so an interrupted run resumes where it stopped.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
import copy
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import random
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import (
    CHECKPOINT_MAX_PENDING,
    ENRICHMENT_ENABLED,
    PIPELINE_BATCH_SIZE,
    PIPELINE_BATCH_YIELD_RANGE,
    PIPELINE_FETCH_CONCURRENCY,
    PREFILTER_GENERATION,
    PROGRESS_THROTTLE_SECONDS,
    STORAGE_DIR,
)
from .geo import route_distance
from .matching.clustering import group_incremental
from .matching.consensus import (
    ConsensusConfig,
    build_preview_points,
    compute_consensus_route,
    consensus_distance,
    detect_laps,
)
from .matching.matcher import MatchConfig, compare_routes
from .models import (
    ActivityBoundsItem,
    ActivityMetadata,
    LatLng,
    ProcessingCache,
    ProcessingCheckpoint,
    ProcessingProgress,
    RouteGroup,
    RouteLap,
    RouteMatch,
    RouteSignature,
)
from .providers.geocoding import Geocoder, NominatimGeocoder, generate_route_name
from .providers.streams import HttpStreamProvider, StreamProvider
from .signature import SignatureConfig, build_signatures_batch, resample_signature_points
from .spatial_index import SpatialIndex, find_activities_with_potential_matches
from .storage.bounds_cache import BoundsCacheStore
from .storage.checkpoint import CheckpointStore
from .storage.gps_store import GpsTrackStore
from .storage.route_cache import (
    RouteCacheStore,
    add_signatures_to_cache,
    create_empty_cache,
    get_cache_stats,
    get_route_group_for_activity,
    update_route_groups,
)
from .utils import utc_now_iso

ProgressListener = Callable[[ProcessingProgress], None]
CacheListener = Callable[[ProcessingCache], None]
Unsubscribe = Callable[[], None]

TERMINAL_STATES = frozenset({"idle", "complete", "error"})


@dataclass(slots=True)
class PipelineConfig:
    storage_dir: Path | str = STORAGE_DIR
    batch_size: int = PIPELINE_BATCH_SIZE
    fetch_concurrency: int = PIPELINE_FETCH_CONCURRENCY
    checkpoint_max_pending: int = CHECKPOINT_MAX_PENDING
    progress_throttle_seconds: float = PROGRESS_THROTTLE_SECONDS
    batch_yield_range: Tuple[float, float] = PIPELINE_BATCH_YIELD_RANGE
    enrichment_enabled: bool = ENRICHMENT_ENABLED
    # Run naming on a daemon thread; False runs it inline after persistence.
    enrichment_in_background: bool = True
    signature: SignatureConfig = field(default_factory=SignatureConfig)
    matching: MatchConfig = field(default_factory=MatchConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    stream_provider: Optional[StreamProvider] = None
    geocoder: Optional[Geocoder] = None
    logger: Optional[logging.Logger] = None


@dataclass(slots=True)
class _QueuedRequest:
    activity_ids: List[str]
    metadata: Dict[str, ActivityMetadata]
    bounds: List[ActivityBoundsItem]


class RouteProcessingPipeline:
    """Owns and mutates the route-match cache; never runs concurrently with itself."""

    def __init__(self, config: PipelineConfig | None = None) -> None:
        self.config = config or PipelineConfig()
        self._log = self.config.logger or logging.getLogger(self.__class__.__name__)
        storage_dir = Path(self.config.storage_dir)
        self.route_store = RouteCacheStore(storage_dir)
        self.gps_store = GpsTrackStore(storage_dir)
        self.checkpoint_store = CheckpointStore(storage_dir)
        self.bounds_store = BoundsCacheStore(storage_dir)
        self._cache: Optional[ProcessingCache] = None
        self._cache_lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._is_processing = False
        self._pending: Optional[_QueuedRequest] = None
        self._cancel_event = threading.Event()
        # Bumped by clear_cache; runs started under an older epoch stop writing.
        self._epoch = 0
        self._progress = ProcessingProgress()
        self._last_emit = 0.0
        self._progress_listeners: List[ProgressListener] = []
        self._cache_listeners: List[CacheListener] = []
        self._listener_lock = threading.Lock()
        self._stream_provider = self.config.stream_provider
        self._geocoder = self.config.geocoder
        self._enrichment_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def initialize(self, resume: bool = True) -> None:
        """Load the persisted cache and optionally resume an interrupted run."""

        self._ensure_cache()
        if resume:
            self.resume_from_checkpoint()

    @property
    def is_processing(self) -> bool:
        with self._state_lock:
            return self._is_processing

    def get_cache(self) -> ProcessingCache:
        """Consistent snapshot of the cache."""

        with self._cache_lock:
            return copy.deepcopy(self._ensure_cache())

    def get_progress(self) -> ProcessingProgress:
        with self._listener_lock:
            return replace(self._progress)

    def get_cache_stats(self) -> Dict[str, int]:
        with self._cache_lock:
            return get_cache_stats(self._ensure_cache())

    def get_signature(self, activity_id: str) -> Optional[RouteSignature]:
        """Signature with points, restoring them from the GPS store if stripped."""

        with self._cache_lock:
            signature = self._ensure_cache().signatures.get(str(activity_id))
            if signature is None:
                return None
            return self._hydrate(signature)

    def get_group_for_activity(self, activity_id: str) -> Optional[RouteGroup]:
        with self._cache_lock:
            group = get_route_group_for_activity(self._ensure_cache(), activity_id)
            return copy.deepcopy(group) if group is not None else None

    def get_group_laps(
        self,
        group_id: str,
        activity_id: str,
        activity_duration: float,
        activity_distance: Optional[float] = None,
    ) -> List[RouteLap]:
        """Laps of one activity over its group's consensus path."""

        with self._cache_lock:
            group = self._ensure_cache().group_by_id(group_id)
            if group is None:
                return []
            path = group.consensus_points or list(
                self._hydrate(group.representative).points
            )
        track = self.gps_store.get(activity_id)
        if not track or not path:
            return []
        distance = activity_distance if activity_distance else route_distance(track)
        return detect_laps(track, path, distance, activity_duration, self.config.consensus)

    def on_progress(self, listener: ProgressListener) -> Unsubscribe:
        with self._listener_lock:
            self._progress_listeners.append(listener)
            current = replace(self._progress)
        self._notify(listener, current)

        def _unsubscribe() -> None:
            with self._listener_lock:
                if listener in self._progress_listeners:
                    self._progress_listeners.remove(listener)

        return _unsubscribe

    def on_cache_update(self, listener: CacheListener) -> Unsubscribe:
        with self._listener_lock:
            self._cache_listeners.append(listener)

        def _unsubscribe() -> None:
            with self._listener_lock:
                if listener in self._cache_listeners:
                    self._cache_listeners.remove(listener)

        return _unsubscribe

    def cancel(self) -> None:
        """Stop the current run at the next batch boundary."""

        self._cancel_event.set()
        self._log.info("Cancellation requested")

    def clear_cache(self) -> None:
        """Cancel any run and drop the route cache and checkpoint.

        GPS tracks are kept so a re-analysis does not refetch them.
        """

        self.cancel()
        with self._state_lock:
            self._pending = None
        with self._cache_lock:
            self._epoch += 1
            self._cache = create_empty_cache()
            try:
                self.route_store.clear()
                self.checkpoint_store.clear()
            except OSError as exc:
                self._log.error("Failed to clear route cache files: %s", exc)
        self._log.info("Route cache cleared")
        self._emit("idle", message="Cache cleared", force=True)
        self._notify_cache()

    def reanalyze_all(
        self,
        activity_ids: Sequence[str],
        metadata: Mapping[str, ActivityMetadata],
        bounds_metadata: Sequence[ActivityBoundsItem],
    ) -> None:
        self.clear_cache()
        self.queue_activities(activity_ids, metadata, bounds_metadata)

    def queue_activities(
        self,
        activity_ids: Sequence[str],
        metadata: Mapping[str, ActivityMetadata],
        bounds_metadata: Sequence[ActivityBoundsItem],
    ) -> None:
        """Process new activities, or remember the request if a run is active."""

        request = _QueuedRequest(
            activity_ids=[str(a) for a in activity_ids],
            metadata={str(k): v for k, v in metadata.items()},
            bounds=list(bounds_metadata),
        )
        with self._state_lock:
            if self._is_processing:
                self._pending = request
                self._log.info(
                    "Pipeline busy; queued follow-up with %d activities",
                    len(request.activity_ids),
                )
                return
            self._is_processing = True
            self._cancel_event.clear()
        try:
            next_request: Optional[_QueuedRequest] = request
            while next_request is not None:
                self._guarded(self._run, next_request)
                with self._state_lock:
                    next_request = self._pending
                    self._pending = None
                    if next_request is not None:
                        # Follow-ups run even when the previous run was cancelled.
                        self._cancel_event.clear()
        finally:
            with self._state_lock:
                self._is_processing = False

    def resume_from_checkpoint(self) -> bool:
        """Continue a run interrupted by a crash, restart or cancellation."""

        checkpoint = self.checkpoint_store.load()
        with self._cache_lock:
            cache = self._ensure_cache()
            pending_cluster = bool(cache.pending_cluster_ids)
        if checkpoint is None and not pending_cluster:
            return False
        if checkpoint is not None and (
            len(checkpoint.pending_ids) > self.config.checkpoint_max_pending
            and checkpoint.prefilter_generation != PREFILTER_GENERATION
        ):
            self._log.warning(
                "Discarding stale checkpoint with %d pending activities",
                len(checkpoint.pending_ids),
            )
            self.checkpoint_store.clear()
            checkpoint = None
            if not pending_cluster:
                return False
        pending_ids = [
            a for a in (checkpoint.pending_ids if checkpoint else [])
            if a not in cache.processed_ids
        ]
        metadata = dict(checkpoint.metadata) if checkpoint else {}
        with self._state_lock:
            if self._is_processing:
                return False
            self._is_processing = True
            self._cancel_event.clear()
        with self._cache_lock:
            epoch = self._epoch
        self._log.info(
            "Resuming from checkpoint: %d pending, %d awaiting clustering",
            len(pending_ids),
            len(cache.pending_cluster_ids),
        )
        try:
            self._guarded(
                self._process_candidates, pending_ids, metadata, checkpoint, epoch
            )
        finally:
            with self._state_lock:
                self._is_processing = False
        return True

    def wait_for_enrichment(self, timeout: Optional[float] = None) -> None:
        thread = self._enrichment_thread
        if thread is not None:
            thread.join(timeout)

    # ------------------------------------------------------------------
    # Run stages
    # ------------------------------------------------------------------
    def _guarded(self, func: Callable[..., object], *args: object) -> None:
        """Run a stage, converting any failure into an ``error`` progress state."""

        try:
            func(*args)
        except Exception as exc:
            self._log.error("Route processing failed: %s", exc, exc_info=True)
            self._emit("error", message=f"Route processing failed: {exc}", force=True)

    def _run(self, request: _QueuedRequest) -> None:
        with self._cache_lock:
            epoch = self._epoch
            cache = self._ensure_cache()
            processed = set(cache.processed_ids)
            pending_cluster = bool(cache.pending_cluster_ids)
        self._emit("filtering", message="Checking for new activities", force=True)
        eligible = [
            a
            for a in request.activity_ids
            if a in request.metadata and request.metadata[a].has_gps and a not in processed
        ]
        if not eligible and not pending_cluster:
            self._emit_complete("No new activities to process")
            return

        # Earlier syncs stay available as counterparts for new activities.
        all_bounds = list(self.bounds_store.merge(request.bounds).items.values())
        index = SpatialIndex()
        index.build(all_bounds)
        matching = self.config.matching
        candidates = find_activities_with_potential_matches(
            eligible,
            all_bounds,
            index,
            min_overlap=matching.min_bounds_overlap,
            distance_tolerance=matching.distance_tolerance,
        )
        self._log.info(
            "Pre-filter: %d of %d new activities have potential matches",
            len(candidates),
            len(eligible),
        )
        if not candidates and not pending_cluster:
            self._emit_complete("No activities with potential matches")
            return

        candidate_set = set(candidates)
        checkpoint = ProcessingCheckpoint(
            pending_ids=list(candidates),
            metadata={a: m for a, m in request.metadata.items() if a in candidate_set},
            timestamp=utc_now_iso(),
            prefilter_generation=PREFILTER_GENERATION,
        )
        with self._cache_lock:
            if self._superseded(epoch):
                return
            self.checkpoint_store.save(checkpoint)
        self._process_candidates(candidates, request.metadata, checkpoint, epoch)

    def _process_candidates(
        self,
        activity_ids: Sequence[str],
        metadata: Mapping[str, ActivityMetadata],
        checkpoint: Optional[ProcessingCheckpoint],
        epoch: int,
    ) -> None:
        ids = list(activity_ids)
        total = len(ids)
        batch_size = max(1, self.config.batch_size)
        remaining = list(ids)
        for batch_start in range(0, total, batch_size):
            if self._cancel_event.is_set():
                self._emit_cancelled()
                return
            batch = ids[batch_start : batch_start + batch_size]
            self._emit(
                "fetching",
                current=batch_start,
                total=total,
                message=f"Loading GPS data ({batch_start + len(batch)}/{total})",
            )
            tracks, failed = self._fetch_batch(batch)
            with self._cache_lock:
                if self._superseded(epoch):
                    return
            self._emit(
                "processing",
                current=batch_start + len(batch),
                total=total,
                message="Building route signatures",
            )
            signatures = build_signatures_batch(
                [(a, tracks[a]) for a in batch if a in tracks], self.config.signature
            )
            built = {s.activity_id for s in signatures}
            invalid = [a for a in batch if a in tracks and a not in built]
            done = set(batch)
            remaining = [a for a in remaining if a not in done]
            with self._cache_lock:
                if self._superseded(epoch):
                    return
                cache = self._ensure_cache()
                add_signatures_to_cache(cache, signatures)
                # Unusable traces are not retried; failed fetches are.
                cache.processed_ids.update(invalid)
                self._persist(cache)
                if checkpoint is not None:
                    checkpoint.pending_ids = remaining
                    checkpoint.timestamp = utc_now_iso()
                    self.checkpoint_store.save(checkpoint)
            self._log.info(
                "Batch %d: %d signatures, %d invalid, %d fetch failures",
                batch_start // batch_size + 1,
                len(signatures),
                len(invalid),
                len(failed),
            )
            if batch_start + batch_size < total:
                lo, hi = self.config.batch_yield_range
                # Bandit B311 false positive: randomness introduces pacing jitter only.
                time.sleep(random.uniform(lo, hi))  # nosec B311

        if self._cancel_event.is_set():
            self._emit_cancelled()
            return
        self._emit("matching", current=total, total=total, message="Grouping routes", force=True)
        if not self._cluster_pending(metadata, epoch):
            return
        self.checkpoint_store.clear()
        self._emit_complete("Route analysis complete")
        self._notify_cache()
        self._start_enrichment()

    def _fetch_batch(
        self, batch: Sequence[str]
    ) -> Tuple[Dict[str, List[LatLng]], List[str]]:
        """GPS traces for a batch, from the local store first then upstream."""

        tracks: Dict[str, List[LatLng]] = dict(self.gps_store.get_many(batch))
        misses = [a for a in batch if a not in tracks]
        failed: List[str] = []
        if not misses:
            return tracks, failed
        provider = self._get_stream_provider()
        fetched: Dict[str, List[LatLng]] = {}
        workers = max(1, min(self.config.fetch_concurrency, len(misses)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            future_map = {
                executor.submit(provider.get_activity_streams, a, ["latlng"]): a
                for a in misses
            }
            for future in as_completed(future_map):
                activity_id = future_map[future]
                try:
                    payload = future.result()
                except Exception as exc:
                    failed.append(activity_id)
                    self._log.warning(
                        "GPS fetch failed for activity=%s: %s", activity_id, exc
                    )
                    continue
                raw = (payload or {}).get("latlng") or []
                fetched[activity_id] = [(p[0], p[1]) for p in raw if p and len(p) == 2]
        self.gps_store.store_many({k: v for k, v in fetched.items() if v})
        tracks.update(fetched)
        return tracks, failed

    def _cluster_pending(
        self, metadata: Mapping[str, ActivityMetadata], epoch: int
    ) -> bool:
        """Group signatures awaiting clustering; False when the run was superseded."""

        known = self._activity_metadata(metadata)
        types = {a: m.activity_type for a, m in known.items() if m.activity_type}
        with self._cache_lock:
            if self._superseded(epoch):
                return False
            cache = self._ensure_cache()
            new_ids = [a for a in cache.pending_cluster_ids if a in cache.signatures]
            if not new_ids:
                cache.pending_cluster_ids = []
                self._persist(cache)
                return True
            new_signatures = self._hydrate_many(new_ids)
            existing_ids = self._nearby_existing(cache, new_signatures, set(new_ids), types)
            existing_signatures = self._hydrate_many(existing_ids)
            existing_groups = [list(g.activity_ids) for g in cache.groups]
        clusters = group_incremental(
            new_signatures,
            existing_signatures,
            existing_groups,
            self.config.matching,
            activity_types=types,
        )
        with self._cache_lock:
            if self._superseded(epoch):
                return False
            cache = self._ensure_cache()
            touched = update_route_groups(cache, clusters, known)
            for group in touched:
                self._refresh_group(cache, group)
            cache.pending_cluster_ids = []
            self._persist(cache)
        self._log.info(
            "Clustering complete: %d new signatures, %d groups touched, %d groups total",
            len(new_signatures),
            len(touched),
            len(cache.groups),
        )
        return True

    def _activity_metadata(
        self, metadata: Mapping[str, ActivityMetadata]
    ) -> Dict[str, ActivityMetadata]:
        """Run metadata layered over what the bounds cache kept from earlier syncs."""

        known = {
            item.id: ActivityMetadata(
                activity_id=item.id,
                name=item.name,
                date=item.date,
                activity_type=item.activity_type,
            )
            for item in self.bounds_store.load().items.values()
        }
        known.update(metadata)
        return known

    def _nearby_existing(
        self,
        cache: ProcessingCache,
        new_signatures: Sequence[RouteSignature],
        new_ids: set[str],
        activity_types: Mapping[str, str],
    ) -> List[str]:
        """Existing signatures whose boxes touch any new signature."""

        existing = [s for a, s in cache.signatures.items() if a not in new_ids]
        if not existing or not new_signatures:
            return []
        index = SpatialIndex()
        index.build(
            ActivityBoundsItem(
                id=s.activity_id,
                bounds=s.bounds,
                activity_type=activity_types.get(s.activity_id, ""),
            )
            for s in existing
        )
        nearby: List[str] = []
        seen: set[str] = set()
        for signature in new_signatures:
            for other in index.query(signature.bounds):
                if other not in seen:
                    seen.add(other)
                    nearby.append(other)
        return nearby

    def _refresh_group(self, cache: ProcessingCache, group: RouteGroup) -> None:
        """Recompute consensus, preview and match records for a changed group."""

        members = self._hydrate_many(group.activity_ids)
        representative = self._hydrate(group.representative)
        group.representative = representative
        consensus = compute_consensus_route(members, self.config.consensus)
        if len(consensus) >= 2:
            group.consensus_points = consensus
        if not group.distance:
            group.distance = (
                consensus_distance(consensus) if len(consensus) >= 2 else representative.distance
            )
        source = consensus if len(consensus) >= 2 else list(representative.points)
        preview = build_preview_points(source)
        if preview:
            group.preview_points = preview

        qualities: List[float] = []
        for member in members:
            if member.activity_id == representative.activity_id:
                continue
            match = compare_routes(representative, member, self.config.matching)
            if match is None:
                # Joined transitively through another member.
                existing = cache.matches.get(member.activity_id)
                qualities.append(existing.match_percentage if existing else 100.0)
                continue
            cache.matches[member.activity_id] = RouteMatch(
                activity_id=member.activity_id,
                route_group_id=group.id,
                match_percentage=float(match.match_percentage),
                direction=match.direction,
                confidence=match.confidence,
                overlap_start=match.overlap_start,
                overlap_end=match.overlap_end,
            )
            qualities.append(float(match.match_percentage))
        if qualities:
            group.average_match_quality = sum(qualities) / len(qualities)

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------
    def _start_enrichment(self) -> None:
        if not self.config.enrichment_enabled:
            return
        with self._cache_lock:
            placeholders = [g.id for g in self._ensure_cache().groups if g.name_is_placeholder]
        if not placeholders:
            return
        if not self.config.enrichment_in_background:
            self._enrich_names(placeholders)
            return
        thread = threading.Thread(
            target=self._enrich_names,
            args=(placeholders,),
            name="route-name-enrichment",
            daemon=True,
        )
        self._enrichment_thread = thread
        thread.start()

    def _enrich_names(self, group_ids: Sequence[str]) -> None:
        """Best-effort geocoded naming; failures never change pipeline state."""

        try:
            geocoder = self._get_geocoder()
            renamed = 0
            for group_id in group_ids:
                with self._cache_lock:
                    group = self._ensure_cache().group_by_id(group_id)
                    if group is None or not group.name_is_placeholder:
                        continue
                    representative = self._hydrate(group.representative)
                if not representative.points:
                    continue
                name = generate_route_name(
                    geocoder,
                    representative.points[0],
                    representative.points[-1],
                    representative.is_loop,
                )
                if not name:
                    continue
                with self._cache_lock:
                    group = self._ensure_cache().group_by_id(group_id)
                    if group is not None and group.name_is_placeholder:
                        group.name = name
                        group.name_is_placeholder = False
                        renamed += 1
            if renamed:
                with self._cache_lock:
                    self._persist(self._ensure_cache())
                self._notify_cache()
                self._log.info("Named %d route groups", renamed)
        except Exception as exc:
            self._log.warning("Route naming failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _ensure_cache(self) -> ProcessingCache:
        with self._cache_lock:
            if self._cache is None:
                loaded = self.route_store.load()
                self._cache = loaded if loaded is not None else create_empty_cache()
                self._log.debug(
                    "Route cache loaded: %d signatures, %d groups",
                    len(self._cache.signatures),
                    len(self._cache.groups),
                )
            return self._cache

    def _persist(self, cache: ProcessingCache) -> None:
        cache.last_updated = utc_now_iso()
        self.route_store.save(cache)

    def _hydrate(self, signature: RouteSignature) -> RouteSignature:
        """Restore stripped points by resampling the stored GPS track."""

        if signature.has_points:
            return signature
        with self._cache_lock:
            cache = self._ensure_cache()
            cached = cache.signatures.get(signature.activity_id)
            if cached is not None and cached.has_points:
                return cached
            track = self.gps_store.get(signature.activity_id)
            if not track:
                self._log.debug(
                    "No GPS track to restore activity=%s", signature.activity_id
                )
                return signature
            points = resample_signature_points(track, self.config.signature)
            restored = replace(signature, points=points, point_count=len(points))
            if signature.activity_id in cache.signatures:
                cache.signatures[signature.activity_id] = restored
            return restored

    def _hydrate_many(self, activity_ids: Sequence[str]) -> List[RouteSignature]:
        with self._cache_lock:
            cache = self._ensure_cache()
            result = []
            for activity_id in activity_ids:
                signature = cache.signatures.get(activity_id)
                if signature is None:
                    continue
                restored = self._hydrate(signature)
                if restored.has_points:
                    result.append(restored)
                else:
                    self._log.warning(
                        "Skipping activity=%s: points unavailable", activity_id
                    )
            return result

    def _get_stream_provider(self) -> StreamProvider:
        if self._stream_provider is None:
            self._stream_provider = HttpStreamProvider()
        return self._stream_provider

    def _get_geocoder(self) -> Geocoder:
        if self._geocoder is None:
            self._geocoder = NominatimGeocoder()
        return self._geocoder

    def _emit_complete(self, message: str) -> None:
        with self._cache_lock:
            cache = self._ensure_cache()
            routes, matches = len(cache.groups), len(cache.matches)
        self._emit(
            "complete",
            message=message,
            routes_found=routes,
            matches_found=matches,
            force=True,
        )

    def _superseded(self, epoch: int) -> bool:
        """True once the cache was cleared after the run began; caller holds the cache lock."""

        if self._epoch == epoch:
            return False
        self._log.info("Route cache cleared during run; dropping its results")
        return True

    def _emit_cancelled(self) -> None:
        self._log.info("Route processing cancelled; checkpoint kept")
        self._emit("idle", message="Cancelled", force=True)

    def _emit(
        self,
        status: str,
        current: int = 0,
        total: int = 0,
        message: str = "",
        routes_found: int = 0,
        matches_found: int = 0,
        force: bool = False,
    ) -> None:
        now = time.monotonic()
        with self._listener_lock:
            changed = status != self._progress.status
            self._progress = ProcessingProgress(
                status=status,
                current=current,
                total=total,
                message=message,
                routes_found=routes_found,
                matches_found=matches_found,
            )
            throttled = (
                not force
                and not changed
                and status not in TERMINAL_STATES
                and now - self._last_emit < self.config.progress_throttle_seconds
            )
            if throttled:
                return
            self._last_emit = now
            snapshot = replace(self._progress)
            listeners = list(self._progress_listeners)
        for listener in listeners:
            self._notify(listener, snapshot)

    def _notify(self, listener: ProgressListener, progress: ProcessingProgress) -> None:
        try:
            listener(progress)
        except Exception as exc:  # pragma: no cover - listener bugs are not ours
            self._log.debug("Progress listener failed: %s", exc)

    def _notify_cache(self) -> None:
        with self._listener_lock:
            listeners = list(self._cache_listeners)
        if not listeners:
            return
        snapshot = self.get_cache()
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:  # pragma: no cover - listener bugs are not ours
                self._log.debug("Cache listener failed: %s", exc)


_PIPELINE: Optional[RouteProcessingPipeline] = None
_PIPELINE_LOCK = threading.Lock()


def get_pipeline(config: PipelineConfig | None = None) -> RouteProcessingPipeline:
    """Process-wide pipeline; ``config`` only applies on first creation."""

    global _PIPELINE
    with _PIPELINE_LOCK:
        if _PIPELINE is None:
            _PIPELINE = RouteProcessingPipeline(config)
        return _PIPELINE


def reset_pipeline() -> None:
    """Drop the process-wide pipeline (used by tests and on sign-out)."""

    global _PIPELINE
    with _PIPELINE_LOCK:
        if _PIPELINE is not None:
            _PIPELINE.cancel()
        _PIPELINE = None
