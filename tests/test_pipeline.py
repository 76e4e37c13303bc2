"""End-to-end tests for the route processing pipeline with a fake GPS provider."""

from __future__ import annotations

import threading
from typing import Callable, Dict, Iterable, List, Optional

import pytest

from route_matcher.errors import StreamFetchError
from route_matcher.geo import route_distance
from route_matcher.models import ActivityMetadata, ProcessingCheckpoint
from route_matcher.pipeline import (
    PipelineConfig,
    RouteProcessingPipeline,
    get_pipeline,
    reset_pipeline,
)
from route_matcher.storage import build_bounds_item

from conftest import HOOK_ROUTE, L_ROUTE, ORIGIN, jitter, make_track, offset

ORDER = ["a1", "h1", "a2", "h2", "a3", "z"]
EXPECTED_GROUPS = {frozenset({"a1", "a2", "a3"}), frozenset({"h1", "h2"})}


def _tracks() -> Dict[str, list]:
    l_track = make_track(L_ROUTE)
    hook_track = make_track(HOOK_ROUTE, origin=offset(ORIGIN, 0.0, 5500.0))
    return {
        "a1": jitter(l_track, 3.0, seed=31),
        "a2": jitter(l_track, 3.0, seed=32),
        "a3": list(reversed(jitter(l_track, 3.0, seed=33))),
        "h1": jitter(hook_track, 3.0, seed=41),
        "h2": jitter(hook_track, 3.0, seed=42),
        "z": make_track(L_ROUTE, origin=offset(ORIGIN, 20_000.0, 0.0)),
    }


TRACKS = _tracks()


class FakeProvider:
    def __init__(
        self,
        tracks: Dict[str, list],
        on_fetch: Optional[Callable[[str], None]] = None,
        failing: Iterable[str] = (),
    ) -> None:
        self.tracks = tracks
        self.on_fetch = on_fetch
        self.failing = set(failing)
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def get_activity_streams(self, activity_id, keys=("latlng",)):
        with self._lock:
            self.calls.append(activity_id)
        if self.on_fetch is not None:
            self.on_fetch(activity_id)
        if activity_id in self.failing:
            raise StreamFetchError(f"boom {activity_id}")
        return {"latlng": [list(p) for p in self.tracks[activity_id]]}


class StubGeocoder:
    def __init__(self, name: Optional[str] = "Riverside", error: Optional[Exception] = None):
        self.name = name
        self.error = error

    def reverse_geocode(self, lat, lng):
        if self.error is not None:
            raise self.error
        return self.name


def _date(index):
    return f"2025-01-0{index + 1}"


def _metadata(ids=ORDER, names=None, types=None):
    names = names or {}
    types = types or {}
    return {
        a: ActivityMetadata(
            activity_id=a,
            name=names.get(a, ""),
            date=_date(index),
            activity_type=types.get(a, "Run"),
        )
        for index, a in enumerate(ids)
    }


def _bounds(ids=ORDER, tracks=TRACKS, types=None):
    types = types or {}
    return [
        build_bounds_item(
            a,
            tracks[a],
            types.get(a, "Run"),
            date=_date(index),
            distance=route_distance(tracks[a]),
        )
        for index, a in enumerate(ids)
    ]


def _config(tmp_path, provider, **overrides):
    values = dict(
        storage_dir=tmp_path,
        batch_size=2,
        fetch_concurrency=2,
        batch_yield_range=(0.0, 0.0),
        enrichment_enabled=False,
        stream_provider=provider,
    )
    values.update(overrides)
    return PipelineConfig(**values)


def _groups(cache):
    return {frozenset(g.activity_ids) for g in cache.groups}


def _queue(pipeline, ids=ORDER, names=None):
    pipeline.queue_activities(ids, _metadata(ids, names), _bounds(ids))


@pytest.fixture(autouse=True)
def _reset_singleton():
    yield
    reset_pipeline()


def test_full_run_groups_routes_and_skips_isolated(tmp_path):
    provider = FakeProvider(TRACKS)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    statuses: List[str] = []
    pipeline.on_progress(lambda p: statuses.append(p.status))
    _queue(pipeline, names={"a1": "Morning Run - River Path"})

    cache = pipeline.get_cache()
    assert _groups(cache) == EXPECTED_GROUPS
    assert "z" not in provider.calls
    assert "z" not in cache.processed_ids
    assert sorted(provider.calls) == ["a1", "a2", "a3", "h1", "h2"]
    assert cache.pending_cluster_ids == []
    assert pipeline.checkpoint_store.load() is None
    assert pipeline.gps_store.count() == 5

    progress = pipeline.get_progress()
    assert progress.status == "complete"
    assert progress.routes_found == 2
    assert progress.matches_found == 3
    assert statuses[0] == "idle"
    assert {"filtering", "matching"} <= set(statuses)
    assert statuses[-1] == "complete"

    river = pipeline.get_group_for_activity("a3")
    assert river.name == "River Path"
    assert not river.name_is_placeholder
    assert river.consensus_points and len(river.preview_points) > 0
    assert cache.matches["a3"].direction == "reverse"
    assert pipeline.get_cache_stats()["groups"] == 2


def test_cancelled_run_resumes_from_checkpoint(tmp_path):
    holder: Dict[str, RouteProcessingPipeline] = {}
    first_provider = FakeProvider(TRACKS, on_fetch=lambda _: holder["p"].cancel())
    first = RouteProcessingPipeline(_config(tmp_path, first_provider))
    holder["p"] = first
    _queue(first)

    assert sorted(first_provider.calls) == ["a1", "h1"]
    assert first.get_progress().status == "idle"
    checkpoint = first.checkpoint_store.load()
    assert checkpoint is not None
    assert checkpoint.pending_ids == ["a2", "h2", "a3"]
    assert first.get_cache().groups == []

    second_provider = FakeProvider(TRACKS)
    second = RouteProcessingPipeline(_config(tmp_path, second_provider))
    second.initialize()
    assert sorted(second_provider.calls) == ["a2", "a3", "h2"]
    assert _groups(second.get_cache()) == EXPECTED_GROUPS
    assert second.checkpoint_store.load() is None


def test_second_sync_extends_existing_group(tmp_path):
    provider = FakeProvider(TRACKS)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    _queue(pipeline, ids=["a1", "a2", "h1", "h2"])
    before = pipeline.get_group_for_activity("a1")
    assert before.activity_count == 2

    provider.calls.clear()
    _queue(pipeline)
    assert provider.calls == ["a3"]
    after = pipeline.get_group_for_activity("a3")
    assert after.id == before.id
    assert after.activity_count == 3
    assert _groups(pipeline.get_cache()) == EXPECTED_GROUPS


def test_fetch_failure_is_retried_on_next_sync(tmp_path):
    provider = FakeProvider(TRACKS, failing={"a2"})
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    _queue(pipeline)
    cache = pipeline.get_cache()
    assert "a2" not in cache.processed_ids
    assert _groups(cache) == {frozenset({"a1", "a3"}), frozenset({"h1", "h2"})}
    assert pipeline.get_progress().status == "complete"

    provider.failing.clear()
    provider.calls.clear()
    _queue(pipeline)
    assert provider.calls == ["a2"]
    assert _groups(pipeline.get_cache()) == EXPECTED_GROUPS


def test_unusable_track_is_marked_processed(tmp_path):
    tracks = dict(TRACKS, h2=[])
    provider = FakeProvider(tracks)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    _queue(pipeline)
    cache = pipeline.get_cache()
    assert "h2" in cache.processed_ids
    assert "h2" not in cache.signatures
    assert _groups(cache) == {frozenset({"a1", "a2", "a3"})}

    provider.calls.clear()
    _queue(pipeline)
    assert provider.calls == []


def test_listener_failures_do_not_break_processing(tmp_path):
    pipeline = RouteProcessingPipeline(_config(tmp_path, FakeProvider(TRACKS)))
    seen = []
    pipeline.on_progress(lambda p: 1 / 0)
    pipeline.on_cache_update(lambda c: (_ for _ in ()).throw(RuntimeError("listener")))
    pipeline.on_cache_update(lambda c: seen.append(len(c.groups)))
    _queue(pipeline)
    assert pipeline.get_progress().status == "complete"
    assert seen and seen[-1] == 2


def test_unsubscribe_stops_notifications(tmp_path):
    pipeline = RouteProcessingPipeline(_config(tmp_path, FakeProvider(TRACKS)))
    seen = []
    unsubscribe = pipeline.on_progress(lambda p: seen.append(p.status))
    unsubscribe()
    _queue(pipeline)
    assert seen == ["idle"]


def test_request_during_run_is_processed_afterwards(tmp_path):
    holder: Dict[str, RouteProcessingPipeline] = {}
    fired = threading.Event()

    def _queue_more(_):
        if not fired.is_set():
            fired.set()
            _queue(holder["p"])

    provider = FakeProvider(TRACKS, on_fetch=_queue_more)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    holder["p"] = pipeline
    _queue(pipeline, ids=["a1", "a2", "h1", "h2"])

    assert "a3" in provider.calls
    assert _groups(pipeline.get_cache()) == EXPECTED_GROUPS
    assert not pipeline.is_processing


def _once(action):
    lock = threading.Lock()

    def _fire(_):
        if lock.acquire(blocking=False):
            action()

    return _fire


def test_reanalyze_during_run_restarts_from_scratch(tmp_path):
    holder: Dict[str, RouteProcessingPipeline] = {}
    provider = FakeProvider(
        TRACKS, on_fetch=_once(lambda: holder["p"].reanalyze_all(ORDER, _metadata(), _bounds()))
    )
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    holder["p"] = pipeline
    _queue(pipeline)

    cache = pipeline.get_cache()
    assert _groups(cache) == EXPECTED_GROUPS
    assert cache.processed_ids == {"a1", "a2", "a3", "h1", "h2"}
    assert cache.pending_cluster_ids == []
    assert pipeline.checkpoint_store.load() is None
    assert pipeline.get_progress().status == "complete"
    assert not pipeline.is_processing


def test_clear_cache_during_run_discards_in_flight_batch(tmp_path):
    holder: Dict[str, RouteProcessingPipeline] = {}
    provider = FakeProvider(TRACKS, on_fetch=_once(lambda: holder["p"].clear_cache()))
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    holder["p"] = pipeline
    _queue(pipeline)

    cache = pipeline.get_cache()
    assert cache.signatures == {}
    assert cache.processed_ids == set()
    assert pipeline.checkpoint_store.load() is None
    assert not pipeline.route_store.path.exists()
    assert pipeline.get_progress().status == "idle"
    # Fetched tracks are still kept for the next analysis.
    assert pipeline.gps_store.count() == 2


def test_follow_up_request_runs_after_cancel(tmp_path):
    holder: Dict[str, RouteProcessingPipeline] = {}

    def _cancel_and_queue():
        holder["p"].cancel()
        _queue(holder["p"])

    provider = FakeProvider(TRACKS, on_fetch=_once(_cancel_and_queue))
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    holder["p"] = pipeline
    _queue(pipeline, ids=["a1", "a2", "h1", "h2"])

    assert _groups(pipeline.get_cache()) == EXPECTED_GROUPS
    assert pipeline.get_progress().status == "complete"
    assert pipeline.checkpoint_store.load() is None


def test_group_uses_metadata_of_member_from_earlier_sync(tmp_path):
    ids = ["a1", "a2"]
    types = {"a1": "Ride", "a2": "Ride"}
    metadata = _metadata(ids, types=types)
    bounds = _bounds(ids, types=types)
    provider = FakeProvider(TRACKS, failing={"a2"})
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    pipeline.queue_activities(ids, metadata, bounds)
    assert pipeline.get_cache().groups == []
    assert pipeline.get_cache().processed_ids == {"a1"}

    provider.failing.clear()
    pipeline.queue_activities(["a2"], {"a2": metadata["a2"]}, bounds[1:])
    group = pipeline.get_group_for_activity("a2")
    assert group is not None
    assert group.activity_ids == ["a1", "a2"]
    assert group.activity_type == "Ride"
    assert (group.first_date, group.last_date) == ("2025-01-01", "2025-01-02")


def test_runs_and_rides_on_the_same_road_are_grouped_separately(tmp_path):
    l_track = make_track(L_ROUTE)
    tracks = {f"a{i}": jitter(l_track, 3.0, seed=50 + i) for i in range(1, 5)}
    ids = sorted(tracks)
    types = {"a1": "Run", "a2": "Run", "a3": "Ride", "a4": "Ride"}
    pipeline = RouteProcessingPipeline(_config(tmp_path, FakeProvider(tracks)))
    pipeline.queue_activities(ids, _metadata(ids, types=types), _bounds(ids, tracks, types=types))

    groups = pipeline.get_cache().groups
    assert {frozenset(g.activity_ids) for g in groups} == {
        frozenset({"a1", "a2"}),
        frozenset({"a3", "a4"}),
    }
    assert {g.activity_type for g in groups} == {"Run", "Ride"}


def test_error_keeps_checkpoint(tmp_path, monkeypatch):
    pipeline = RouteProcessingPipeline(_config(tmp_path, FakeProvider(TRACKS)))

    def _boom(cache):
        raise OSError("disk full")

    monkeypatch.setattr(pipeline.route_store, "save", _boom)
    _queue(pipeline)
    progress = pipeline.get_progress()
    assert progress.status == "error"
    assert "disk full" in progress.message
    checkpoint = pipeline.checkpoint_store.load()
    assert checkpoint is not None
    assert checkpoint.pending_ids == ["a1", "h1", "a2", "h2", "a3"]
    assert not pipeline.is_processing


def test_clear_cache_and_reanalyze_reuse_gps_store(tmp_path):
    provider = FakeProvider(TRACKS)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    _queue(pipeline)
    pipeline.clear_cache()
    cache = pipeline.get_cache()
    assert cache.groups == [] and cache.processed_ids == set()
    assert not pipeline.route_store.path.exists()
    assert pipeline.get_progress().status == "idle"

    provider.calls.clear()
    pipeline.reanalyze_all(ORDER, _metadata(), _bounds())
    assert provider.calls == []
    assert _groups(pipeline.get_cache()) == EXPECTED_GROUPS


def test_points_are_restored_after_reload(tmp_path):
    _queue(RouteProcessingPipeline(_config(tmp_path, FakeProvider(TRACKS))))

    reloaded = RouteProcessingPipeline(_config(tmp_path, FakeProvider({})))
    reloaded.initialize()
    raw = reloaded.get_cache().signatures["a1"]
    assert not raw.has_points
    signature = reloaded.get_signature("a1")
    assert signature.has_points
    assert signature.point_count == len(signature.points)
    assert reloaded.get_signature("missing") is None


def test_group_laps_for_member(tmp_path):
    pipeline = RouteProcessingPipeline(_config(tmp_path, FakeProvider(TRACKS)))
    _queue(pipeline)
    group = pipeline.get_group_for_activity("a1")
    laps = pipeline.get_group_laps(group.id, "a1", activity_duration=900.0)
    assert len(laps) == 1
    assert laps[0].distance > 1500.0
    assert pipeline.get_group_laps("unknown", "a1", 900.0) == []


def test_stale_oversized_checkpoint_is_discarded(tmp_path):
    provider = FakeProvider(TRACKS)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider, checkpoint_max_pending=3))
    pipeline.checkpoint_store.save(
        ProcessingCheckpoint(
            pending_ids=["a1", "a2", "a3", "h1"],
            metadata=_metadata(["a1", "a2", "a3", "h1"]),
            timestamp="2025-01-01T00:00:00+00:00",
            prefilter_generation=0,
        )
    )
    pipeline.initialize()
    assert provider.calls == []
    assert pipeline.checkpoint_store.load() is None


def test_small_checkpoint_from_older_generation_is_resumed(tmp_path):
    provider = FakeProvider(TRACKS)
    pipeline = RouteProcessingPipeline(_config(tmp_path, provider))
    pipeline.checkpoint_store.save(
        ProcessingCheckpoint(
            pending_ids=["a1", "a2"],
            metadata=_metadata(["a1", "a2"]),
            timestamp="2025-01-01T00:00:00+00:00",
            prefilter_generation=0,
        )
    )
    pipeline.initialize()
    assert sorted(provider.calls) == ["a1", "a2"]
    assert _groups(pipeline.get_cache()) == {frozenset({"a1", "a2"})}


def test_enrichment_names_placeholder_groups(tmp_path):
    pipeline = RouteProcessingPipeline(
        _config(
            tmp_path,
            FakeProvider(TRACKS),
            enrichment_enabled=True,
            enrichment_in_background=False,
            geocoder=StubGeocoder("Riverside"),
        )
    )
    _queue(pipeline)
    names = {g.name for g in pipeline.get_cache().groups}
    assert names == {"Riverside"}
    assert all(not g.name_is_placeholder for g in pipeline.get_cache().groups)


def test_enrichment_failure_leaves_placeholder(tmp_path):
    pipeline = RouteProcessingPipeline(
        _config(
            tmp_path,
            FakeProvider(TRACKS),
            enrichment_enabled=True,
            geocoder=StubGeocoder(error=RuntimeError("geocoder down")),
        )
    )
    _queue(pipeline)
    pipeline.wait_for_enrichment(timeout=5.0)
    assert all(g.name_is_placeholder for g in pipeline.get_cache().groups)
    assert pipeline.get_progress().status == "complete"


def test_get_pipeline_is_a_singleton(tmp_path):
    config = _config(tmp_path, FakeProvider(TRACKS))
    first = get_pipeline(config)
    assert get_pipeline() is first
    reset_pipeline()
    assert get_pipeline(config) is not first
