import threading
import time

import pytest

from route_matcher.providers.rate_limiter import RateLimiter


def worker(limiter: RateLimiter, started_evt: threading.Event, release_evt: threading.Event):
    """Acquire a slot, signal start, wait until release, then free slot."""
    limiter.before_request()
    started_evt.set()
    release_evt.wait()
    limiter.after_response(None, 200)


def _start(limiter):
    started, release = threading.Event(), threading.Event()
    thread = threading.Thread(target=worker, args=(limiter, started, release))
    thread.start()
    return started, release, thread


def test_rate_limiter_resize_behavior():
    """Validate dynamic resize semantics (grow then shrink)."""
    limiter = RateLimiter(max_concurrent=2, jitter_range=(0.0, 0.0))

    workers = [_start(limiter) for _ in range(2)]
    for started, _, _ in workers:
        assert started.wait(0.3), "Initial worker failed to start in time"

    # Third worker should block (limit=2)
    c_started, c_release, c_thread = _start(limiter)
    assert not c_started.wait(0.07), "Third worker should have been blocked before resize"

    # Grow limit -> unblock waiting worker
    limiter.resize(3)
    assert c_started.wait(0.3), "Blocked worker did not start after resize increase"

    # Fourth worker should now block (A,B,C consume 3 slots)
    d_started, d_release, d_thread = _start(limiter)
    assert not d_started.wait(0.07), "Fourth worker should be blocked until a slot frees"

    # Release first worker -> fourth should start
    workers[0][1].set()
    workers[0][2].join(timeout=0.6)
    assert d_started.wait(0.3), "Fourth worker failed to start after slot freed"

    workers[1][1].set()
    c_release.set()
    d_release.set()
    for thread in (workers[1][2], c_thread, d_thread):
        thread.join(timeout=0.6)

    # Shrink limit to 1 and validate blocking behavior
    limiter.resize(1)
    e_started, e_release, e_thread = _start(limiter)
    assert e_started.wait(0.3), "First worker after shrink did not start"
    f_started, f_release, f_thread = _start(limiter)
    assert not f_started.wait(0.07), "Second worker should block with limit=1"

    e_release.set()
    e_thread.join(timeout=0.6)
    assert f_started.wait(0.3), "Second worker did not start after first released under shrunken limit"
    f_release.set()
    f_thread.join(timeout=0.6)
    assert limiter.snapshot()["in_flight"] == 0


def test_invalid_sizes_rejected():
    with pytest.raises(ValueError):
        RateLimiter(max_concurrent=0)
    with pytest.raises(ValueError):
        RateLimiter().resize(0)


def test_min_interval_spaces_requests():
    limiter = RateLimiter(max_concurrent=5, jitter_range=(0.0, 0.0), min_interval=0.1)
    start = time.monotonic()
    for _ in range(3):
        limiter.before_request()
        limiter.after_response(None, 200)
    assert time.monotonic() - start >= 0.18


def test_429_uses_retry_after():
    limiter = RateLimiter(jitter_range=(0.0, 0.0), throttle_seconds=30.0)
    limiter.before_request()
    limiter.after_response({"Retry-After": "5"}, 429)
    remaining = limiter.snapshot()["throttle_remaining"]
    assert 4.0 < remaining <= 5.0


def test_near_limit_headers_throttle():
    limiter = RateLimiter(jitter_range=(0.0, 0.0), throttle_seconds=2.0)
    limiter.before_request()
    limiter.after_response({"X-RateLimit-Usage": "98,500", "X-RateLimit-Limit": "100,1000"}, 200)
    assert limiter.snapshot()["throttle_remaining"] > 1.0

    relaxed = RateLimiter(jitter_range=(0.0, 0.0), throttle_seconds=2.0)
    relaxed.before_request()
    relaxed.after_response({"X-RateLimit-Usage": "10,500", "X-RateLimit-Limit": "100,1000"}, 200)
    assert relaxed.snapshot()["throttle_remaining"] == 0.0
