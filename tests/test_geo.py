"""Tests for the geographic helpers."""

from __future__ import annotations

import math

import numpy as np
import pytest

from route_matcher.geo import (
    filter_valid_points,
    haversine,
    haversine_matrix,
    meters_to_degrees,
    nearest_distances,
    plain_distance,
    region_hash,
    route_distance,
)

from conftest import ORIGIN, make_track, offset


def test_haversine_one_degree_of_latitude():
    assert haversine((0.0, 0.0), (1.0, 0.0)) == pytest.approx(111_195.0, rel=1e-3)


def test_haversine_matrix_matches_scalar():
    a = [ORIGIN, offset(ORIGIN, 100.0, 0.0)]
    b = [offset(ORIGIN, 0.0, 250.0), offset(ORIGIN, 50.0, 50.0), ORIGIN]
    matrix = haversine_matrix(a, b)
    assert matrix.shape == (2, 3)
    for i, pa in enumerate(a):
        for j, pb in enumerate(b):
            assert matrix[i, j] == pytest.approx(haversine(pa, pb), abs=1e-6)


def test_filter_valid_points_drops_bad_coordinates():
    raw = [
        (51.5, -0.1),
        (float("nan"), 0.0),
        (95.0, 0.0),
        (10.0, 200.0),
        None,
        ("x", 1.0),
        (51.6, -0.2),
    ]
    assert filter_valid_points(raw) == [(51.5, -0.1), (51.6, -0.2)]


def test_route_distance_of_straight_line():
    track = make_track([(0.0, 0.0), (1000.0, 0.0)])
    assert route_distance(track) == pytest.approx(1000.0, rel=5e-3)


def test_route_distance_skips_gps_dropout_jump():
    track = make_track([(0.0, 0.0), (1000.0, 0.0)])
    spiked = track[:50] + [offset(ORIGIN, 0.0, 50_000.0)] + track[50:]
    assert plain_distance(spiked) > 90_000.0
    assert route_distance(spiked) == pytest.approx(route_distance(track), rel=0.02)


def test_nearest_distances_handles_empty_targets():
    result = nearest_distances([ORIGIN], [])
    assert np.isinf(result[0])
    assert nearest_distances([], [ORIGIN]).size == 0


def test_region_hash_groups_nearby_points():
    assert region_hash((51.5001, -0.1201)) == region_hash((51.5002, -0.1202))
    assert region_hash((51.5001, -0.1201)) != region_hash((51.51, -0.1201))


def test_meters_to_degrees_widens_with_latitude():
    assert meters_to_degrees(1000.0, 0.0) == pytest.approx(1000.0 / 111_320.0)
    assert meters_to_degrees(1000.0, 60.0) == pytest.approx(
        1000.0 / 111_320.0 / math.cos(math.radians(60.0))
    )
