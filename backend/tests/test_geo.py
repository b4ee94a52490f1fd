from __future__ import annotations

import pytest

from traffic_router.geo import (
    bearing_deg,
    bucket_radius_for_distance,
    grid_key,
    haversine_m,
    heading_delta_deg,
    project_onto_segment,
    ring_offsets,
)


def test_haversine_one_degree_of_latitude() -> None:
    assert haversine_m(52.0, -1.0, 53.0, -1.0) == pytest.approx(111_195.0, rel=1e-3)
    assert haversine_m(52.0, -1.0, 52.0, -1.0) == 0.0


@pytest.mark.parametrize(
    ("lat2", "lon2", "expected"),
    [(53.0, -1.0, 0.0), (52.0, 0.0, 90.0), (51.0, -1.0, 180.0), (52.0, -2.0, 270.0)],
)
def test_bearing_compass_points(lat2: float, lon2: float, expected: float) -> None:
    assert bearing_deg(52.0, -1.0, lat2, lon2) == pytest.approx(expected, abs=1.0)


def test_heading_delta_wraps() -> None:
    assert heading_delta_deg(350.0, 10.0) == 20.0
    assert heading_delta_deg(90.0, 270.0) == 180.0


def test_projection_clamps_to_the_segment() -> None:
    distance, fraction = project_onto_segment(52.0001, -0.9975, start=(52.0, -1.0), end=(52.0, -0.995))
    assert fraction == pytest.approx(0.5, abs=1e-3)
    assert distance == pytest.approx(11.1, abs=0.2)

    _, before = project_onto_segment(52.0, -1.01, start=(52.0, -1.0), end=(52.0, -0.995))
    _, after = project_onto_segment(52.0, -0.98, start=(52.0, -1.0), end=(52.0, -0.995))
    assert (before, after) == (0.0, 1.0)


def test_grid_rings_cover_the_perimeter() -> None:
    assert ring_offsets(0) == ((0, 0),)
    assert len(ring_offsets(1)) == 8
    assert len(ring_offsets(2)) == 16
    assert grid_key(52.01, -1.01, 0.15) == (346, -7)
    assert bucket_radius_for_distance(20_000.0, 0.15) == 2
