from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def grid_key(lat: float, lon: float, bucket_deg: float = 0.15) -> tuple[int, int]:
    return (int(math.floor(lat / bucket_deg)), int(math.floor(lon / bucket_deg)))


def ring_offsets(radius: int) -> tuple[tuple[int, int], ...]:
    if radius <= 0:
        return ((0, 0),)
    offsets: list[tuple[int, int]] = []
    for dx in range(-radius, radius + 1):
        offsets.append((dx, -radius))
        offsets.append((dx, radius))
    for dy in range(-radius + 1, radius):
        offsets.append((-radius, dy))
        offsets.append((radius, dy))
    return tuple(offsets)


def bucket_radius_for_distance(distance_m: float, bucket_deg: float) -> int:
    # One degree of latitude is ~111km; longitude buckets are never wider than that.
    bucket_m = max(1.0, bucket_deg * 111_000.0)
    return max(0, int(math.ceil(max(0.0, distance_m) / bucket_m)))


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Compass bearing (0 = north, clockwise) from the first point to the second."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)
    y = math.sin(dlambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlambda)
    if abs(x) <= 1e-15 and abs(y) <= 1e-15:
        return 0.0
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def heading_delta_deg(a: float, b: float) -> float:
    diff = abs(float(a) - float(b)) % 360.0
    return min(diff, 360.0 - diff)


def _local_xy_m(lat: float, lon: float, *, ref_lat: float, ref_lon: float) -> tuple[float, float]:
    # Equirectangular projection; good to well under a metre over segment-scale distances.
    x = math.radians(lon - ref_lon) * math.cos(math.radians(ref_lat)) * EARTH_RADIUS_M
    y = math.radians(lat - ref_lat) * EARTH_RADIUS_M
    return x, y


def project_onto_segment(
    lat: float,
    lon: float,
    *,
    start: tuple[float, float],
    end: tuple[float, float],
) -> tuple[float, float]:
    """Return (perpendicular distance in metres, fraction along the segment in [0, 1])."""
    ref_lat, ref_lon = start
    px, py = _local_xy_m(lat, lon, ref_lat=ref_lat, ref_lon=ref_lon)
    ex, ey = _local_xy_m(end[0], end[1], ref_lat=ref_lat, ref_lon=ref_lon)
    seg_len_sq = (ex * ex) + (ey * ey)
    if seg_len_sq <= 1e-9:
        return math.hypot(px, py), 0.0
    t = max(0.0, min(1.0, ((px * ex) + (py * ey)) / seg_len_sq))
    dx = px - (t * ex)
    dy = py - (t * ey)
    return math.hypot(dx, dy), t
