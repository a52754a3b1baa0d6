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


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Forward azimuth from point 1 to point 2 in degrees [0, 360)."""
    rlat1, rlon1 = math.radians(lat1), math.radians(lon1)
    rlat2, rlon2 = math.radians(lat2), math.radians(lon2)
    d_lon = rlon2 - rlon1
    y = math.sin(d_lon) * math.cos(rlat2)
    x = math.cos(rlat1) * math.sin(rlat2) - math.sin(rlat1) * math.cos(rlat2) * math.cos(d_lon)
    return (math.degrees(math.atan2(y, x)) + 360.0) % 360.0


def heading_delta_deg(a: float, b: float) -> float:
    """Smallest angle between two headings, so 359 -> 1 is 2 degrees."""
    diff = abs(float(a) - float(b)) % 360.0
    return min(diff, 360.0 - diff)


def planar_offset(lat: float, lon: float, *, bearing: float, radius_deg: float) -> tuple[float, float]:
    """Offset a point by ``radius_deg`` along ``bearing`` treating degrees as a flat plane.

    Good enough for visualisation-scale distances; no latitude correction is applied.
    """
    theta = math.radians(bearing)
    out_lat = lat + radius_deg * math.cos(theta)
    out_lon = lon + radius_deg * math.sin(theta)
    out_lat = max(-90.0, min(90.0, out_lat))
    out_lon = ((out_lon + 180.0) % 360.0) - 180.0
    return out_lat, out_lon


def evenly_spaced_bearings(count: int) -> list[float]:
    n = max(1, int(count))
    return [(360.0 / n) * idx for idx in range(n)]
