"""
Geographic helpers: great-circle distance, geohash encoding and the set of
geohash cells that cover a search circle (used to pre-filter riders with an
indexed column instead of scanning every location row).
"""
import math
from typing import Set

EARTH_RADIUS_KM = 6371.0

# גודל תא geohash בדיוק 5 הוא בערך 4.9 ק"מ על 4.9 ק"מ
RIDER_GEOHASH_PRECISION = 5
_SAMPLE_SPACING_KM = 2.0

_BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Straight-line distance between two points in kilometers.

    Args:
        lat1: Latitude of first point
        lng1: Longitude of first point
        lat2: Latitude of second point
        lng2: Longitude of second point
    """
    lat1, lng1, lat2, lng2 = map(math.radians, [float(lat1), float(lng1), float(lat2), float(lng2)])
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def encode_geohash(lat: float, lng: float, precision: int = RIDER_GEOHASH_PRECISION) -> str:
    """Encode latitude/longitude to a geohash string of ``precision`` characters."""
    lat_range = (-90.0, 90.0)
    lng_range = (-180.0, 180.0)

    geohash = []
    bits = [16, 8, 4, 2, 1]
    bit = 0
    ch = 0
    is_lng = True

    while len(geohash) < precision:
        if is_lng:
            mid = (lng_range[0] + lng_range[1]) / 2
            if lng >= mid:
                ch |= bits[bit]
                lng_range = (mid, lng_range[1])
            else:
                lng_range = (lng_range[0], mid)
        else:
            mid = (lat_range[0] + lat_range[1]) / 2
            if lat >= mid:
                ch |= bits[bit]
                lat_range = (mid, lat_range[1])
            else:
                lat_range = (lat_range[0], mid)

        is_lng = not is_lng

        if bit < 4:
            bit += 1
        else:
            geohash.append(_BASE32[ch])
            bit = 0
            ch = 0

    return "".join(geohash)


def covering_geohashes(
    lat: float,
    lng: float,
    radius_km: float,
    precision: int = RIDER_GEOHASH_PRECISION,
) -> Set[str]:
    """
    Geohash cells that together cover the circle of ``radius_km`` around a point.

    Samples a grid whose spacing is smaller than one cell, so every cell that
    intersects the bounding square is hit at least once.
    """
    lat_offset = radius_km / 111.0
    lng_offset = radius_km / (111.0 * max(abs(math.cos(math.radians(lat))), 0.01))

    steps = max(1, math.ceil(radius_km / _SAMPLE_SPACING_KM))
    cells = set()
    for lat_step in range(-steps, steps + 1):
        for lng_step in range(-steps, steps + 1):
            sample_lat = lat + (lat_step * lat_offset / steps)
            sample_lng = lng + (lng_step * lng_offset / steps)
            cells.add(encode_geohash(sample_lat, sample_lng, precision))
    return cells
