import re
from math import atan2, cos, floor, log2, pi, radians, sin, sqrt
from typing import List, Optional, Tuple

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
BITS_PER_CHAR = 5
GEOHASH_PRECISION = 10
MAXIMUM_BITS_PRECISION = 22 * BITS_PER_CHAR

EARTH_RADIUS_M = 6371000
EARTH_EQ_RADIUS = 6378137.0
EARTH_MERI_CIRCUMFERENCE = 40007860
METERS_PER_DEGREE_LATITUDE = 110574
E2 = 0.00669447819799
EPSILON = 1e-12


# Utilities

def haversine_m(lat1, lon1, lat2, lon2):
    R = EARTH_RADIUS_M
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat/2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon/2) ** 2
    c = 2 * atan2(sqrt(a), sqrt(1-a))
    return R * c


def encode_geohash(lat: float, lon: float, precision: int = GEOHASH_PRECISION) -> str:
    lat_range = [-90.0, 90.0]
    lon_range = [-180.0, 180.0]
    chars = []
    value = 0
    bits = 0
    even = True
    while len(chars) < precision:
        val, rng = (lon, lon_range) if even else (lat, lat_range)
        mid = (rng[0] + rng[1]) / 2
        if val > mid:
            value = (value << 1) + 1
            rng[0] = mid
        else:
            value = value << 1
            rng[1] = mid
        even = not even
        if bits < 4:
            bits += 1
        else:
            chars.append(BASE32[value])
            bits = 0
            value = 0
    return "".join(chars)


def _meters_to_longitude_degrees(distance: float, latitude: float) -> float:
    rad = radians(latitude)
    num = cos(rad) * EARTH_EQ_RADIUS * pi / 180
    denom = 1 / sqrt(1 - E2 * sin(rad) * sin(rad))
    delta_deg = num * denom
    if delta_deg < EPSILON:
        return 360.0 if distance > 0 else 0.0
    return min(360.0, distance / delta_deg)


def _wrap_longitude(longitude: float) -> float:
    if -180 <= longitude <= 180:
        return longitude
    adjusted = longitude + 180
    if adjusted > 0:
        return (adjusted % 360) - 180
    return 180 - (-adjusted % 360)


def _longitude_bits(resolution: float, latitude: float) -> float:
    degs = _meters_to_longitude_degrees(resolution, latitude)
    return max(1.0, log2(360 / degs)) if abs(degs) > 0.000001 else 1.0


def _latitude_bits(resolution: float) -> float:
    return min(log2(EARTH_MERI_CIRCUMFERENCE / 2 / resolution), MAXIMUM_BITS_PRECISION)


def _bounding_box_bits(lat: float, radius_m: float) -> int:
    lat_delta = radius_m / METERS_PER_DEGREE_LATITUDE
    north = min(90.0, lat + lat_delta)
    south = max(-90.0, lat - lat_delta)
    bits_lat = floor(_latitude_bits(radius_m)) * 2
    bits_long_north = floor(_longitude_bits(radius_m, north)) * 2 - 1
    bits_long_south = floor(_longitude_bits(radius_m, south)) * 2 - 1
    return min(bits_lat, bits_long_north, bits_long_south, MAXIMUM_BITS_PRECISION)


def _bounding_box_points(lat: float, lon: float, radius_m: float) -> List[Tuple[float, float]]:
    lat_degrees = radius_m / METERS_PER_DEGREE_LATITUDE
    north = min(90.0, lat + lat_degrees)
    south = max(-90.0, lat - lat_degrees)
    long_degs = max(
        _meters_to_longitude_degrees(radius_m, north),
        _meters_to_longitude_degrees(radius_m, south),
    )
    west = _wrap_longitude(lon - long_degs)
    east = _wrap_longitude(lon + long_degs)
    return [
        (lat, lon), (lat, west), (lat, east),
        (north, lon), (north, west), (north, east),
        (south, lon), (south, west), (south, east),
    ]


def _range_for(geohash: str, bits: int) -> Tuple[str, str]:
    precision = -(-bits // BITS_PER_CHAR)
    if len(geohash) < precision:
        return geohash, geohash + "~"
    ghash = geohash[:precision]
    base = ghash[:-1]
    last_value = BASE32.index(ghash[-1])
    significant_bits = bits - len(base) * BITS_PER_CHAR
    unused_bits = BITS_PER_CHAR - significant_bits
    start = (last_value >> unused_bits) << unused_bits
    end = start + (1 << unused_bits)
    if end > 31:
        return base + BASE32[start], base + "~"
    return base + BASE32[start], base + BASE32[end]


def query_bounds(lat: float, lon: float, radius_m: float) -> List[Tuple[str, str]]:
    """Geohash ranges ``[start, end)`` whose cells together cover the circle.

    Samples the centre and the eight corners/edges of the bounding box at a
    precision coarse enough that each cell is at least ``radius_m`` wide,
    so every point inside the circle shares a prefix with one sample.
    """
    # never finer than the stored hashes
    bits = max(1, min(_bounding_box_bits(lat, radius_m), GEOHASH_PRECISION * BITS_PER_CHAR))
    precision = -(-bits // BITS_PER_CHAR)
    bounds: List[Tuple[str, str]] = []
    for p_lat, p_lon in _bounding_box_points(lat, lon, radius_m):
        rng = _range_for(encode_geohash(p_lat, p_lon, precision), bits)
        if rng not in bounds:
            bounds.append(rng)
    return bounds


# Display distance ("1.2km")

_NUMBER = re.compile(r"[-+]?\d+(?:\.\d+)?")


def format_distance_km(meters: float) -> str:
    return f"{meters / 1000:.1f}km"


def parse_distance_km(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _NUMBER.search(text)
    return float(match.group()) if match else None
