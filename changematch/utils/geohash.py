"""Spatial key codec (geohash) and neighbor enumeration.

A spatial key is built by repeatedly halving the longitude and latitude
ranges, longitude first, and recording one bit per halving. Every five bits
become one base-32 symbol, so a key of length ``p`` describes a cell of
``5 * p`` bisections. Shorter keys are prefixes of longer ones and cover a
larger area.
"""

from __future__ import annotations

from math import isfinite

from changematch.models.exchange import Coordinate
from changematch.utils.errors import InvalidInputError
from changematch.utils.geo import haversine_km

BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_BASE32_INDEX = {char: index for index, char in enumerate(BASE32)}

BITS_PER_SYMBOL = 5

# Direction name -> (latitude cells, longitude cells).
DIRECTIONS: dict[str, tuple[int, int]] = {
    "n": (1, 0),
    "s": (-1, 0),
    "e": (0, 1),
    "w": (0, -1),
    "ne": (1, 1),
    "nw": (1, -1),
    "se": (-1, 1),
    "sw": (-1, -1),
}


def _validate_precision(precision: int) -> None:
    if not isinstance(precision, int) or isinstance(precision, bool) or precision <= 0:
        raise InvalidInputError(f"precision must be a positive integer, got {precision!r}")


def _validate_lat_lng(lat: float, lng: float) -> None:
    if not (isfinite(lat) and -90.0 <= lat <= 90.0):
        raise InvalidInputError(f"latitude out of range: {lat!r}")
    if not (isfinite(lng) and -180.0 <= lng <= 180.0):
        raise InvalidInputError(f"longitude out of range: {lng!r}")


def encode(lat: float, lng: float, precision: int = 5) -> str:
    """Encode a latitude/longitude pair into a spatial key.

    Args:
        lat: Latitude in degrees, -90..90.
        lng: Longitude in degrees, -180..180.
        precision: Number of base-32 symbols in the key.

    Returns:
        Spatial key of exactly ``precision`` symbols.

    Raises:
        InvalidInputError: For a non-positive precision or an out-of-range
            coordinate.
    """

    _validate_precision(precision)
    _validate_lat_lng(lat, lng)

    lat_lo, lat_hi = -90.0, 90.0
    lng_lo, lng_hi = -180.0, 180.0

    symbols: list[str] = []
    bits = 0
    bit_count = 0
    even = True  # longitude on even bits

    while len(symbols) < precision:
        if even:
            mid = (lng_lo + lng_hi) / 2
            if lng >= mid:
                bits = (bits << 1) | 1
                lng_lo = mid
            else:
                bits <<= 1
                lng_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2
            if lat >= mid:
                bits = (bits << 1) | 1
                lat_lo = mid
            else:
                bits <<= 1
                lat_hi = mid

        even = not even
        bit_count += 1

        if bit_count == BITS_PER_SYMBOL:
            symbols.append(BASE32[bits])
            bits = 0
            bit_count = 0

    return "".join(symbols)


def encode_coordinate(coord: Coordinate, precision: int = 5) -> str:
    """Encode a Coordinate. See ``encode``."""

    return encode(coord.latitude, coord.longitude, precision)


def decode_bounds(key: str) -> tuple[float, float, float, float]:
    """Return the cell of a spatial key as (min_lat, min_lng, max_lat, max_lng).

    Raises:
        InvalidInputError: For an empty key or a symbol outside the alphabet.
    """

    if not isinstance(key, str) or not key:
        raise InvalidInputError("spatial key must be a non-empty string")

    lat_lo, lat_hi = -90.0, 90.0
    lng_lo, lng_hi = -180.0, 180.0
    even = True

    for char in key.lower():
        value = _BASE32_INDEX.get(char)
        if value is None:
            raise InvalidInputError(f"invalid spatial key symbol {char!r} in {key!r}")

        for shift in range(BITS_PER_SYMBOL - 1, -1, -1):
            bit = (value >> shift) & 1
            if even:
                mid = (lng_lo + lng_hi) / 2
                if bit:
                    lng_lo = mid
                else:
                    lng_hi = mid
            else:
                mid = (lat_lo + lat_hi) / 2
                if bit:
                    lat_lo = mid
                else:
                    lat_hi = mid
            even = not even

    return lat_lo, lng_lo, lat_hi, lng_hi


def decode(key: str) -> Coordinate:
    """Decode a spatial key to the centroid of its cell.

    Lossy: the original point is somewhere inside the cell, not necessarily
    at the returned centroid.
    """

    lat_lo, lng_lo, lat_hi, lng_hi = decode_bounds(key)
    return Coordinate(
        latitude=(lat_lo + lat_hi) / 2,
        longitude=(lng_lo + lng_hi) / 2,
    )


def cell_size_degrees(precision: int) -> tuple[float, float]:
    """Return (height, width) in degrees of a cell at ``precision``."""

    _validate_precision(precision)
    total_bits = precision * BITS_PER_SYMBOL
    lng_bits = (total_bits + 1) // 2
    lat_bits = total_bits // 2
    return 180.0 / (2**lat_bits), 360.0 / (2**lng_bits)


def cell_half_diagonal_km(precision: int, latitude: float = 0.0) -> float:
    """Upper bound on the distance from a cell's centroid to any point in it.

    Cells shrink in width away from the equator, so the bound is taken from
    the widest edge a cell touching ``latitude`` can have. With the default
    latitude the result holds for every cell on Earth.
    """

    _validate_lat_lng(latitude, 0.0)
    height, width = cell_size_degrees(precision)

    edge_lat = min(abs(latitude), 90.0 - height)
    center_lat = edge_lat + height / 2
    return haversine_km(center_lat, 0.0, edge_lat, width / 2)


def search_precision(radius_km: float, latitude: float, max_precision: int) -> int:
    """Longest key length whose cells are at least ``radius_km`` on each side.

    A point's own cell plus its 8 neighbors then covers every point within
    ``radius_km``. Falls back to 1 when even the coarsest cells are smaller.
    """

    _validate_precision(max_precision)
    for precision in range(max_precision, 0, -1):
        height, width = cell_size_degrees(precision)
        height_km = haversine_km(0.0, 0.0, height, 0.0)
        width_km = haversine_km(latitude, 0.0, latitude, width)
        if min(height_km, width_km) >= radius_km:
            return precision
    return 1


def adjacent(key: str) -> dict[str, str]:
    """Return the key one cell away in each compass direction.

    The step is one full cell height/width at the key's precision, taken from
    the cell centroid. Longitude wraps across the antimeridian; latitude is
    clamped at the poles, so polar directions can return ``key`` itself.
    """

    lat_lo, lng_lo, lat_hi, lng_hi = decode_bounds(key)
    precision = len(key)
    height = lat_hi - lat_lo
    width = lng_hi - lng_lo
    center_lat = (lat_lo + lat_hi) / 2
    center_lng = (lng_lo + lng_hi) / 2

    result: dict[str, str] = {}
    for direction, (d_lat, d_lng) in DIRECTIONS.items():
        lat = min(90.0, max(-90.0, center_lat + d_lat * height))
        lng = ((center_lng + d_lng * width + 180.0) % 360.0) - 180.0
        result[direction] = encode(lat, lng, precision)
    return result


def neighbors(key: str) -> set[str]:
    """Return the keys of the (up to) 8 cells surrounding ``key``.

    Near the poles, or at precisions where several directions collapse onto
    the same cell, fewer than 8 distinct keys come back and the origin key
    may be among them.
    """

    return set(adjacent(key).values())


def covering_keys(key: str) -> set[str]:
    """Return ``key`` plus its neighbors: the buckets a radius search scans."""

    return {key.lower()} | neighbors(key)
