"""
geohash.py

Geohash cells for the hash-based cell strategy.

A geohash of precision p is a base32 string of 5*p interleaved bits
(longitude first). Cells of one precision form a regular lon/lat lattice,
so neighbouring hashes share exact borders and sorting hashes keeps nearby
cells close together.
"""

import math
from typing import Tuple


BASE32 = "0123456789bcdefghjkmnpqrstuvwxyz"
_DECODE_MAP = {c: i for i, c in enumerate(BASE32)}


def encode(lat: float, lon: float, precision: int) -> str:
    """Encode a point to a geohash string of the given precision."""
    if not 1 <= precision <= 12:
        raise ValueError("precision must be within [1, 12]")

    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    chars = []
    ch = 0
    bit = 0
    even = True

    while len(chars) < precision:
        if even:
            mid = (lon_lo + lon_hi) / 2.0
            if lon >= mid:
                ch = (ch << 1) | 1
                lon_lo = mid
            else:
                ch = ch << 1
                lon_hi = mid
        else:
            mid = (lat_lo + lat_hi) / 2.0
            if lat >= mid:
                ch = (ch << 1) | 1
                lat_lo = mid
            else:
                ch = ch << 1
                lat_hi = mid
        even = not even

        bit += 1
        if bit == 5:
            chars.append(BASE32[ch])
            ch = 0
            bit = 0

    return "".join(chars)


def bounds(geohash: str) -> Tuple[float, float, float, float]:
    """
    Bounding box of a geohash cell.

    Returns (min_lon, min_lat, max_lon, max_lat), the order shapely's box()
    expects.
    """
    lat_lo, lat_hi = -90.0, 90.0
    lon_lo, lon_hi = -180.0, 180.0
    even = True

    for c in geohash:
        try:
            value = _DECODE_MAP[c]
        except KeyError:
            raise ValueError(f"Invalid geohash character {c!r} in {geohash!r}")
        for shift in range(4, -1, -1):
            bit = (value >> shift) & 1
            if even:
                mid = (lon_lo + lon_hi) / 2.0
                if bit:
                    lon_lo = mid
                else:
                    lon_hi = mid
            else:
                mid = (lat_lo + lat_hi) / 2.0
                if bit:
                    lat_lo = mid
                else:
                    lat_hi = mid
            even = not even

    return lon_lo, lat_lo, lon_hi, lat_hi


def cell_size(precision: int) -> Tuple[float, float]:
    """(width in degrees of longitude, height in degrees of latitude)."""
    total_bits = 5 * precision
    lon_bits = math.ceil(total_bits / 2)
    lat_bits = total_bits // 2
    return 360.0 / (2 ** lon_bits), 180.0 / (2 ** lat_bits)


def children(geohash: str):
    """The 32 hashes one level finer."""
    return [geohash + c for c in BASE32]
