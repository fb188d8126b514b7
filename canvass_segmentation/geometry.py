"""
geometry.py

Geometry capability used by every spatial stage of the pipeline.

The segmentation stages only talk to GeometryCapability; ShapelyGeometry is
the default implementation:

    - shapely      hulls, tiles, spatial index, unions
    - pyproj       geodesic polygon area on the WGS84 ellipsoid
    - scikit-learn haversine BallTree for nearest-neighbour fallbacks

Coordinates are longitude/latitude degrees (EPSG:4326) throughout; points
passed around as separate lat / lon arrays.
"""

import math
from abc import ABC, abstractmethod
from typing import Iterator, List, Sequence, Tuple

import numpy as np
import shapely
from pyproj import Geod
from shapely.geometry import MultiPoint, Point, box
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union
from shapely.strtree import STRtree
from sklearn.neighbors import BallTree

from . import geohash
from .errors import GeometryComputationError
from .utils import EARTH_RADIUS_M


class GeometryCapability(ABC):
    """Operations the segmentation algorithm needs from a geometry engine."""

    @abstractmethod
    def centroid(self, lats: Sequence[float], lons: Sequence[float]) -> Tuple[float, float]:
        """Centroid of a point set as (lat, lon)."""

    @abstractmethod
    def concave_hull(self, lats: Sequence[float], lons: Sequence[float], ratio: float) -> BaseGeometry:
        """Polygon enclosing the points; raises on degenerate input."""

    @abstractmethod
    def area_m2(self, geometry: BaseGeometry) -> float:
        """Geodesic area in square meters."""

    @abstractmethod
    def intersects(self, a: BaseGeometry, b: BaseGeometry) -> bool:
        ...

    @abstractmethod
    def square(self, minx: float, miny: float, maxx: float, maxy: float) -> BaseGeometry:
        ...

    @abstractmethod
    def square_tiles(self, geometry: BaseGeometry, size_deg: float) -> Iterator[Tuple[int, int, BaseGeometry]]:
        """(row, col, square) for every lattice square intersecting geometry."""

    @abstractmethod
    def geohash_tiles(self, geometry: BaseGeometry, precision: int) -> Iterator[Tuple[str, BaseGeometry]]:
        """(hash, cell box) for every geohash cell intersecting geometry."""

    @abstractmethod
    def geohash_cell(self, code: str) -> BaseGeometry:
        ...

    @abstractmethod
    def geohash_children(self, code: str) -> List[str]:
        ...

    @abstractmethod
    def locate(self, lats, lons, polygons: Sequence[BaseGeometry]) -> List[List[int]]:
        """For each point, indices of the polygons that contain or touch it."""

    @abstractmethod
    def nearest(self, lats, lons, target_lats, target_lons) -> Tuple[np.ndarray, np.ndarray]:
        """Index of and distance (m) to the nearest target for each point."""

    @abstractmethod
    def touching_pairs(self, polygons: Sequence[BaseGeometry], tolerance: float) -> List[Tuple[int, int, float]]:
        """(i, j, shared border length) for i < j whose borders touch; 0.0 at a corner."""

    @abstractmethod
    def union(self, polygons: Sequence[BaseGeometry]) -> BaseGeometry:
        ...


class ShapelyGeometry(GeometryCapability):
    """GeometryCapability backed by shapely, pyproj and scikit-learn."""

    def __init__(self, ellipsoid: str = "WGS84"):
        self.geod = Geod(ellps=ellipsoid)

    # -------------------------------------------------------------
    # Points
    # -------------------------------------------------------------

    def centroid(self, lats, lons):
        lats = np.asarray(lats, dtype=float)
        lons = np.asarray(lons, dtype=float)
        if lats.size == 0:
            raise GeometryComputationError("Cannot compute centroid of an empty point set")

        # Coincident points (including a single point) map to themselves exactly
        if np.all(lats == lats[0]) and np.all(lons == lons[0]):
            return float(lats[0]), float(lons[0])

        # Spherical centroid: mean of unit vectors, projected back to the sphere
        phi = np.radians(lats)
        lam = np.radians(lons)
        x = np.mean(np.cos(phi) * np.cos(lam))
        y = np.mean(np.cos(phi) * np.sin(lam))
        z = np.mean(np.sin(phi))
        norm = math.sqrt(x * x + y * y + z * z)
        if norm < 1e-12:
            raise GeometryComputationError(
                "Centroid undefined for antipodal point set", point_count=int(lats.size)
            )
        lat = math.degrees(math.atan2(z, math.hypot(x, y)))
        lon = math.degrees(math.atan2(y, x))
        return lat, lon

    # -------------------------------------------------------------
    # Polygons
    # -------------------------------------------------------------

    def concave_hull(self, lats, lons, ratio):
        coords = sorted(set(zip((float(v) for v in lons), (float(v) for v in lats))))
        if len(coords) < 3:
            raise GeometryComputationError(
                "Concave hull needs at least three distinct points",
                distinct_points=len(coords),
            )

        hull = shapely.concave_hull(MultiPoint(coords), ratio=ratio)
        if hull.is_empty or hull.geom_type != "Polygon" or hull.area <= 0.0:
            raise GeometryComputationError(
                "Concave hull is degenerate (points collinear or coincident)",
                distinct_points=len(coords),
                hull_type=hull.geom_type,
            )
        return hull

    def area_m2(self, geometry):
        area, _perimeter = self.geod.geometry_area_perimeter(geometry)
        return abs(float(area))

    def intersects(self, a, b):
        return bool(a.intersects(b))

    def union(self, polygons):
        merged = unary_union(list(polygons))
        if not merged.is_valid:
            merged = merged.buffer(0)
        return merged

    # -------------------------------------------------------------
    # Tiling
    # -------------------------------------------------------------

    def square(self, minx, miny, maxx, maxy):
        return box(minx, miny, maxx, maxy)

    def square_tiles(self, geometry, size_deg):
        minx, miny, maxx, maxy = geometry.bounds
        col0, col1 = math.floor(minx / size_deg), math.floor(maxx / size_deg)
        row0, row1 = math.floor(miny / size_deg), math.floor(maxy / size_deg)

        shapely.prepare(geometry)
        for row in range(row0, row1 + 1):
            for col in range(col0, col1 + 1):
                square = box(col * size_deg, row * size_deg, (col + 1) * size_deg, (row + 1) * size_deg)
                if geometry.intersects(square):
                    yield row, col, square

    def geohash_tiles(self, geometry, precision):
        width, height = geohash.cell_size(precision)
        minx, miny, maxx, maxy = geometry.bounds
        col0, col1 = math.floor((minx + 180.0) / width), math.floor((maxx + 180.0) / width)
        row0, row1 = math.floor((miny + 90.0) / height), math.floor((maxy + 90.0) / height)

        shapely.prepare(geometry)
        for row in range(row0, row1 + 1):
            for col in range(col0, col1 + 1):
                center_lat = -90.0 + (row + 0.5) * height
                center_lon = -180.0 + (col + 0.5) * width
                code = geohash.encode(center_lat, center_lon, precision)
                cell = self.geohash_cell(code)
                if geometry.intersects(cell):
                    yield code, cell

    def geohash_cell(self, code):
        return box(*geohash.bounds(code))

    def geohash_children(self, code):
        return geohash.children(code)

    # -------------------------------------------------------------
    # Spatial queries
    # -------------------------------------------------------------

    def locate(self, lats, lons, polygons):
        points = np.array([Point(lon, lat) for lat, lon in zip(lats, lons)], dtype=object)
        hits: List[List[int]] = [[] for _ in range(len(points))]
        if len(points) == 0 or len(polygons) == 0:
            return hits

        tree = STRtree(list(polygons))
        point_idx, poly_idx = tree.query(points, predicate="intersects")
        for p, c in zip(point_idx.tolist(), poly_idx.tolist()):
            hits[p].append(c)
        for h in hits:
            h.sort()
        return hits

    def nearest(self, lats, lons, target_lats, target_lons):
        targets = np.radians(np.column_stack([target_lats, target_lons]))
        queries = np.radians(np.column_stack([lats, lons]))
        tree = BallTree(targets, metric="haversine")
        dist, idx = tree.query(queries, k=1)
        return idx[:, 0], dist[:, 0] * EARTH_RADIUS_M

    def touching_pairs(self, polygons, tolerance):
        polygons = list(polygons)
        tree = STRtree(polygons)
        pairs = []
        for i, poly in enumerate(polygons):
            for j in sorted(int(j) for j in tree.query(poly, predicate="dwithin", distance=tolerance)):
                if j <= i:
                    continue
                shared = poly.intersection(polygons[j]).length
                pairs.append((i, j, float(shared)))
        return pairs
