"""
cells.py

Cell generators
---------------

Tile the parent boundary into candidate cells, the building blocks of
region growing. Two interchangeable strategies share one output contract
(ordered list of Cell):

    GridCellGenerator     axis-aligned squares sized from population density
    GeoHashCellGenerator  fixed-precision geohash boxes

Both can refine a dense cell into smaller children; the assigner uses this
to split cells holding more voters than a segment may.
"""

import math
from abc import ABC, abstractmethod
from typing import List, Optional

from .config import SegmentationConfig
from .errors import GeometryComputationError, PreconditionError
from .geometry import GeometryCapability, ShapelyGeometry
from .geohash import cell_size
from .models import Cell, ParentBoundary
from .utils import METERS_PER_DEGREE, log, meters_to_degrees


def _box_cell(cell_id: str, geometry) -> Cell:
    minx, miny, maxx, maxy = geometry.bounds
    return Cell(id=cell_id, geometry=geometry, lat=(miny + maxy) / 2.0, lon=(minx + maxx) / 2.0)


class CellGenerator(ABC):
    """
    Base class for cell strategies.
    """

    name = "base"

    def __init__(self, cfg: SegmentationConfig, geometry: Optional[GeometryCapability] = None):
        self.cfg = cfg
        self.geometry = geometry or ShapelyGeometry()

    # -------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------

    def generate(self, boundary: ParentBoundary, unit_count: int) -> List[Cell]:
        """Cells intersecting the boundary, in deterministic order."""
        if unit_count <= 0:
            raise PreconditionError("Cannot build cells: no atomic units", stage="cells", strategy=self.name)

        log(f"Building {self.name} cells for {unit_count} units over {boundary.area_m2:.0f} m2...")
        cells = self.order(self._tile(boundary, unit_count))
        if not cells:
            raise GeometryComputationError(
                "Tiling produced no cells intersecting the boundary",
                stage="cells",
                strategy=self.name,
            )
        log(f"Built {len(cells)} {self.name} cells")
        return cells

    def order(self, cells: List[Cell]) -> List[Cell]:
        return sorted(cells, key=lambda c: c.sort_key)

    def target_cell_size_m(self, boundary: ParentBoundary, unit_count: int) -> float:
        """Edge length (m) giving each cell slightly under one unit on average."""
        return math.sqrt(boundary.area_m2 / unit_count) * self.cfg.grid_size_factor

    @abstractmethod
    def refine(self, cell: Cell, boundary: ParentBoundary) -> List[Cell]:
        """Children of a cell that still intersect the boundary."""

    @abstractmethod
    def _tile(self, boundary: ParentBoundary, unit_count: int) -> List[Cell]:
        ...

    # -------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------

    def _check_tiling(self, boundary: ParentBoundary, width_deg: float, height_deg: float):
        if not (math.isfinite(width_deg) and math.isfinite(height_deg)) or width_deg <= 0 or height_deg <= 0:
            raise GeometryComputationError(
                "Invalid tiling parameters",
                stage="cells",
                strategy=self.name,
                width_deg=width_deg,
                height_deg=height_deg,
            )
        minx, miny, maxx, maxy = boundary.geometry.bounds
        estimate = (math.floor((maxx - minx) / width_deg) + 2) * (math.floor((maxy - miny) / height_deg) + 2)
        if estimate > self.cfg.max_cells:
            raise GeometryComputationError(
                "Tiling would exceed max_cells",
                stage="cells",
                strategy=self.name,
                estimated_cells=estimate,
                max_cells=self.cfg.max_cells,
            )


class GridCellGenerator(CellGenerator):
    """
    Adaptive square grid.

    Edge length is derived from boundary area per unit, then converted from
    meters to degrees at the boundary's central latitude. Squares sit on a
    global lattice anchored at (0, 0), so the same boundary always yields
    the same cells.
    """

    name = "grid"

    def _tile(self, boundary, unit_count):
        size_m = self.target_cell_size_m(boundary, unit_count)
        center_lat = boundary.geometry.centroid.y
        size_deg = meters_to_degrees(size_m, center_lat)
        log(f"Grid cell size: {size_m:.1f} m ({size_deg:.7f} deg at lat {center_lat:.4f})")

        self._check_tiling(boundary, size_deg, size_deg)
        return [
            _box_cell(f"g{row}_{col}", square)
            for row, col, square in self.geometry.square_tiles(boundary.geometry, size_deg)
        ]

    def refine(self, cell, boundary):
        minx, miny, maxx, maxy = cell.geometry.bounds
        midx = (minx + maxx) / 2.0
        midy = (miny + maxy) / 2.0
        quadrants = [
            (minx, midy, midx, maxy),  # NW
            (midx, midy, maxx, maxy),  # NE
            (minx, miny, midx, midy),  # SW
            (midx, miny, maxx, midy),  # SE
        ]
        children = []
        for q, (x0, y0, x1, y1) in enumerate(quadrants):
            square = self.geometry.square(x0, y0, x1, y1)
            if self.geometry.intersects(square, boundary.geometry):
                children.append(_box_cell(f"{cell.id}.{q}", square))
        return children


class GeoHashCellGenerator(CellGenerator):
    """
    Geohash boxes at a fixed precision.

    Order is lexicographic on the hash, which keeps nearby cells together.
    """

    name = "geohash"

    def order(self, cells):
        return sorted(cells, key=lambda c: c.id)

    def choose_precision(self, boundary: ParentBoundary, unit_count: int) -> int:
        """Precision whose cell area is closest (log scale) to the grid's target cell."""
        if self.cfg.geohash_precision is not None:
            return self.cfg.geohash_precision

        target_area = self.target_cell_size_m(boundary, unit_count) ** 2
        if not math.isfinite(target_area) or target_area <= 0:
            raise GeometryComputationError(
                "Invalid tiling parameters", stage="cells", strategy=self.name, target_area_m2=target_area
            )
        center_lat = boundary.geometry.centroid.y
        lon_scale = METERS_PER_DEGREE * math.cos(math.radians(center_lat))

        def misfit(precision):
            width, height = cell_size(precision)
            area = width * lon_scale * height * METERS_PER_DEGREE
            return abs(math.log(area / target_area))

        return min(range(1, 13), key=lambda p: (misfit(p), p))

    def _tile(self, boundary, unit_count):
        precision = self.choose_precision(boundary, unit_count)
        width, height = cell_size(precision)
        log(f"Geohash precision: {precision}")

        self._check_tiling(boundary, width, height)
        return [
            _box_cell(code, cell)
            for code, cell in self.geometry.geohash_tiles(boundary.geometry, precision)
        ]

    def refine(self, cell, boundary):
        if len(cell.id) >= 12:
            return [cell]
        children = []
        for code in self.geometry.geohash_children(cell.id):
            box = self.geometry.geohash_cell(code)
            if self.geometry.intersects(box, boundary.geometry):
                children.append(_box_cell(code, box))
        return children


def make_cell_generator(cfg: SegmentationConfig, geometry: Optional[GeometryCapability] = None) -> CellGenerator:
    """Pick the cell strategy named in the configuration."""
    if cfg.strategy == "geohash":
        return GeoHashCellGenerator(cfg, geometry)
    return GridCellGenerator(cfg, geometry)
