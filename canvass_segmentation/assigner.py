"""
assigner.py

CellAssigner
------------

Maps every atomic unit onto exactly one cell and prepares the cell graph
for region growing:

    1. Containment: a unit goes to the first cell (in cell order) that
       contains or touches its centroid.
    2. Fallback: a centroid that misses every cell through rounding goes to
       the nearest cell centroid, if within two cell diagonals. Anything
       further away is an invariant violation and fails the run.
    3. Refinement: cells holding more voters than a segment may are split
       into child cells while their units occupy more than one location.
    4. Adjacency: cells sharing a stretch of border are neighbours, weighted
       by its length. Cells meeting only at a corner are kept apart in
       `corners`; region growing uses them only as a last resort.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .cells import CellGenerator
from .config import SegmentationConfig
from .errors import GeometryComputationError
from .geometry import GeometryCapability, ShapelyGeometry
from .models import AtomicUnit, Cell, ParentBoundary
from .utils import haversine_m, log


@dataclass
class CellAssignment:
    cells: List[Cell]
    cell_units: Dict[str, List[AtomicUnit]]
    adjacency: Dict[str, Dict[str, float]] = field(default_factory=dict)
    corners: Dict[str, Set[str]] = field(default_factory=dict)

    def voter_count(self, cell_id: str) -> int:
        return sum(u.voter_count for u in self.cell_units.get(cell_id, []))

    @property
    def unit_cell(self) -> Dict[str, str]:
        return {u.id: cell_id for cell_id, units in self.cell_units.items() for u in units}


def _diagonal_m(cell: Cell) -> float:
    minx, miny, maxx, maxy = cell.geometry.bounds
    return float(haversine_m(miny, minx, maxy, maxx))


class CellAssigner:

    def __init__(self, cfg: SegmentationConfig, generator: CellGenerator,
                 geometry: Optional[GeometryCapability] = None):
        self.cfg = cfg
        self.generator = generator
        self.geometry = geometry or ShapelyGeometry()

    # -------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------

    def assign(self, units: Sequence[AtomicUnit], cells: Sequence[Cell],
               boundary: ParentBoundary) -> CellAssignment:
        log(f"Assigning {len(units)} atomic units to {len(cells)} cells...")

        cells = list(cells)
        cell_units = self._map_units(units, cells)
        cells, cell_units = self._refine_dense(cells, cell_units, boundary)
        adjacency, corners = self.build_adjacency(cells)

        assigned = sum(len(v) for v in cell_units.values())
        if assigned != len(units):
            raise GeometryComputationError(
                "Unit to cell assignment lost atomic units",
                stage="assign",
                unit_count=len(units),
                assigned=assigned,
            )

        log(f"Units assigned: {len(cell_units)} populated cells out of {len(cells)}")
        return CellAssignment(cells=cells, cell_units=cell_units, adjacency=adjacency, corners=corners)

    def build_adjacency(self, cells: Sequence[Cell]) -> Tuple[Dict[str, Dict[str, float]], Dict[str, Set[str]]]:
        """Edge neighbours with shared border length, and corner-only contacts."""
        tolerance = self.cfg.adjacency_tolerance_deg
        adjacency: Dict[str, Dict[str, float]] = {c.id: {} for c in cells}
        corners: Dict[str, Set[str]] = {c.id: set() for c in cells}
        for i, j, shared in self.geometry.touching_pairs([c.geometry for c in cells], tolerance):
            a, b = cells[i].id, cells[j].id
            if shared > tolerance:
                adjacency[a][b] = shared
                adjacency[b][a] = shared
            else:
                corners[a].add(b)
                corners[b].add(a)
        return adjacency, corners

    # -------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------

    def _map_units(self, units: Sequence[AtomicUnit], cells: Sequence[Cell]) -> Dict[str, List[AtomicUnit]]:
        if units and not cells:
            raise GeometryComputationError("No cells to assign units to", stage="assign", unit_count=len(units))

        lats = [u.lat for u in units]
        lons = [u.lon for u in units]
        hits = self.geometry.locate(lats, lons, [c.geometry for c in cells])

        missing = [i for i, h in enumerate(hits) if not h]
        if missing:
            idx, dist = self.geometry.nearest(
                [lats[i] for i in missing],
                [lons[i] for i in missing],
                [c.lat for c in cells],
                [c.lon for c in cells],
            )
            for k, i in enumerate(missing):
                cell = cells[int(idx[k])]
                if dist[k] > 2.0 * _diagonal_m(cell):
                    raise GeometryComputationError(
                        "Atomic unit centroid lies outside every cell",
                        stage="assign",
                        unit_id=units[i].id,
                        nearest_cell=cell.id,
                        distance_m=round(float(dist[k]), 2),
                    )
                hits[i] = [int(idx[k])]
            log(f"{len(missing)} units snapped to their nearest cell", logging.DEBUG)

        mapping: Dict[str, List[AtomicUnit]] = {}
        for unit, h in zip(units, hits):
            mapping.setdefault(cells[h[0]].id, []).append(unit)
        for members in mapping.values():
            members.sort(key=lambda u: u.id)
        return mapping

    def _is_dense(self, members: List[AtomicUnit]) -> bool:
        if sum(u.voter_count for u in members) <= self.cfg.max_segment_voters:
            return False
        return len({(u.lat, u.lon) for u in members}) > 1

    def _refine_dense(self, cells, cell_units, boundary):
        for depth in range(self.cfg.max_refine_depth):
            dense = [c for c in cells if self._is_dense(cell_units.get(c.id, []))]
            if not dense:
                break

            replaced = {}
            for cell in dense:
                children = self.generator.refine(cell, boundary)
                if not children or [c.id for c in children] == [cell.id]:
                    continue
                members = cell_units.pop(cell.id)
                cell_units.update(self._map_units(members, children))
                replaced[cell.id] = children

            if not replaced:
                break
            log(f"Refined {len(replaced)} dense cells (level {depth + 1})")
            refined = []
            for cell in cells:
                refined.extend(replaced.get(cell.id, [cell]))
            cells = self.generator.order(refined)

        for cell in cells:
            voters = sum(u.voter_count for u in cell_units.get(cell.id, []))
            if voters > self.cfg.max_segment_voters:
                log(
                    f"Cell {cell.id} holds {voters} voters and cannot be split further; "
                    f"its segment will exceed {self.cfg.max_segment_voters} and needs manual review",
                    logging.WARNING,
                )
        return cells, cell_units
