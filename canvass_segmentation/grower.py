"""
grower.py

RegionGrower
------------

Turns populated cells into size-bounded regions (future segments).

Policy, every step deterministic:

    seed      every populated cell starts a region; regions are ranked by
              their seed cell's position in cell order
    fill      empty cells join the region that reaches them first in a
              breadth-first walk from all seeds, so regions stay contiguous
              across empty ground
    grow      regions, in rank order, absorb neighbours while below the
              minimum, choosing the merge that stays within the maximum and
              leaves the least headroom below it; ties go to the longer
              shared border, then the closer centroid, then the lower rank
    leftover  the smallest region still below the minimum merges into the
              neighbour with the longest shared border (then closer
              centroid, then lower rank) even past the maximum; a region
              sharing no border falls back to a region it meets at a
              corner, and one touching nothing is dissolved into exceptions

Only cells sharing a stretch of border are neighbours while filling and
growing, so every grown region is a single polygon.

Units larger than the maximum never enter a region; see split_oversized().
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Set, Tuple

from .assigner import CellAssignment
from .config import SegmentationConfig
from .models import (
    AtomicUnit,
    EXCEPTION_ISOLATED_REGION,
    EXCEPTION_OVERSIZED_UNIT,
    UnplacedUnit,
)
from .utils import haversine_m, log


@dataclass
class Region:
    id: str
    order: int
    cell_ids: List[str] = field(default_factory=list)
    units: List[AtomicUnit] = field(default_factory=list)
    voter_count: int = 0
    lat_sum: float = 0.0
    lon_sum: float = 0.0

    @property
    def lat(self) -> float:
        return self.lat_sum / len(self.cell_ids)

    @property
    def lon(self) -> float:
        return self.lon_sum / len(self.cell_ids)


@dataclass
class GrowthResult:
    regions: List[Region]
    unplaced: List[UnplacedUnit]


class RegionGrower:

    def __init__(self, cfg: SegmentationConfig):
        self.cfg = cfg
        self.regions: Dict[str, Region] = {}
        self.region_adj: Dict[str, Dict[str, float]] = {}
        self.region_corners: Dict[str, Set[str]] = {}

    # -------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------

    def split_oversized(self, units: Sequence[AtomicUnit]) -> Tuple[List[AtomicUnit], List[UnplacedUnit]]:
        """Separate units that can never fit in a segment."""
        limit = self.cfg.max_segment_voters
        placeable, oversized = [], []
        for unit in units:
            if unit.voter_count > limit:
                oversized.append(UnplacedUnit(
                    unit=unit,
                    exception_type=EXCEPTION_OVERSIZED_UNIT,
                    severity="high",
                    reason=f"Atomic unit has {unit.voter_count} voters, more than the segment maximum of {limit}",
                ))
            else:
                placeable.append(unit)

        if oversized:
            log(f"{len(oversized)} atomic units exceed {limit} voters and become exceptions", logging.WARNING)
        return placeable, oversized

    def grow(self, assignment: CellAssignment) -> GrowthResult:
        self._seed(assignment)
        log(f"Seeded {len(self.regions)} regions from populated cells")

        self._fill_empty(assignment)
        self._build_region_adjacency(assignment)

        self._grow()
        log(f"Growing finished with {len(self.regions)} regions")

        unplaced = self._resolve_leftovers()
        regions = sorted(self.regions.values(), key=lambda r: r.order)
        log(f"Region growing complete: {len(regions)} regions, {len(unplaced)} units unplaced")
        return GrowthResult(regions=regions, unplaced=unplaced)

    # -------------------------------------------------------------
    # Seed & fill
    # -------------------------------------------------------------

    def _seed(self, assignment: CellAssignment):
        self.regions = {}
        self.owner: Dict[str, str] = {}
        self.rank = {c.id: i for i, c in enumerate(assignment.cells)}

        for i, cell in enumerate(assignment.cells):
            members = assignment.cell_units.get(cell.id)
            if not members:
                continue
            self.regions[cell.id] = Region(
                id=cell.id,
                order=i,
                cell_ids=[cell.id],
                units=list(members),
                voter_count=sum(u.voter_count for u in members),
                lat_sum=cell.lat,
                lon_sum=cell.lon,
            )
            self.owner[cell.id] = cell.id

    def _fill_empty(self, assignment: CellAssignment):
        cells_by_id = {c.id: c for c in assignment.cells}
        queue = deque(c.id for c in assignment.cells if c.id in self.owner)

        filled = 0
        while queue:
            cell_id = queue.popleft()
            region = self.regions[self.owner[cell_id]]
            for neighbour in sorted(assignment.adjacency.get(cell_id, {}), key=self.rank.get):
                if neighbour in self.owner:
                    continue
                self.owner[neighbour] = region.id
                cell = cells_by_id[neighbour]
                region.cell_ids.append(neighbour)
                region.lat_sum += cell.lat
                region.lon_sum += cell.lon
                queue.append(neighbour)
                filled += 1

        stranded = len(assignment.cells) - len(self.owner)
        log(f"Filled {filled} empty cells; {stranded} cells unreachable from any populated cell")

    def _build_region_adjacency(self, assignment: CellAssignment):
        self.region_adj = {rid: {} for rid in self.regions}
        for cell_id, neighbours in assignment.adjacency.items():
            a = self.owner.get(cell_id)
            if a is None:
                continue
            for neighbour, shared in neighbours.items():
                b = self.owner.get(neighbour)
                if b is None or b == a:
                    continue
                self.region_adj[a][b] = self.region_adj[a].get(b, 0.0) + shared

        self.region_corners = {rid: set() for rid in self.regions}
        for cell_id, touching in assignment.corners.items():
            a = self.owner.get(cell_id)
            if a is None:
                continue
            for neighbour in touching:
                b = self.owner.get(neighbour)
                if b is not None and b != a:
                    self.region_corners[a].add(b)

    # -------------------------------------------------------------
    # Grow & merge
    # -------------------------------------------------------------

    def _distance(self, a: Region, b: Region) -> float:
        return float(haversine_m(a.lat, a.lon, b.lat, b.lon))

    def _merge(self, survivor_id: str, absorbed_id: str):
        survivor = self.regions[survivor_id]
        absorbed = self.regions.pop(absorbed_id)

        survivor.cell_ids.extend(absorbed.cell_ids)
        survivor.units.extend(absorbed.units)
        survivor.voter_count += absorbed.voter_count
        survivor.lat_sum += absorbed.lat_sum
        survivor.lon_sum += absorbed.lon_sum

        absorbed_adj = self.region_adj.pop(absorbed_id)
        self.region_adj[survivor_id].pop(absorbed_id, None)
        for other, shared in absorbed_adj.items():
            if other == survivor_id:
                continue
            self.region_adj[other].pop(absorbed_id, None)
            self.region_adj[survivor_id][other] = self.region_adj[survivor_id].get(other, 0.0) + shared
            self.region_adj[other][survivor_id] = self.region_adj[other].get(survivor_id, 0.0) + shared

        absorbed_corners = self.region_corners.pop(absorbed_id)
        self.region_corners[survivor_id].discard(absorbed_id)
        for other in absorbed_corners:
            if other == survivor_id:
                continue
            self.region_corners[other].discard(absorbed_id)
            self.region_corners[other].add(survivor_id)
            self.region_corners[survivor_id].add(other)

    def _grow(self):
        lo, hi = self.cfg.min_segment_voters, self.cfg.max_segment_voters

        for region_id in [r.id for r in sorted(self.regions.values(), key=lambda r: r.order)]:
            region = self.regions.get(region_id)
            if region is None:
                continue

            while region.voter_count < lo:
                neighbours = self.region_adj[region_id]
                candidates = [
                    n for n in neighbours
                    if region.voter_count + self.regions[n].voter_count <= hi
                ]
                if not candidates:
                    break
                best = min(candidates, key=lambda n: (
                    hi - (region.voter_count + self.regions[n].voter_count),
                    -neighbours[n],
                    self._distance(region, self.regions[n]),
                    self.regions[n].order,
                ))
                self._merge(region_id, best)

    def _resolve_leftovers(self) -> List[UnplacedUnit]:
        lo = self.cfg.min_segment_voters
        unplaced: List[UnplacedUnit] = []
        merged = 0

        while True:
            undersized = [r for r in self.regions.values() if r.voter_count < lo]
            if not undersized:
                break
            small = min(undersized, key=lambda r: (r.voter_count, r.order))
            neighbours = self.region_adj[small.id]
            touching = self.region_corners[small.id]

            if not neighbours and touching:
                target = min(touching, key=lambda n: (
                    self._distance(small, self.regions[n]),
                    self.regions[n].order,
                ))
                log(f"Region {small.id} shares no border; merging it into {target} at a corner", logging.WARNING)
                self._merge(target, small.id)
                merged += 1
                continue

            if not neighbours:
                self.regions.pop(small.id)
                self.region_adj.pop(small.id)
                self.region_corners.pop(small.id)
                for unit in sorted(small.units, key=lambda u: u.id):
                    unplaced.append(UnplacedUnit(
                        unit=unit,
                        exception_type=EXCEPTION_ISOLATED_REGION,
                        severity="medium",
                        reason=(
                            f"Region of {small.voter_count} voters is below the minimum of {lo} "
                            f"and has no neighbouring region to merge into"
                        ),
                    ))
                log(f"Region {small.id} ({small.voter_count} voters) is isolated; "
                    f"{len(small.units)} units become exceptions", logging.WARNING)
                continue

            target = min(neighbours, key=lambda n: (
                -neighbours[n],
                self._distance(small, self.regions[n]),
                self.regions[n].order,
            ))
            self._merge(target, small.id)
            merged += 1

        if merged:
            log(f"Merged {merged} undersized regions into neighbours")
        return unplaced
