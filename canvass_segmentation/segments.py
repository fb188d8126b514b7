"""
segments.py

SegmentBuilder
--------------

Turns grown regions into the persisted output records:

    - Segment            one per surviving region, in region order
    - SegmentException   one per atomic unit that could not be placed

Segment naming:
    code  SEG-001, SEG-002, ... (prefix from config)
    name  "Segment SEG-001"
    color palette[index % len(palette)]
"""

import logging
from typing import List, Optional, Sequence, Tuple

from .config import SegmentationConfig
from .geometry import GeometryCapability, ShapelyGeometry
from .grower import Region
from .models import (
    Cell,
    ENTITY_ATOMIC_UNIT,
    Segment,
    SegmentException,
    UnplacedUnit,
)
from .utils import log


class SegmentBuilder:

    def __init__(self, cfg: SegmentationConfig, geometry: Optional[GeometryCapability] = None):
        self.cfg = cfg
        self.geometry = geometry or ShapelyGeometry()

    # -------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------

    def segment_code(self, index: int) -> str:
        """Zero-based index -> SEG-001 style code."""
        return f"{self.cfg.segment_code_prefix}-{index + 1:03d}"

    def color(self, index: int) -> str:
        return self.cfg.palette[index % len(self.cfg.palette)]

    def build(
        self,
        regions: Sequence[Region],
        unplaced: Sequence[UnplacedUnit],
        cells: Sequence[Cell],
        election_id: str,
        node_id: Optional[str] = None,
        version: int = 1,
        job_id: Optional[str] = None,
    ) -> Tuple[List[Segment], List[SegmentException]]:
        cells_by_id = {c.id: c for c in cells}

        segments = [
            self._segment(i, region, cells_by_id, election_id, node_id, version, job_id)
            for i, region in enumerate(regions)
        ]
        exceptions = [
            self._exception(u, election_id, node_id, version, job_id)
            for u in unplaced
        ]

        log(f"Built {len(segments)} segments and {len(exceptions)} exceptions (version {version})")
        return segments, exceptions

    # -------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------

    def _segment(self, index, region, cells_by_id, election_id, node_id, version, job_id) -> Segment:
        code = self.segment_code(index)
        units = sorted(region.units, key=lambda u: u.id)
        total = sum(u.voter_count for u in units)

        geom = self.geometry.union([cells_by_id[cid].geometry for cid in region.cell_ids])
        centroid = geom.centroid

        metadata = {
            "job_id": job_id,
            "segment_code": code,
            "version": version,
            "algorithm": self.cfg.algorithm,
            "node_id": node_id,
            "cell_count": len(region.cell_ids),
            "deterministic": True,
        }

        if total > self.cfg.max_segment_voters:
            metadata["requires_manual_review"] = True
            log(
                f"{code} holds {total} voters, above the maximum of {self.cfg.max_segment_voters}; "
                f"flagged for manual review",
                logging.WARNING,
            )

        if geom.geom_type == "MultiPolygon" and len(geom.geoms) > 1:
            log(f"{code} geometry is non-contiguous ({len(geom.geoms)} parts)", logging.WARNING)

        return Segment(
            election_id=election_id,
            node_id=node_id,
            code=code,
            name=f"Segment {code}",
            segment_type=self.cfg.segment_type,
            total_voters=total,
            total_families=len(units),
            status="draft",
            color=self.color(index),
            version=version,
            metadata=metadata,
            centroid_lat=float(centroid.y),
            centroid_lon=float(centroid.x),
            geometry=geom,
            unit_ids=[u.id for u in units],
            voter_ids=[vid for u in units for vid in u.voter_ids],
        )

    def _exception(self, unplaced: UnplacedUnit, election_id, node_id, version, job_id) -> SegmentException:
        unit = unplaced.unit
        return SegmentException(
            election_id=election_id,
            exception_type=unplaced.exception_type,
            entity_type=ENTITY_ATOMIC_UNIT,
            entity_id=unit.id,
            severity=unplaced.severity,
            status="open",
            metadata={
                "job_id": job_id,
                "version": version,
                "reason": unplaced.reason,
                "voter_count": unit.voter_count,
                "voter_ids": list(unit.voter_ids),
                "node_id": node_id,
                "location": {"lat": unit.lat, "lon": unit.lon},
            },
            voter_count=unit.voter_count,
            lat=unit.lat,
            lon=unit.lon,
        )
