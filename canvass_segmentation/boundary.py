"""
boundary.py

ParentBoundaryComputer
----------------------

Computes the region a run segments: a concave hull over the atomic unit
centroids, close to convex (ratio 0.98) but free to follow indentations in
where people actually live. Area is geodesic, in square meters.
"""

from typing import Optional, Sequence

from .config import SegmentationConfig
from .errors import GeometryComputationError, PreconditionError
from .geometry import GeometryCapability, ShapelyGeometry
from .models import AtomicUnit, ParentBoundary
from .utils import log


class ParentBoundaryComputer:

    def __init__(self, cfg: SegmentationConfig, geometry: Optional[GeometryCapability] = None):
        self.cfg = cfg
        self.geometry = geometry or ShapelyGeometry()

    def compute(self, units: Sequence[AtomicUnit]) -> ParentBoundary:
        if not units:
            raise PreconditionError("Cannot compute parent boundary: no atomic units", stage="boundary")

        log(f"Computing parent boundary over {len(units)} unit centroids...")

        try:
            hull = self.geometry.concave_hull(
                [u.lat for u in units],
                [u.lon for u in units],
                self.cfg.concavity_ratio,
            )
        except GeometryComputationError as exc:
            exc.context.setdefault("stage", "boundary")
            exc.context.setdefault("unit_count", len(units))
            raise
        area = self.geometry.area_m2(hull)

        log(f"Parent boundary computed: {area / 1_000_000:.3f} km2")
        return ParentBoundary(geometry=hull, area_m2=area)
