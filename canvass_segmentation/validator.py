"""
validator.py

SegmentValidator
----------------

Last gate before anything is written. A run that fails here rolls back.

Hard checks (raise ValidationError):
    1. no empty segments
    2. every atomic unit ends up in exactly one segment or exception
    3. voter totals add up: segments + exceptions == units
    4. no voter appears twice
    5. segment geometry is non-empty and valid
    6. segment geometries do not overlap (interior area)

Soft checks (warnings only):
    - segments outside [min, max] voters
"""

import logging
from collections import Counter
from typing import Optional, Sequence

from shapely.strtree import STRtree

from .config import SegmentationConfig
from .errors import ValidationError
from .models import AtomicUnit, ENTITY_ATOMIC_UNIT, Segment, SegmentException
from .utils import log


# Square degrees; anything smaller is a shared edge, not an overlap
OVERLAP_AREA_TOLERANCE = 1e-12


class SegmentValidator:

    def __init__(self, cfg: SegmentationConfig):
        self.cfg = cfg

    def validate(self, units: Sequence[AtomicUnit], segments: Sequence[Segment],
                 exceptions: Sequence[SegmentException], scope: Optional[dict] = None):
        scope = scope or {}
        log(f"Validating {len(segments)} segments and {len(exceptions)} exceptions...")

        self._check_non_empty(segments, scope)
        self._check_partition(units, segments, exceptions, scope)
        self._check_voters(units, segments, exceptions, scope)
        self._check_geometry(segments, scope)
        self._check_overlaps(segments, scope)
        self._report_sizes(segments)

        log("All segment validations passed")

    # -------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------

    def _check_non_empty(self, segments, scope):
        empty = [s.code for s in segments if s.total_voters <= 0 or not s.unit_ids]
        if empty:
            raise ValidationError("Empty segments produced", segments=empty[:10], **scope)

    def _check_partition(self, units, segments, exceptions, scope):
        placed = Counter(uid for s in segments for uid in s.unit_ids)
        placed.update(e.entity_id for e in exceptions if e.entity_type == ENTITY_ATOMIC_UNIT)

        duplicated = sorted(uid for uid, n in placed.items() if n > 1)
        if duplicated:
            raise ValidationError(
                "Atomic units placed more than once", count=len(duplicated), sample=duplicated[:5], **scope
            )

        expected = {u.id for u in units}
        missing = sorted(expected - set(placed))
        unknown = sorted(set(placed) - expected)
        if missing or unknown:
            raise ValidationError(
                "Atomic units not accounted for",
                missing=len(missing),
                unknown=len(unknown),
                sample=(missing or unknown)[:5],
                **scope,
            )

    def _check_voters(self, units, segments, exceptions, scope):
        expected = sum(u.voter_count for u in units)
        segmented = sum(s.total_voters for s in segments)
        excepted = sum(e.voter_count for e in exceptions if e.entity_type == ENTITY_ATOMIC_UNIT)
        if segmented + excepted != expected:
            raise ValidationError(
                "Voter count mismatch",
                expected=expected,
                segmented=segmented,
                excepted=excepted,
                **scope,
            )

        seen = Counter(vid for s in segments for vid in s.voter_ids)
        for e in exceptions:
            seen.update(e.metadata.get("voter_ids", []))
        duplicates = [vid for vid, n in seen.items() if n > 1]
        if duplicates:
            raise ValidationError(
                "Voters assigned more than once", count=len(duplicates), sample=sorted(duplicates)[:5], **scope
            )

        for s in segments:
            if len(s.voter_ids) != s.total_voters:
                raise ValidationError(
                    "Segment voter list does not match its total",
                    segment=s.code,
                    total_voters=s.total_voters,
                    listed=len(s.voter_ids),
                    **scope,
                )

    def _check_geometry(self, segments, scope):
        for s in segments:
            if s.geometry is None or s.geometry.is_empty:
                raise ValidationError("Segment has empty geometry", segment=s.code, **scope)
            if not s.geometry.is_valid:
                raise ValidationError("Segment has invalid geometry", segment=s.code, **scope)
            if s.geometry.geom_type not in ("Polygon", "MultiPolygon"):
                raise ValidationError(
                    "Segment geometry is not polygonal", segment=s.code, geom_type=s.geometry.geom_type, **scope
                )

    def _check_overlaps(self, segments, scope):
        if len(segments) < 2:
            return
        geoms = [s.geometry for s in segments]
        tree = STRtree(geoms)
        left, right = tree.query(geoms, predicate="intersects")
        for i, j in zip(left.tolist(), right.tolist()):
            if j <= i:
                continue
            overlap = geoms[i].intersection(geoms[j]).area
            if overlap > OVERLAP_AREA_TOLERANCE:
                raise ValidationError(
                    "Segment geometries overlap",
                    first=segments[i].code,
                    second=segments[j].code,
                    overlap_deg2=overlap,
                    **scope,
                )

    def _report_sizes(self, segments):
        lo, hi = self.cfg.min_segment_voters, self.cfg.max_segment_voters
        oversized = [s for s in segments if s.total_voters > hi]
        undersized = [s for s in segments if s.total_voters < lo]
        if oversized:
            log(
                f"{len(oversized)} segments above {hi} voters (largest {max(s.total_voters for s in oversized)}); "
                f"flagged for manual review",
                logging.WARNING,
            )
        if undersized:
            log(
                f"{len(undersized)} segments below {lo} voters (smallest {min(s.total_voters for s in undersized)})",
                logging.WARNING,
            )
