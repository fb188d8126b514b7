"""
Canvass Segmentation
====================

This package partitions the voters of an election scope into compact,
contiguous canvassing segments:
- Households (atomic units) are never split
- Segment sizes stay within configurable voter bounds
- Grid or geohash cells, grown into regions deterministically
- Units that cannot be placed become reviewable exceptions

Public classes exposed:

    - SegmentationConfig
    - SegmentationEngine
    - AtomicUnitBuilder
    - SegmentStore
    - ScopeLock

Usage example:

    from canvass_segmentation import SegmentationEngine, Job

    engine = SegmentationEngine()
    result = engine.run(Job(id="job-1", election_id="E1", node_id="AC-12"))
"""

from .config import SegmentationConfig
from .atomic_units import AtomicUnitBuilder
from .engine import SegmentationEngine
from .errors import (
    GeometryComputationError,
    PersistenceError,
    PreconditionError,
    ScopeLockedError,
    SegmentationError,
    ValidationError,
)
from .locking import ScopeLock
from .models import Job, RunResult, SegmentationOutcome
from .store import SegmentStore, create_schema, make_engine

__all__ = [
    "SegmentationConfig",
    "SegmentationEngine",
    "AtomicUnitBuilder",
    "SegmentStore",
    "ScopeLock",
    "Job",
    "RunResult",
    "SegmentationOutcome",
    "create_schema",
    "make_engine",
    "SegmentationError",
    "PreconditionError",
    "GeometryComputationError",
    "ValidationError",
    "PersistenceError",
    "ScopeLockedError",
]
