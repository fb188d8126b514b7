"""
models.py

Data carried between the pipeline stages.

AtomicUnit, ParentBoundary and Cell live for a single run. Segment and
SegmentException are the persisted outputs.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Tuple

from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry


VOTER_COLUMNS = [
    "id",
    "election_id",
    "node_id",
    "family_id",
    "address",
    "floor_number",
    "latitude",
    "longitude",
]

ENTITY_ATOMIC_UNIT = "atomic_unit"
EXCEPTION_OVERSIZED_UNIT = "oversized_atomic_unit"
EXCEPTION_ISOLATED_REGION = "isolated_undersized_region"


@dataclass(frozen=True)
class AtomicUnit:
    """Indivisible group of voters (family or household)."""

    id: str
    voter_count: int
    voter_ids: Tuple[str, ...]
    lat: float
    lon: float

    @property
    def centroid(self) -> Point:
        return Point(self.lon, self.lat)


@dataclass(frozen=True)
class ParentBoundary:
    geometry: BaseGeometry
    area_m2: float


@dataclass(frozen=True)
class Cell:
    id: str
    geometry: BaseGeometry
    lat: float
    lon: float

    @property
    def sort_key(self):
        """North to south, then west to east, then id."""
        return (-round(self.lat, 9), round(self.lon, 9), self.id)


@dataclass
class UnplacedUnit:
    """A unit the grower could not put into a segment."""

    unit: AtomicUnit
    exception_type: str
    severity: str
    reason: str


@dataclass
class Segment:
    election_id: str
    node_id: Optional[str]
    code: str
    name: str
    segment_type: str
    total_voters: int
    total_families: int
    status: str
    color: str
    version: int
    metadata: Dict[str, Any]
    centroid_lat: float
    centroid_lon: float
    geometry: BaseGeometry
    unit_ids: List[str] = field(default_factory=list)
    voter_ids: List[str] = field(default_factory=list)
    id: Optional[str] = None


@dataclass
class SegmentException:
    election_id: str
    exception_type: str
    entity_type: str
    entity_id: str
    severity: str
    status: str
    metadata: Dict[str, Any]
    voter_count: int = 0
    lat: Optional[float] = None
    lon: Optional[float] = None


@dataclass
class Job:
    id: str
    election_id: str
    node_id: Optional[str] = None
    status: str = "queued"


@dataclass
class RunResult:
    status: str
    segments_created: int
    exceptions_raised: int
    voters_covered: int
    version: int = 1
    run_hash: str = ""
    algorithm_ms: int = 0
    db_write_ms: int = 0
    total_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SegmentationOutcome:
    """Everything one pipeline pass produced, before persistence."""

    units: List[AtomicUnit]
    boundary: ParentBoundary
    cells: List[Cell]
    segments: List[Segment]
    exceptions: List[SegmentException]
    run_hash: str

    @property
    def voters_covered(self) -> int:
        return sum(u.voter_count for u in self.units)

    @property
    def segmented_voters(self) -> int:
        return sum(s.total_voters for s in self.segments)

    @property
    def exception_voters(self) -> int:
        return sum(e.voter_count for e in self.exceptions if e.entity_type == ENTITY_ATOMIC_UNIT)
