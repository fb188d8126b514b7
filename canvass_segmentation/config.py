"""
config.py

Central configuration for the segmentation engine.

Every value has a sensible default; the deployment-facing ones can be
overridden from the environment:

    - SEGMENTATION_DATABASE_URL   SQLAlchemy URL of the voter / segment store
    - SEGMENTATION_STRATEGY       "grid" (default) or "geohash"
    - SEGMENTATION_MIN_VOTERS     lower bound on voters per segment
    - SEGMENTATION_MAX_VOTERS     upper bound on voters per segment
    - SEGMENTATION_LOG_LEVEL      logging level name
    - SEGMENTATION_OUTPUT_DIR     where CSV-mode runs write their files
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


STRATEGIES = ("grid", "geohash")


# -------------------------------------------------------------
# Environment Resolution
# -------------------------------------------------------------

def get_database_url() -> str:
    """Resolve database URL from env or default."""
    env_url = os.getenv("SEGMENTATION_DATABASE_URL")
    if env_url:
        return env_url
    return "sqlite:///segmentation.db"


def get_strategy() -> str:
    return os.getenv("SEGMENTATION_STRATEGY", "grid").strip().lower()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def get_min_voters() -> int:
    return _env_int("SEGMENTATION_MIN_VOTERS", 90)


def get_max_voters() -> int:
    return _env_int("SEGMENTATION_MAX_VOTERS", 135)


def get_log_level() -> str:
    return os.getenv("SEGMENTATION_LOG_LEVEL", "INFO").upper()


def get_output_dir() -> str:
    return os.getenv("SEGMENTATION_OUTPUT_DIR", "outputs")


# -------------------------------------------------------------
# Segmentation Configuration Dataclass
# -------------------------------------------------------------

@dataclass
class SegmentationConfig:

    # -----------------------------
    # Storage / runtime
    # -----------------------------
    database_url: str = field(default_factory=get_database_url)
    log_level: str = field(default_factory=get_log_level)
    output_dir: str = field(default_factory=get_output_dir)

    # -----------------------------
    # Size constraints
    # -----------------------------
    min_segment_voters: int = field(default_factory=get_min_voters)
    max_segment_voters: int = field(default_factory=get_max_voters)

    # -----------------------------
    # Cell strategy
    # -----------------------------
    strategy: str = field(default_factory=get_strategy)

    # Concave hull ratio (1.0 = convex hull)
    concavity_ratio: float = 0.98

    # Grid cell edge = sqrt(area / units) * factor. Below 1.0 so that a cell
    # holds slightly less than one unit on average.
    grid_size_factor: float = 0.7

    # None = pick the precision closest to the grid's target cell area
    geohash_precision: Optional[int] = None

    # Refuse tilings larger than this
    max_cells: int = 250_000

    # Dense cell subdivision levels
    max_refine_depth: int = 6

    # Cells whose borders come this close (degrees) are neighbours
    adjacency_tolerance_deg: float = 1e-9

    # -----------------------------
    # Concurrency
    # -----------------------------
    lock_ttl_seconds: int = 3600

    # -----------------------------
    # Output styling
    # -----------------------------
    segment_type: str = "auto"
    segment_code_prefix: str = "SEG"
    palette: List[str] = field(default_factory=lambda: [
        "#1f77b4",
        "#ff7f0e",
        "#2ca02c",
        "#d62728",
        "#9467bd",
        "#8c564b",
        "#e377c2",
        "#7f7f7f",
        "#bcbd22",
        "#17becf",
    ])

    def __post_init__(self):
        self.strategy = self.strategy.strip().lower()
        if self.strategy not in STRATEGIES:
            raise ValueError(
                f"Unknown segmentation strategy {self.strategy!r}; expected one of {STRATEGIES}"
            )
        if self.min_segment_voters < 1:
            raise ValueError("min_segment_voters must be >= 1")
        if self.max_segment_voters < self.min_segment_voters:
            raise ValueError("max_segment_voters must be >= min_segment_voters")
        if not 0.0 <= self.concavity_ratio <= 1.0:
            raise ValueError("concavity_ratio must be within [0, 1]")
        if self.grid_size_factor <= 0:
            raise ValueError("grid_size_factor must be > 0")
        if self.geohash_precision is not None and not 1 <= self.geohash_precision <= 12:
            raise ValueError("geohash_precision must be within [1, 12]")
        if not self.palette:
            raise ValueError("palette must contain at least one colour")

    @property
    def algorithm(self) -> str:
        """Name recorded in segment metadata."""
        if self.strategy == "geohash":
            return "geohash_region_growing"
        return "grid_region_growing"
