"""
utils.py

General-purpose utilities used throughout the segmentation module:
- Logging helpers
- Directory creation
- JSON read/write convenience
- Great-circle distance
- Run fingerprinting
"""

import os
import json
import hashlib
import logging
import numpy as np
from typing import Any, Dict, Iterable


LOGGER_NAME = "canvass_segmentation"
EARTH_RADIUS_M = 6_371_008.8
METERS_PER_DEGREE = 111_320.0

logger = logging.getLogger(LOGGER_NAME)


# -------------------------------------------------------------
# Logging
# -------------------------------------------------------------

def configure_logging(level: str = "INFO"):
    """Attach a console handler to the package logger."""
    logging.basicConfig(
        format="[SEG] %(asctime)s %(levelname)s %(message)s",
        level=getattr(logging, str(level).upper(), logging.INFO),
    )


def log(msg: str, level: int = logging.INFO):
    """Log a message on the package logger."""
    logger.log(level, msg)


# -------------------------------------------------------------
# Directory Helpers
# -------------------------------------------------------------

def ensure_dir(path: str):
    """Create directory if it doesn't exist."""
    if path and not os.path.exists(path):
        os.makedirs(path, exist_ok=True)


# -------------------------------------------------------------
# JSON Helpers
# -------------------------------------------------------------

def write_json(path: str, data: Dict[str, Any]):
    """Write dictionary as JSON with pretty formatting."""
    ensure_dir(os.path.dirname(path))
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


# -------------------------------------------------------------
# Distance Helpers
# -------------------------------------------------------------

def haversine_m(lat1, lon1, lat2, lon2):
    """
    Great-circle distance in meters. Accepts scalars or numpy arrays.
    """
    lat1, lon1, lat2, lon2 = map(np.radians, (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2.0) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2.0) ** 2
    return 2.0 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def meters_to_degrees(meters: float, latitude: float) -> float:
    """
    Convert a metric length to degrees of longitude at the given latitude.
    Longitude degrees shrink with cos(latitude); latitude degrees do not.
    """
    return meters / (METERS_PER_DEGREE * np.cos(np.radians(latitude)))


# -------------------------------------------------------------
# Run Fingerprint
# -------------------------------------------------------------

def compute_run_hash(memberships: Iterable[Iterable[str]], exception_ids: Iterable[str]) -> str:
    """
    md5 fingerprint of a run's output.

    Parameters:
    -----------
    memberships: iterable of iterables
        Atomic unit ids per segment, in segment order
    exception_ids: iterable
        Atomic unit ids that became exceptions

    Two runs over identical data produce identical hashes.
    """
    h = hashlib.md5()
    for unit_ids in memberships:
        h.update(",".join(sorted(unit_ids)).encode("utf-8"))
        h.update(b";")
    h.update(b"|")
    h.update(",".join(sorted(exception_ids)).encode("utf-8"))
    return h.hexdigest()
