"""
atomic_units.py

AtomicUnitBuilder:
------------------
Turns raw voter rows into atomic units: the indivisible household groups
that segmentation is not allowed to split.

Grouping key, first match wins:
    1. family id                          -> "family:<family_id>"
    2. md5(address | floor), both present -> "addr:<md5>"
    3. the voter's own id                 -> "voter:<voter_id>"

Voters without coordinates are left out; reconciling them belongs to data
quality, not to segmentation.
"""

import hashlib
import logging
from typing import List, Optional, Sequence

import pandas as pd
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import SegmentationConfig
from .geometry import GeometryCapability, ShapelyGeometry
from .models import AtomicUnit, VOTER_COLUMNS
from .schema import voters
from .utils import log


def _is_blank(value) -> bool:
    if value is None or pd.isna(value):
        return True
    return str(value).strip() == ""


def _floor_text(value) -> str:
    # Nullable integer columns come back from the database as floats
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class AtomicUnitBuilder:
    """
    Build atomic units from voter rows.
    """

    def __init__(self, cfg: SegmentationConfig, geometry: Optional[GeometryCapability] = None):
        self.cfg = cfg
        self.geometry = geometry or ShapelyGeometry()

    # -------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------

    def load_from_db(self, session: Session, election_id: str,
                     node_ids: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """
        Read the voters of an election, optionally restricted to hierarchy
        nodes, inside the caller's transaction.
        """
        stmt = select(*[voters.c[name] for name in VOTER_COLUMNS]).where(
            voters.c.election_id == election_id
        )
        if node_ids is not None:
            stmt = stmt.where(voters.c.node_id.in_(list(node_ids)))
        stmt = stmt.order_by(voters.c.id)

        df = pd.read_sql(stmt, session.connection())
        log(f"Loaded {len(df)} voters for election {election_id}")
        return df

    # -------------------------------------------------------------
    # Grouping
    # -------------------------------------------------------------

    @staticmethod
    def unit_key(row) -> str:
        """Composite grouping key for one voter row."""
        if not _is_blank(row.get("family_id")):
            return f"family:{str(row['family_id']).strip()}"

        address = row.get("address")
        floor = row.get("floor_number")
        if not _is_blank(address) and not _is_blank(floor):
            digest = hashlib.md5(
                f"{str(address).strip()}|{_floor_text(floor)}".encode("utf-8")
            ).hexdigest()
            return f"addr:{digest}"

        return f"voter:{row['id']}"

    def build_units(self, df: pd.DataFrame) -> List[AtomicUnit]:
        """
        Group voters into atomic units.

        Parameters
        ----------
        df : pd.DataFrame
            Voter rows with at least id, latitude and longitude columns

        Returns
        -------
        units : list of AtomicUnit
            Sorted by unit id, voter ids sorted within each unit
        """
        if df.empty:
            log("No voters supplied; no atomic units built")
            return []

        frame = df.copy()
        for col in VOTER_COLUMNS:
            if col not in frame.columns:
                frame[col] = None
        frame["id"] = frame["id"].astype(str)

        located = frame.dropna(subset=["latitude", "longitude"])
        dropped = len(frame) - len(located)
        if dropped:
            log(f"Skipped {dropped} voters without a location", logging.WARNING)
        if located.empty:
            return []

        located = located.assign(unit_id=located.apply(self.unit_key, axis=1))
        located = located.sort_values(["unit_id", "id"], kind="mergesort")

        units = []
        for unit_id, group in located.groupby("unit_id", sort=True):
            lat, lon = self.geometry.centroid(
                group["latitude"].to_numpy(dtype=float),
                group["longitude"].to_numpy(dtype=float),
            )
            units.append(AtomicUnit(
                id=str(unit_id),
                voter_count=len(group),
                voter_ids=tuple(sorted(group["id"])),
                lat=lat,
                lon=lon,
            ))

        units.sort(key=lambda u: u.id)
        total = sum(u.voter_count for u in units)
        log(f"Built {len(units)} atomic units covering {total} voters")
        return units
