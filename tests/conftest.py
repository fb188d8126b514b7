import pandas as pd
import pytest

from canvass_segmentation.config import SegmentationConfig
from canvass_segmentation.schema import hierarchy_nodes, voters
from canvass_segmentation.store import create_schema, make_engine


BASE_LAT = 12.9716
BASE_LON = 77.5946
STEP_DEG = 0.0009  # roughly 100 m


def family_frame(families, election_id="E1", node_id=None):
    """
    Voter rows for a list of (family_id, voter_count, lat, lon).

    Voter ids are <family_id>-<n>.
    """
    rows = []
    for family_id, count, lat, lon in families:
        for n in range(count):
            rows.append({
                "id": f"{family_id}-{n:02d}",
                "election_id": election_id,
                "node_id": node_id,
                "family_id": family_id,
                "address": None,
                "floor_number": None,
                "latitude": lat,
                "longitude": lon,
            })
    return pd.DataFrame(rows)


def lattice_families(rows=10, cols=10, voters_per_family=2, prefix="F"):
    """Households on a slightly jittered ~100 m lattice."""
    families = []
    for r in range(rows):
        for c in range(cols):
            i = r * cols + c
            lat = BASE_LAT + r * STEP_DEG + ((i * 7) % 5) * 0.00001
            lon = BASE_LON + c * STEP_DEG + ((i * 3) % 4) * 0.00001
            families.append((f"{prefix}{i:03d}", voters_per_family, lat, lon))
    return families


@pytest.fixture
def cfg():
    """Small bounds so tests stay fast and readable."""
    return SegmentationConfig(
        database_url="sqlite://",
        min_segment_voters=10,
        max_segment_voters=20,
        strategy="grid",
    )


@pytest.fixture
def lattice_voters():
    return family_frame(lattice_families())


@pytest.fixture
def db_engine():
    engine = make_engine("sqlite://")
    create_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seeded_db(db_engine):
    """
    Hierarchy AC1 -> (B1, B2) plus an unrelated node OTHER.

    The 10 x 10 lattice lives in election E1: the first half under B1, the
    second under B2. OTHER holds a separate small cluster that must never
    appear in AC1 runs.
    """
    lattice = lattice_families()
    with db_engine.begin() as conn:
        conn.execute(hierarchy_nodes.insert(), [
            {"id": "AC1", "parent_id": None, "name": "Assembly 1", "level": "AC"},
            {"id": "B1", "parent_id": "AC1", "name": "Booth 1", "level": "BOOTH"},
            {"id": "B2", "parent_id": "AC1", "name": "Booth 2", "level": "BOOTH"},
            {"id": "EMPTY", "parent_id": "AC1", "name": "Booth 3", "level": "BOOTH"},
            {"id": "OTHER", "parent_id": None, "name": "Assembly 2", "level": "AC"},
        ])

        frames = [
            family_frame(lattice[:50], node_id="B1"),
            family_frame(lattice[50:], node_id="B2"),
            family_frame([("X1", 5, BASE_LAT + 1.0, BASE_LON + 1.0)], node_id="OTHER"),
        ]
        conn.execute(voters.insert(), pd.concat(frames).to_dict("records"))
    return db_engine
