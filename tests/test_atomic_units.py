"""
Unit tests for atomic unit building.
"""

import hashlib

import numpy as np
import pandas as pd
import pytest

from canvass_segmentation.atomic_units import AtomicUnitBuilder

from conftest import family_frame


def _voter(id, family_id=None, address=None, floor_number=None, lat=12.0, lon=77.0):
    return {
        "id": id,
        "election_id": "E1",
        "node_id": None,
        "family_id": family_id,
        "address": address,
        "floor_number": floor_number,
        "latitude": lat,
        "longitude": lon,
    }


class TestUnitKey:
    """Tests for AtomicUnitBuilder.unit_key()."""

    def test_family_id_wins_over_address(self):
        key = AtomicUnitBuilder.unit_key(_voter("v1", family_id="F9", address="1 Main St", floor_number=2))
        assert key == "family:F9"

    def test_address_and_floor_hash_when_no_family(self):
        key = AtomicUnitBuilder.unit_key(_voter("v1", address="1 Main St", floor_number=2))
        expected = hashlib.md5("1 Main St|2".encode("utf-8")).hexdigest()
        assert key == f"addr:{expected}"

    def test_float_floor_matches_integer_floor(self):
        a = AtomicUnitBuilder.unit_key(_voter("v1", address="1 Main St", floor_number=2))
        b = AtomicUnitBuilder.unit_key(_voter("v2", address="1 Main St", floor_number=2.0))
        assert a == b

    def test_address_without_floor_falls_back_to_voter(self):
        key = AtomicUnitBuilder.unit_key(_voter("v7", address="1 Main St"))
        assert key == "voter:v7"

    def test_blank_family_id_is_ignored(self):
        key = AtomicUnitBuilder.unit_key(_voter("v3", family_id="  "))
        assert key == "voter:v3"

    def test_nan_family_id_is_ignored(self):
        key = AtomicUnitBuilder.unit_key(_voter("v4", family_id=np.nan))
        assert key == "voter:v4"


class TestBuildUnits:
    """Tests for AtomicUnitBuilder.build_units()."""

    def test_groups_family_members_into_one_unit(self, cfg):
        df = family_frame([("F1", 3, 12.0, 77.0), ("F2", 2, 12.001, 77.001)])
        units = AtomicUnitBuilder(cfg).build_units(df)

        assert [u.id for u in units] == ["family:F1", "family:F2"]
        assert [u.voter_count for u in units] == [3, 2]
        assert units[0].voter_ids == ("F1-00", "F1-01", "F1-02")

    def test_every_voter_lands_in_exactly_one_unit(self, cfg):
        df = pd.DataFrame([
            _voter("a", family_id="F1"),
            _voter("b", family_id="F1"),
            _voter("c", address="2 High St", floor_number=1),
            _voter("d", address="2 High St", floor_number=1),
            _voter("e", address="2 High St", floor_number=3),
            _voter("f"),
        ])
        units = AtomicUnitBuilder(cfg).build_units(df)

        voter_ids = [v for u in units for v in u.voter_ids]
        assert sorted(voter_ids) == ["a", "b", "c", "d", "e", "f"]
        assert len(voter_ids) == len(set(voter_ids))
        assert len(units) == 4

    def test_voters_without_location_are_skipped(self, cfg):
        df = pd.DataFrame([
            _voter("a", family_id="F1"),
            _voter("b", family_id="F1", lat=None, lon=None),
        ])
        units = AtomicUnitBuilder(cfg).build_units(df)

        assert len(units) == 1
        assert units[0].voter_ids == ("a",)

    def test_single_location_centroid_is_exact(self, cfg):
        df = family_frame([("F1", 4, 12.345678, 77.654321)])
        unit = AtomicUnitBuilder(cfg).build_units(df)[0]

        assert unit.lat == 12.345678
        assert unit.lon == 77.654321

    def test_centroid_lies_between_members(self, cfg):
        df = pd.DataFrame([
            _voter("a", family_id="F1", lat=12.0, lon=77.0),
            _voter("b", family_id="F1", lat=12.002, lon=77.002),
        ])
        unit = AtomicUnitBuilder(cfg).build_units(df)[0]

        assert unit.lat == pytest.approx(12.001, abs=1e-6)
        assert unit.lon == pytest.approx(77.001, abs=1e-6)

    def test_input_order_does_not_matter(self, cfg):
        df = family_frame([("F1", 3, 12.0, 77.0), ("F2", 2, 12.001, 77.001)])
        shuffled = df.sample(frac=1.0, random_state=7).reset_index(drop=True)

        builder = AtomicUnitBuilder(cfg)
        assert builder.build_units(df) == builder.build_units(shuffled)

    def test_empty_frame_returns_no_units(self, cfg):
        assert AtomicUnitBuilder(cfg).build_units(pd.DataFrame()) == []
