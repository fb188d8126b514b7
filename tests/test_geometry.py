"""
Unit tests for the geometry capability and geohash helpers.
"""

import pytest
from shapely.geometry import Point, box

from canvass_segmentation import geohash
from canvass_segmentation.errors import GeometryComputationError
from canvass_segmentation.geometry import ShapelyGeometry


@pytest.fixture
def geo():
    return ShapelyGeometry()


class TestGeohash:

    def test_encode_known_value(self):
        assert geohash.encode(42.6, -5.6, 5) == "ezs42"

    def test_bounds_contain_encoded_point(self):
        min_lon, min_lat, max_lon, max_lat = geohash.bounds(geohash.encode(12.9716, 77.5946, 7))
        assert min_lon <= 77.5946 <= max_lon
        assert min_lat <= 12.9716 <= max_lat

    def test_cell_size_matches_bounds(self):
        min_lon, min_lat, max_lon, max_lat = geohash.bounds("ezs42")
        width, height = geohash.cell_size(5)
        assert max_lon - min_lon == pytest.approx(width)
        assert max_lat - min_lat == pytest.approx(height)

    def test_children_tile_parent(self):
        kids = geohash.children("ezs42")
        parent = box(*geohash.bounds("ezs42"))

        assert len(kids) == 32
        assert len(set(kids)) == 32
        assert all(k.startswith("ezs42") and len(k) == 6 for k in kids)
        assert sum(box(*geohash.bounds(k)).area for k in kids) == pytest.approx(parent.area)


class TestCentroid:

    def test_identical_points_return_exact_point(self, geo):
        assert geo.centroid([12.5, 12.5], [77.25, 77.25]) == (12.5, 77.25)

    def test_two_points_midpoint(self, geo):
        lat, lon = geo.centroid([0.0, 0.0], [10.0, 20.0])
        assert lat == pytest.approx(0.0, abs=1e-9)
        assert lon == pytest.approx(15.0)

    def test_empty_input_raises(self, geo):
        with pytest.raises(GeometryComputationError):
            geo.centroid([], [])


class TestConcaveHull:

    def test_square_points_give_polygon(self, geo):
        hull = geo.concave_hull([0, 0, 1, 1, 0.5], [0, 1, 0, 1, 0.5], 0.98)
        assert hull.geom_type == "Polygon"
        assert hull.area > 0

    def test_collinear_points_raise(self, geo):
        with pytest.raises(GeometryComputationError):
            geo.concave_hull([0, 1, 2], [0, 1, 2], 0.98)

    def test_fewer_than_three_distinct_points_raise(self, geo):
        with pytest.raises(GeometryComputationError):
            geo.concave_hull([0, 0, 1], [0, 0, 1], 0.98)


class TestArea:

    def test_small_equatorial_box(self, geo):
        # 0.01 deg of latitude ~ 1105.7 m, of longitude at the equator ~ 1113.2 m
        assert geo.area_m2(box(0.0, 0.0, 0.01, 0.01)) == pytest.approx(1.2309e6, rel=0.01)

    def test_orientation_does_not_matter(self, geo):
        square = box(10.0, 10.0, 10.01, 10.01)
        reversed_square = square.reverse()
        assert geo.area_m2(square) == pytest.approx(geo.area_m2(reversed_square))


class TestSpatialQueries:

    def test_locate_point_on_shared_edge_hits_both(self, geo):
        cells = [box(0, 0, 1, 1), box(1, 0, 2, 1)]
        hits = geo.locate([0.5, 0.5], [1.0, 0.25], cells)
        assert hits == [[0, 1], [0]]

    def test_locate_point_outside(self, geo):
        assert geo.locate([5.0], [5.0], [box(0, 0, 1, 1)]) == [[]]

    def test_nearest(self, geo):
        idx, dist = geo.nearest([0.0], [0.1], [0.0, 0.0, 1.0], [0.0, 1.0, 0.0])
        assert int(idx[0]) == 0
        assert dist[0] == pytest.approx(11119.5, rel=0.01)

    def test_touching_pairs_report_shared_border_length(self, geo):
        cells = [box(0, 0, 1, 1), box(1, 0, 2, 1), box(2, 1, 3, 2), box(5, 5, 6, 6)]
        pairs = {(i, j): shared for i, j, shared in geo.touching_pairs(cells, 1e-9)}

        assert pairs[(0, 1)] == pytest.approx(1.0)
        assert pairs[(1, 2)] == pytest.approx(0.0)
        assert not any(3 in pair for pair in pairs)

    def test_union_of_adjacent_boxes_is_single_polygon(self, geo):
        merged = geo.union([box(0, 0, 1, 1), box(1, 0, 2, 1)])
        assert merged.geom_type == "Polygon"
        assert merged.area == pytest.approx(2.0)

    def test_square_tiles_cover_geometry(self, geo):
        tiles = list(geo.square_tiles(Point(0.5, 0.5).buffer(0.4), 0.25))
        assert tiles
        assert all(size == pytest.approx(0.0625) for size in (t[2].area for t in tiles))
