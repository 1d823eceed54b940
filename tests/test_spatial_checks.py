#!/usr/bin/env python3
"""
Tests for index-driven duplicate and overlap detection.
"""

import pytest
from shapely.geometry import LineString, Point, Polygon, box

from spatialqc.models import FeatureRef
from spatialqc.spatial_checks import find_duplicates, find_overlaps, is_duplicate
from spatialqc.spatial_index import create_index

STRATEGIES = ["grid", "rtree", "quadtree"]


def build(strategy, geoms, tolerance=0.001):
    return create_index(strategy, tolerance=tolerance).build(
        (FeatureRef("parcels", i), g) for i, g in enumerate(geoms, start=1)
    )


class TestDuplicates:
    """Each duplicate pair is reported once, on the later feature."""

    @pytest.mark.parametrize("strategy", STRATEGIES)
    def test_three_mutual_duplicates_give_two_findings(self, strategy):
        square = box(0, 0, 1, 1)
        index = build(strategy, [square, box(0, 0, 1, 1), box(0, 0, 1, 1), box(5, 5, 6, 6)])

        findings = find_duplicates(index, 0.001, "parcels")

        assert len(findings) == 2
        assert {(f.fid, f.target_fid) for f in findings} == {(2, 1), (3, 1)}
        assert all(f.code == "GEOM_DUPLICATE" for f in findings)

    def test_near_duplicate_within_tolerance(self):
        index = build("grid", [Point(10, 10), Point(10.0005, 10)], tolerance=0.001)

        findings = find_duplicates(index, 0.001, "wells")

        assert len(findings) == 1
        assert findings[0].fid == 2

    def test_distinct_geometries_not_duplicates(self):
        index = build("rtree", [box(0, 0, 1, 1), box(0, 0, 1, 1.01)])

        assert find_duplicates(index, 0.001, "parcels") == []

    def test_different_types_never_duplicates(self):
        assert not is_duplicate(Point(0, 0), LineString([(0, 0), (0, 0.0001)]), 1.0)

    def test_reversed_ring_is_duplicate(self):
        a = Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])
        b = Polygon([(0, 0), (0, 1), (1, 1), (1, 0)])

        assert is_duplicate(a, b, 0.0)


class TestOverlaps:
    """Overlaps are located at the centroid of the shared area."""

    @pytest.mark.parametrize("strategy", STRATEGIES)
    def test_polygon_overlap(self, strategy):
        index = build(strategy, [box(0, 0, 2, 2), box(1, 1, 3, 3), box(10, 10, 11, 11)])

        findings = find_overlaps(index, 0.001, "parcels")

        assert len(findings) == 1
        finding = findings[0]
        assert (finding.fid, finding.target_fid) == (2, 1)
        assert finding.location == pytest.approx((1.5, 1.5))
        assert finding.anchor.area == pytest.approx(1.0)

    def test_touching_polygons_do_not_overlap(self):
        index = build("grid", [box(0, 0, 1, 1), box(1, 0, 2, 1)])

        assert find_overlaps(index, 0.001, "parcels") == []

    def test_overlap_below_tolerance_ignored(self):
        index = build("grid", [box(0, 0, 1, 1), box(0.9995, 0, 2, 1)])

        assert find_overlaps(index, 0.001, "parcels") == []

    def test_collinear_lines_overlap(self):
        index = build("quadtree", [LineString([(0, 0), (10, 0)]), LineString([(5, 0), (15, 0)])])

        findings = find_overlaps(index, 0.001, "roads")

        assert len(findings) == 1
        assert findings[0].details["overlap"] == pytest.approx(5.0)
        assert findings[0].location == pytest.approx((7.5, 0.0))

    def test_crossing_lines_do_not_overlap(self):
        index = build("grid", [LineString([(0, 0), (2, 2)]), LineString([(0, 2), (2, 0)])])

        assert find_overlaps(index, 0.001, "roads") == []
