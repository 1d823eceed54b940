#!/usr/bin/env python3
"""
Tests for relation rules, attribute checks and attribute relations.
"""

import logging
import math

import pytest
from shapely.geometry import LineString, Point, box

from spatialqc.attributes import AttributeChecker, AttributeRelationChecker, is_null
from spatialqc.criteria import AttributeRelationRule, AttributeRule, RelationRule
from spatialqc.exceptions import ConfigurationError
from spatialqc.models import FeatureRef
from spatialqc.relations import RelationChecker
from spatialqc.source import SourceFeature
from spatialqc.spatial_index import create_index


def index_of(table, geoms, strategy="grid"):
    return create_index(strategy).build(
        (FeatureRef(table, fid), geom) for fid, geom in enumerate(geoms, start=1)
    )


@pytest.fixture
def checker(criteria):
    return RelationChecker(criteria)


@pytest.fixture
def zone():
    return index_of("zones", [box(0, 0, 10, 10)])


class TestRelationCases:
    """Each relation case reports on main-table features only."""

    def test_point_inside_polygon(self, checker, zone):
        points = index_of("wells", [Point(5, 5), Point(20, 20), Point(10, 5)])

        findings = checker.check(RelationRule("point_inside_polygon", "wells", "zones"), points, zone)

        assert [(f.code, f.fid) for f in findings] == [("REL_POINT_OUTSIDE_POLYGON", 2)]
        assert findings[0].location == (20.0, 20.0)
        assert findings[0].target_table == "zones"

    def test_line_within_polygon(self, checker, zone):
        lines = index_of(
            "roads",
            [
                LineString([(1, 1), (9, 9)]),
                LineString([(5, 5), (15, 5)]),
                LineString([(9, 5), (10.0005, 5)]),
            ],
        )

        findings = checker.check(RelationRule("line_within_polygon", "roads", "zones"), lines, zone)

        assert [f.fid for f in findings] == [2]
        assert findings[0].code == "REL_LINE_OUTSIDE_POLYGON"
        assert findings[0].details["length"] == pytest.approx(5.0, abs=0.01)
        assert findings[0].location == pytest.approx((12.5, 5.0), abs=0.01)

    @pytest.mark.parametrize("strategy", ["grid", "rtree", "quadtree"])
    def test_polygon_within_polygon(self, checker, strategy):
        zones = index_of("zones", [box(0, 0, 10, 10)], strategy)
        parcels = index_of("parcels", [box(2, 2, 4, 4), box(8, 8, 12, 12)], strategy)

        findings = checker.check(RelationRule("polygon_within_polygon", "parcels", "zones"), parcels, zones)

        assert [f.fid for f in findings] == [2]
        assert findings[0].details["area"] == pytest.approx(12.0)

    def test_polygon_not_overlap_same_table(self, checker):
        parcels = index_of("parcels", [box(0, 0, 2, 2), box(1, 1, 3, 3), box(5, 5, 6, 6)])

        findings = checker.check(RelationRule("polygon_not_overlap", "parcels", "parcels"), parcels, parcels)

        assert len(findings) == 1
        assert (findings[0].fid, findings[0].target_fid) == (1, 2)
        assert findings[0].location == pytest.approx((1.5, 1.5))

    def test_polygon_not_intersect_line(self, checker, zone):
        lines = index_of(
            "roads",
            [
                LineString([(-5, 5), (15, 5)]),
                LineString([(10, 0), (20, 0)]),
                LineString([(30, 30), (40, 40)]),
            ],
        )

        findings = checker.check(RelationRule("polygon_not_intersect_line", "zones", "roads"), zone, lines)

        assert [(f.fid, f.target_fid) for f in findings] == [(1, 1)]
        assert findings[0].location == pytest.approx((5.0, 5.0))

    def test_polygon_not_contain_point(self, checker, zone):
        points = index_of("wells", [Point(5, 5), Point(10, 5), Point(20, 20)])

        findings = checker.check(RelationRule("polygon_not_contain_point", "zones", "wells"), zone, points)

        assert [f.target_fid for f in findings] == [1]
        assert findings[0].location == (5.0, 5.0)

    def test_line_connectivity(self, checker):
        main = index_of("roads", [LineString([(0, 0), (10, 0)]), LineString([(5, 0.3), (5, 10)])])
        related = index_of("tracks", [LineString([(10.3, 0), (20, 0)]), LineString([(3, 0), (7, 0)])])

        findings = checker.check(
            RelationRule("line_connectivity", "roads", "tracks", tolerance=0.5), main, related
        )

        codes = {(f.fid, f.code) for f in findings}
        assert codes == {(1, "REL_LINE_OVERSHOOT"), (2, "REL_LINE_UNDERSHOOT")}
        undershoot = next(f for f in findings if f.fid == 2)
        assert undershoot.location == pytest.approx((5.0, 0.15))

    def test_default_and_rule_tolerance(self, checker, criteria):
        assert checker.tolerance(RelationRule("line_connectivity", "a", "b")) == criteria.line_connectivity_tolerance
        assert checker.tolerance(RelationRule("line_connectivity", "a", "b", tolerance=0.0)) == 0.0
        assert checker.tolerance(RelationRule("point_inside_polygon", "a", "b")) == 0.0

    def test_unknown_case(self, checker, zone):
        with pytest.raises(ConfigurationError):
            checker.check(RelationRule("touches", "zones", "zones"), zone, zone)


def features(field, values):
    return [SourceFeature(fid, None, {field: value}) for fid, value in enumerate(values, start=1)]


class TestAttributeChecks:
    @pytest.mark.parametrize(
        "check,value,values,flagged",
        [
            ("notnull", None, [None, "", "  ", "x", math.nan], [1, 2, 3, 5]),
            ("notzero", None, [0, "0", 1, None], [1, 2]),
            ("codelist", ["RES", "COM", 1], ["RES", "XXX", "1", None], [2]),
            ("range", [1, 200], [0, 5, "abc", 200], [1, 3]),
            ("regex", "^[A-Z][0-9]{2}$", ["A01", "b-2", "A011"], [2, 3]),
            ("regexnot", r"\s", ["ab", "a b"], [2]),
            ("multipleof", 0.5, [1.5, 1.2, -2.0], [2]),
        ],
    )
    def test_checks(self, check, value, values, flagged):
        rule = AttributeRule("parcels", "f", check, value)

        findings = AttributeChecker().check(rule, features("f", values))

        assert [f.fid for f in findings] == flagged
        assert all(f.code == f"ATTR_{check.upper()}" for f in findings)
        assert all(f.location is None for f in findings)

    def test_missing_field_skipped(self, caplog):
        rule = AttributeRule("parcels", "owner", "notnull")

        with caplog.at_level(logging.WARNING):
            findings = AttributeChecker().check(rule, features("f", [None]))

        assert findings == []
        assert "owner" in caplog.text

    def test_is_null(self):
        assert is_null(None) and is_null("") and is_null(math.nan)
        assert not is_null(0) and not is_null("0")


class TestAttributeRelations:
    def test_reference_exists(self, criteria):
        rule = AttributeRelationRule(
            "reference_exists", "addresses", "building_id",
            related_table="buildings", related_field="building_id",
        )
        main = features("building_id", ["B1", "B9", None])
        related = features("building_id", ["B1", "B2"])

        findings = AttributeRelationChecker(criteria).reference_exists(rule, main, related)

        assert [f.fid for f in findings] == [2]
        assert findings[0].code == "ATTR_REL_REFERENCE_MISSING"

    def test_connected_lines_same_attribute(self, criteria, roads_gdf):
        lines = [
            SourceFeature(fid, geom, {"road_class": cls})
            for fid, geom, cls in zip(roads_gdf.index, roads_gdf.geometry, roads_gdf["road_class"])
        ]
        lines.append(SourceFeature(13, LineString([(100, 50), (120, 50)]), {"road_class": "B02"}))
        rule = AttributeRelationRule("connected_lines_same_attribute", "roads", "road_class")

        findings = AttributeRelationChecker(criteria).connected_lines_same_attribute(rule, lines)

        assert len(findings) == 1
        assert (findings[0].fid, findings[0].target_fid) == (13, 11)
        assert findings[0].location == (100.0, 50.0)
