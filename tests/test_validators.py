#!/usr/bin/env python3
"""
Tests for the single-geometry validators and dangle detection.
"""

import pytest
from shapely.geometry import LineString, MultiPoint, Polygon

from spatialqc.criteria import GeometryCheckConfig, GeometryCriteria
from spatialqc.models import FeatureRef
from spatialqc.spatial_index import create_index
from spatialqc.validators import (
    MinimumVertexValidator,
    ShortLineValidator,
    SimplicityValidator,
    SliverValidator,
    SmallAreaValidator,
    SpikeValidator,
    ValidityValidator,
    check_ring_coordinates,
    classify_validity,
    find_dangles,
    reason_coordinate,
    sliver_metrics,
    validate_feature,
    vertex_angles,
)


class TestValidity:
    """Invalid geometries are classified and pinned to the GEOS location."""

    def test_bowtie_self_intersection(self, ref, criteria):
        bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2)])

        findings = ValidityValidator().validate(ref(), bowtie, criteria)

        assert len(findings) == 1
        assert findings[0].code == "GEOM_INVALID"
        assert findings[0].details["violation"] == "self_intersection"
        assert findings[0].location == pytest.approx((1.0, 1.0))

    def test_valid_polygon(self, ref, criteria):
        assert ValidityValidator().validate(ref(), Polygon([(0, 0), (1, 0), (1, 1)]), criteria) == []

    @pytest.mark.parametrize(
        "reason,expected",
        [
            ("Ring Self-intersection[1 1]", "ring_self_intersection"),
            ("Self-intersection[0 0]", "self_intersection"),
            ("Hole lies outside shell[5 5]", "hole_outside_shell"),
            ("Nested shells[2 2]", "nested_shells"),
            ("Interior is disconnected[3 3]", "disconnected_interior"),
            ("Too few points in geometry component[1 1]", "too_few_points"),
            ("Invalid Coordinate[nan 1]", "invalid_coordinate"),
            ("Something new", "unknown"),
        ],
    )
    def test_classify(self, reason, expected):
        assert classify_validity(reason) == expected

    def test_reason_coordinate(self):
        assert reason_coordinate("Self-intersection[-3.5 2e3]") == (-3.5, 2000.0)
        assert reason_coordinate("Invalid Coordinate[nan 1]") is None
        assert reason_coordinate("Valid Geometry") is None


class TestSimplicity:
    def test_crossing_line(self, ref, criteria):
        line = LineString([(0, 0), (2, 2), (2, 0), (0, 2)])

        findings = SimplicityValidator().validate(ref(table="roads"), line, criteria)

        assert len(findings) == 1
        assert findings[0].location == pytest.approx((1.0, 1.0))

    def test_repeated_multipoint(self, ref, criteria):
        points = MultiPoint([(3, 4), (5, 6), (3, 4)])

        findings = SimplicityValidator().validate(ref(table="wells"), points, criteria)

        assert findings[0].location == (3.0, 4.0)

    def test_polygons_not_checked(self, ref, criteria):
        bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2)])

        assert SimplicityValidator().validate(ref(), bowtie, criteria) == []


class TestSpikes:
    """Interior angles are measured circularly for rings and linearly for lines."""

    def test_first_vertex_of_ring_is_measured(self, ref, criteria):
        polygon = Polygon([(0, 0), (10, 0.5), (10, -0.5)])

        findings = SpikeValidator().validate(ref(), polygon, criteria)

        assert len(findings) == 1
        assert findings[0].location == (0.0, 0.0)
        assert findings[0].details["angle"] == pytest.approx(5.7248, abs=1e-3)

    def test_open_line_spike(self, ref, criteria):
        line = LineString([(0, 0), (10, 0.5), (0, 1)])

        findings = SpikeValidator().validate(ref(table="roads"), line, criteria)

        assert [f.location for f in findings] == [(10.0, 0.5)]

    def test_line_endpoints_not_measured(self):
        angles = vertex_angles([(0, 0), (1, 0), (2, 0)], closed=False)

        assert [i for i, _ in angles] == [1]
        assert angles[0][1] == pytest.approx(180.0)

    def test_report_all_spikes(self, ref):
        # two sharp teeth
        polygon = Polygon([(0, 0), (10, 0.2), (0, 0.4), (0, 1), (10, 1.2), (0, 1.4), (-1, 1.4), (-1, 0)])
        criteria = GeometryCriteria(report_all_spikes=True)

        findings = SpikeValidator().validate(ref(), polygon, criteria)

        assert {f.location for f in findings} == {(10.0, 0.2), (10.0, 1.2)}

    def test_square_has_no_spikes(self, ref, criteria):
        square = Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])

        assert SpikeValidator().validate(ref(), square, criteria) == []


class TestSlivers:
    """A sliver must be small, non-compact and elongated at once."""

    def test_needle_is_sliver(self, ref, criteria, needle_polygon):
        findings = SliverValidator().validate(ref(), needle_polygon, criteria)

        assert len(findings) == 1
        assert findings[0].location == (10.0, 0.0)

    @pytest.mark.parametrize(
        "override",
        [
            {"sliver_area": 0.01},
            {"sliver_shape_index": 0.001},
            {"sliver_elongation": 1000.0},
        ],
    )
    def test_each_condition_required(self, ref, needle_polygon, override):
        criteria = GeometryCriteria(**override)

        assert SliverValidator().validate(ref(), needle_polygon, criteria) == []

    def test_unit_square_not_sliver(self, ref, criteria):
        square = Polygon([(0, 0), (1, 0), (1, 1), (0, 1)])

        assert SliverValidator().validate(ref(), square, criteria) == []

    def test_metrics(self):
        metrics = sliver_metrics(Polygon([(0, 0), (1, 0), (1, 1), (0, 1)]))

        assert metrics["shape_index"] == pytest.approx(0.7854, abs=1e-4)
        assert metrics["elongation"] == pytest.approx(1.2732, abs=1e-4)


class TestSizeThresholds:
    def test_short_line_at_middle_vertex(self, ref, criteria):
        findings = ShortLineValidator().validate(ref(table="roads"), LineString([(0, 0), (0.005, 0)]), criteria)

        assert len(findings) == 1
        assert findings[0].location == (0.005, 0.0)

    def test_long_line(self, ref, criteria):
        assert ShortLineValidator().validate(ref(), LineString([(0, 0), (1, 0)]), criteria) == []

    def test_small_area(self, ref, criteria):
        findings = SmallAreaValidator().validate(ref(), Polygon([(0, 0), (0.5, 0), (0.5, 0.5), (0, 0.5)]), criteria)

        assert len(findings) == 1
        assert findings[0].location == (0.25, 0.25)
        assert findings[0].details["area"] == pytest.approx(0.25)


class TestMinimumVertices:
    def test_ring_with_two_distinct_vertices(self):
        assert check_ring_coordinates([(0, 0), (1, 0), (0, 0)], 1e-8) is not None

    def test_triangle_ring_accepted(self):
        assert check_ring_coordinates([(0, 0), (1, 0), (0, 1), (0, 0)], 1e-8) is None

    def test_unclosed_ring_rejected(self):
        assert "not closed" in check_ring_coordinates([(0, 0), (1, 0), (0, 1)], 1e-8)

    def test_degenerate_polygon(self, ref, criteria):
        polygon = Polygon([(0, 0), (1, 0), (1, 0), (0, 0)])

        findings = MinimumVertexValidator().validate(ref(), polygon, criteria)

        assert len(findings) == 1
        assert findings[0].location == (0.0, 0.0)

    def test_zero_length_line(self, ref, criteria):
        findings = MinimumVertexValidator().validate(ref(table="roads"), LineString([(3, 3), (3, 3)]), criteria)

        assert findings[0].location == (3.0, 3.0)


class TestValidateFeature:
    def test_empty_geometry(self, ref, criteria):
        findings = validate_feature(ref(), None, criteria)

        assert [f.code for f in findings] == ["GEOM_EMPTY"]
        assert findings[0].location is None

    def test_disabled_checks_skipped(self, ref, criteria, needle_polygon):
        checks = GeometryCheckConfig(sliver=False, spike=False, small_area=False)

        assert validate_feature(ref(), needle_polygon, criteria, checks) == []

    def test_needle_findings(self, ref, criteria, needle_polygon):
        codes = sorted(f.code for f in validate_feature(ref(), needle_polygon, criteria))

        assert codes == ["GEOM_SLIVER", "GEOM_SMALL_AREA", "GEOM_SPIKE"]


def line_index(lines):
    return create_index("grid").build(
        (FeatureRef("roads", i), line) for i, line in enumerate(lines, start=1)
    )


class TestDangles:
    """Undershoots and overshoots are reported at the gap midpoint."""

    def test_undershoot(self, criteria):
        index = line_index([LineString([(0, 50), (50, 50)]), LineString([(25, 50.05), (25, 80)])])

        findings = find_dangles(index, criteria)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.code == "GEOM_UNDERSHOOT"
        assert (finding.fid, finding.target_fid) == (2, 1)
        assert finding.location == pytest.approx((25.0, 50.025))
        assert finding.anchor.length == pytest.approx(0.05)

    def test_overshoot_reported_once(self, criteria):
        index = line_index([LineString([(0, 0), (10, 0)]), LineString([(10.05, 0), (20, 0)])])

        findings = find_dangles(index, criteria)

        assert [f.code for f in findings] == ["GEOM_OVERSHOOT"]
        assert findings[0].location == pytest.approx((10.025, 0.0))

    def test_connected_lines(self, criteria):
        index = line_index([LineString([(0, 0), (10, 0)]), LineString([(10, 0), (20, 0)])])

        assert find_dangles(index, criteria) == []

    def test_gap_beyond_search_distance(self, criteria):
        index = line_index([LineString([(0, 0), (10, 0)]), LineString([(5, 0.5), (5, 10)])])

        assert find_dangles(index, criteria) == []
        assert len(find_dangles(index, criteria, search_distance=1.0)) == 1
