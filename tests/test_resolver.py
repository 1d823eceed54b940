#!/usr/bin/env python3
"""
Tests for the error-location resolver.
"""

import math
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest
from shapely.geometry import LineString, box

from spatialqc.exceptions import SourceAccessError
from spatialqc.models import Coordinate, Finding, GeometryKind, LocationStatus, Severity
from spatialqc.resolver import ErrorLocationResolver


def make_finding(**kwargs):
    defaults = {"code": "TEST", "severity": Severity.ERROR, "table": "parcels", "fid": 1}
    defaults.update(kwargs)
    return Finding(**defaults)


class TestResolutionTiers:
    """Tiers are tried in order and the first usable one wins."""

    def test_anchor_line_half_length(self):
        resolver = ErrorLocationResolver()

        result = resolver.resolve(make_finding(anchor=LineString([(0, 0), (2, 0)])))

        assert result.status is LocationStatus.LOCATED
        assert result.location == (1.0, 0.0)
        assert result.kind is GeometryKind.LINE
        assert resolver.stats()["anchor"] == 1

    def test_explicit_location_preferred_over_anchor(self):
        resolver = ErrorLocationResolver()

        result = resolver.resolve(make_finding(location=Coordinate(1.2, 1.7), anchor=box(1, 1, 2, 2)))

        assert result.location == (1.2, 1.7)
        assert result.kind is GeometryKind.POLYGON
        assert result.anchor.equals(box(1, 1, 2, 2))

    def test_wkt(self):
        resolver = ErrorLocationResolver()

        result = resolver.resolve(make_finding(geometry_wkt="POINT (3 4)"))

        assert result.location == (3.0, 4.0)
        assert result.kind is GeometryKind.POINT
        assert resolver.stats()["wkt"] == 1

    def test_unparseable_wkt_falls_through(self):
        resolver = ErrorLocationResolver()

        result = resolver.resolve(make_finding(geometry_wkt="NOT A GEOMETRY", location=Coordinate(5, 6)))

        assert result.location == (5.0, 6.0)
        assert resolver.stats()["coordinate"] == 1

    def test_origin_is_a_real_location(self):
        result = ErrorLocationResolver().resolve(make_finding(location=Coordinate(0.0, 0.0)))

        assert result.status is LocationStatus.LOCATED
        assert result.location == (0.0, 0.0)

    def test_non_finite_coordinate_skipped(self):
        result = ErrorLocationResolver().resolve(make_finding(location=Coordinate(math.nan, 1.0)))

        assert result.status is LocationStatus.UNLOCATED
        assert result.location is None

    def test_source_fetch(self, source):
        resolver = ErrorLocationResolver(source)

        result = resolver.resolve(make_finding(table="parcels", fid=1))

        assert result.location == (102.0, 102.0)
        assert result.kind is GeometryKind.POLYGON
        assert resolver.stats()["source"] == 1

    def test_source_point_on_origin(self, source):
        result = ErrorLocationResolver(source).resolve(make_finding(table="wells", fid=2))

        assert result.status is LocationStatus.LOCATED
        assert result.location == (0.0, 0.0)


class TestUnlocated:
    """Findings without a usable location are never given a made-up one."""

    def test_source_error_gives_unlocated(self):
        failing = Mock()
        failing.fetch_feature.side_effect = SourceAccessError("dataset gone")
        resolver = ErrorLocationResolver(failing)

        result = resolver.resolve(make_finding())

        failing.fetch_feature.assert_called_once_with("parcels", 1)
        assert result.status is LocationStatus.UNLOCATED
        assert result.location is None
        assert resolver.stats()["unlocated"] == 1

    def test_missing_feature(self, source):
        result = ErrorLocationResolver(source).resolve(make_finding(fid=999))

        assert result.status is LocationStatus.UNLOCATED

    def test_unknown_table(self, source):
        result = ErrorLocationResolver(source).resolve(make_finding(table="rivers"))

        assert result.status is LocationStatus.UNLOCATED

    def test_table_level_finding(self, source):
        result = ErrorLocationResolver(source).resolve(make_finding(table="parcels", fid=None))

        assert result.status is LocationStatus.UNLOCATED

    def test_unlocated_is_terminal(self, source):
        resolver = ErrorLocationResolver(source)
        unlocated = make_finding(fid=1).unlocated()

        assert resolver.resolve(unlocated) is unlocated
        assert sum(resolver.stats().values()) == 0

    def test_resolve_all_keeps_order(self):
        findings = [make_finding(fid=i, location=Coordinate(i, i)) for i in range(3)]

        resolved = ErrorLocationResolver().resolve_all(findings)

        assert [f.fid for f in resolved] == [0, 1, 2]
        assert all(f.is_located for f in resolved)

    def test_stats_counted_across_threads(self):
        resolver = ErrorLocationResolver()
        batches = [[make_finding(fid=i, location=Coordinate(i, i)) for i in range(500)] for _ in range(8)]

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(resolver.resolve_all, batches))

        assert resolver.stats()["coordinate"] == 4000


@pytest.mark.parametrize("status", [LocationStatus.LOCATED, LocationStatus.UNLOCATED])
def test_resolved_findings_untouched(status):
    finding = make_finding(status=status, location=Coordinate(1, 1) if status is LocationStatus.LOCATED else None)

    assert ErrorLocationResolver().resolve(finding) is finding
