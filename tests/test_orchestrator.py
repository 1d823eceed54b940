#!/usr/bin/env python3
"""
Tests for the stage orchestrator and findings sink.
"""

from dataclasses import replace

import pytest

from spatialqc.criteria import GeometryCriteria, RuleSet
from spatialqc.eta import StageHistory
from spatialqc.models import Finding, LocationStatus, Severity, UnitStatus
from spatialqc.orchestrator import StageOrchestrator
from spatialqc.scheduler import CancellationToken
from spatialqc.sink import FindingsSink

RULES = {
    "tables": [
        {
            "table": "parcels",
            "geometry_type": "Polygon",
            "fields": [
                {"name": "parcel_id", "dtype": "string"},
                {"name": "area_ha", "dtype": "integer"},
                {"name": "owner", "dtype": "string"},
            ],
        },
        {"table": "roads", "geometry_type": "LineString"},
        {"table": "buildings", "geometry_type": "Polygon"},
    ],
    "relations": [
        {"case": "polygon_not_contain_point", "main_table": "parcels", "related_table": "wells"},
    ],
    "attributes": [
        {"table": "parcels", "field": "land_use", "check": "codelist", "value": ["RES", "COM"]},
    ],
    "attribute_relations": [
        {"case": "connected_lines_same_attribute", "main_table": "roads", "field": "road_class"},
    ],
}

EXPECTED_CODES = {
    "TABLE_MISSING": 1,
    "TABLE_UNDECLARED": 1,
    "SCHEMA_TYPE_MISMATCH": 1,
    "SCHEMA_FIELD_MISSING": 1,
    "GEOM_SLIVER": 1,
    "GEOM_SMALL_AREA": 1,
    "GEOM_SPIKE": 1,
    "GEOM_DUPLICATE": 1,
    "GEOM_OVERLAP": 1,
    "GEOM_UNDERSHOOT": 1,
    "REL_POLYGON_CONTAINS_POINT": 1,
    "ATTR_CODELIST": 1,
}


@pytest.fixture
def rules():
    return RuleSet.from_dict(RULES)


def run(source, rules, performance, criteria=None, token=None, **kwargs):
    orchestrator = StageOrchestrator(
        source, rules=rules, criteria=criteria or GeometryCriteria(), performance=performance, **kwargs
    )
    return orchestrator, orchestrator.run(token)


def by_code(orchestrator, code):
    return [f for f in orchestrator.sink.findings() if f.code == code]


class TestFullRun:
    """All five stages over the sample dataset."""

    @pytest.mark.parametrize("strategy", ["grid", "rtree", "quadtree"])
    def test_findings_by_code(self, source, rules, performance, strategy):
        orchestrator, summary = run(source, rules, replace(performance, index_strategy=strategy))

        assert summary.by_code == EXPECTED_CODES
        assert summary.located == 8
        assert summary.unlocated == 4
        assert not summary.failed_units
        assert not summary.cancelled

    def test_no_pending_findings(self, source, rules, performance):
        orchestrator, _ = run(source, rules, performance)

        for finding in orchestrator.sink.findings():
            assert finding.status is not LocationStatus.PENDING
            if finding.status is LocationStatus.UNLOCATED:
                assert finding.location is None
            else:
                assert finding.location is not None

    def test_needle_sliver_location(self, source, rules, performance):
        orchestrator, _ = run(source, rules, performance)

        slivers = by_code(orchestrator, "GEOM_SLIVER")
        assert len(slivers) == 1
        assert slivers[0].fid == 2
        assert slivers[0].location == (10.0, 0.0)

    def test_locations_from_each_source(self, source, rules, performance):
        orchestrator, _ = run(source, rules, performance)

        assert by_code(orchestrator, "GEOM_UNDERSHOOT")[0].location == pytest.approx((25.0, 50.025))
        assert by_code(orchestrator, "GEOM_OVERLAP")[0].location == pytest.approx((201.0, 201.0))
        assert by_code(orchestrator, "REL_POLYGON_CONTAINS_POINT")[0].location == (101.0, 101.0)
        # attribute findings are placed from the feature geometry
        assert by_code(orchestrator, "ATTR_CODELIST")[0].location == (202.0, 202.0)
        assert by_code(orchestrator, "TABLE_MISSING")[0].status is LocationStatus.UNLOCATED

    def test_stage_order_in_units(self, source, rules, performance):
        _, summary = run(source, rules, performance)

        stages = []
        for unit in summary.units:
            if not stages or stages[-1] != unit.stage:
                stages.append(unit.stage)
        assert stages == ["table", "schema", "geometry", "relation", "attribute"]

    def test_without_rules_checks_every_table(self, source, performance):
        orchestrator, summary = run(source, RuleSet(), performance)

        assert {u.name for u in summary.units if u.stage == "geometry"} == {"parcels", "roads", "wells"}
        assert "TABLE_MISSING" not in summary.by_code
        assert summary.by_code["GEOM_DUPLICATE"] == 1


class TestFailuresAndCancellation:
    def test_invalid_criteria_fail_dependent_stages(self, source, rules, performance):
        criteria = GeometryCriteria(spike_angle_threshold=0.0)

        orchestrator, summary = run(source, rules, performance, criteria=criteria)

        failed = {(u.stage, u.name) for u in summary.failed_units}
        assert failed == {
            ("geometry", "parcels"),
            ("geometry", "roads"),
            ("relation", "polygon_not_contain_point:parcels->wells"),
        }
        assert all("spike_angle_threshold" in u.error for u in summary.failed_units)
        assert summary.by_code["ATTR_CODELIST"] == 1
        assert summary.by_code["TABLE_MISSING"] == 1
        assert not any(code.startswith("GEOM_") for code in summary.by_code)

    def test_failing_unit_does_not_stop_stage(self, source, performance):
        rules = RuleSet.from_dict(
            {
                "relations": [
                    {"case": "point_inside_polygon", "main_table": "wells", "related_table": "rivers"},
                    {"case": "polygon_not_contain_point", "main_table": "parcels", "related_table": "wells"},
                ]
            }
        )

        _, summary = run(source, rules, performance)

        statuses = {u.name: u.status for u in summary.units if u.stage == "relation"}
        assert statuses["point_inside_polygon:wells->rivers"] is UnitStatus.FAILED
        assert statuses["polygon_not_contain_point:parcels->wells"] is UnitStatus.COMPLETED
        assert summary.by_code["REL_POLYGON_CONTAINS_POINT"] == 1

    def test_pre_cancelled_run(self, source, rules, performance):
        token = CancellationToken()
        token.cancel()

        orchestrator, summary = run(source, rules, performance, token=token)

        assert summary.cancelled
        assert summary.total_findings == 0
        assert summary.units
        assert all(u.status is UnitStatus.CANCELLED for u in summary.units)

    def test_cancelled_run_records_no_history(self, source, rules, performance, tmp_path):
        history = StageHistory(tmp_path / "history.yaml")
        token = CancellationToken()
        token.cancel()

        run(source, rules, performance, token=token, history=history)

        assert history.load() == {}

    def test_summary_dict(self, source, rules, performance):
        _, summary = run(source, rules, performance)

        data = summary.to_dict()
        assert data["total_findings"] == 12
        assert data["failed_units"] == []


class TestStageHistory:
    def test_durations_seed_next_run(self, source, rules, performance, tmp_path):
        path = tmp_path / "history.yaml"
        settings = replace(performance, history_file=str(path))

        first, _ = run(source, rules, settings)

        recorded = StageHistory(path).load()
        assert set(recorded) <= set(first.stage_durations)
        assert {"table", "geometry", "relation", "attribute"} <= set(recorded)

        second = StageOrchestrator(source, rules=rules, performance=settings)
        assert set(second.estimator.predictions) == set(recorded)
        assert second.estimator.estimate_stage("geometry").remaining_seconds == pytest.approx(
            recorded["geometry"][0]
        )


class TestFindingsSink:
    def test_rejects_pending_findings(self):
        sink = FindingsSink()

        with pytest.raises(ValueError):
            sink.append(Finding(code="X", severity=Severity.ERROR, table="t", fid=1))
        assert len(sink) == 0

    def test_geodataframe_leaves_unlocated_empty(self, source, rules, performance):
        orchestrator, _ = run(source, rules, performance)

        gdf = orchestrator.sink.to_geodataframe()

        unlocated = gdf[gdf["status"] == "unlocated"]
        assert len(unlocated) == 4
        assert unlocated.geometry.isna().all()
        assert gdf[gdf["status"] == "located"].geometry.notna().all()
