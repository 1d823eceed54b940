"""
Spatial Relation Rules
======================

Rules between two tables, evaluated in the relation stage. The main
table's features are tested against candidates from a spatial index over
the related table.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from shapely.errors import GEOSException
from shapely.ops import unary_union

from .criteria import GeometryCriteria, RelationRule
from .exceptions import ConfigurationError
from .geometry import anchor_coordinate, lineal, polygonal
from .models import Finding, Severity
from .spatial_index import IndexEntry, SpatialIndex
from .validators import find_dangles


class RelationChecker:
    """
    Evaluate relation rules between two indexed tables.

    Args:
        criteria: Geometry thresholds supplying default tolerances
        logger: Logger instance for output
    """

    def __init__(self, criteria: GeometryCriteria, logger: Optional[logging.Logger] = None):
        self.criteria = criteria
        self.logger = logger or logging.getLogger(__name__)
        self._cases: Dict[str, Callable[[RelationRule, SpatialIndex, SpatialIndex], List[Finding]]] = {
            "point_inside_polygon": self._point_inside_polygon,
            "line_within_polygon": self._line_within_polygon,
            "polygon_within_polygon": self._polygon_within_polygon,
            "polygon_not_overlap": self._polygon_not_overlap,
            "polygon_not_intersect_line": self._polygon_not_intersect_line,
            "polygon_not_contain_point": self._polygon_not_contain_point,
            "line_connectivity": self._line_connectivity,
        }

    def default_tolerance(self, case: str) -> float:
        return {
            "line_within_polygon": self.criteria.line_within_polygon_tolerance,
            "polygon_within_polygon": self.criteria.polygon_within_polygon_tolerance,
            "polygon_not_overlap": self.criteria.overlap_tolerance,
            "line_connectivity": self.criteria.line_connectivity_tolerance,
        }.get(case, 0.0)

    def tolerance(self, rule: RelationRule) -> float:
        return self.default_tolerance(rule.case) if rule.tolerance is None else rule.tolerance

    def check(self, rule: RelationRule, main: SpatialIndex, related: SpatialIndex) -> List[Finding]:
        """
        Evaluate one rule.

        Args:
            rule: Relation rule
            main: Index over the main table
            related: Index over the related table

        Returns:
            Findings on main-table features

        Raises:
            ConfigurationError: If the rule's case is unknown
        """
        try:
            handler = self._cases[rule.case]
        except KeyError:
            raise ConfigurationError(f"Unknown relation case '{rule.case}'")
        findings = handler(rule, main, related)
        self.logger.info(
            f"Relation {rule.case} {rule.main_table} -> {rule.related_table}: "
            f"{len(findings)} findings"
        )
        return findings

    def _run(self, main: SpatialIndex, related: SpatialIndex, test, distance: float = 0.0) -> List[Finding]:
        findings = []
        for entry in main.entries():
            try:
                candidates = [
                    c for c in related.query_geometry(entry.geometry, distance) if c.ref != entry.ref
                ]
                findings.extend(test(entry, candidates))
            except GEOSException as e:
                self.logger.debug(f"Skipped {entry.ref}: {e}")
        return findings

    def _finding(self, code: str, rule: RelationRule, entry: IndexEntry, message: str,
                 target: Optional[IndexEntry] = None, anchor=None, **details) -> Finding:
        return Finding(
            code=code,
            severity=Severity.ERROR,
            table=entry.ref.table,
            fid=entry.ref.fid,
            target_table=target.ref.table if target else rule.related_table,
            target_fid=target.ref.fid if target else None,
            message=message,
            location=anchor_coordinate(anchor) if anchor is not None else None,
            anchor=anchor,
            details=details,
        )

    @staticmethod
    def _outside_part(geom, candidates, tolerance):
        if not candidates:
            return geom
        container = unary_union([c.geometry for c in candidates])
        if tolerance > 0:
            container = container.buffer(tolerance)
        return geom.difference(container)

    def _point_inside_polygon(self, rule, main, related):
        def test(entry, candidates):
            if any(c.geometry.covers(entry.geometry) for c in candidates):
                return []
            return [
                self._finding(
                    "REL_POINT_OUTSIDE_POLYGON", rule, entry,
                    f"Point is not inside any {rule.related_table} polygon",
                    anchor=entry.geometry,
                )
            ]

        return self._run(main, related, test)

    def _line_within_polygon(self, rule, main, related):
        tolerance = self.tolerance(rule)

        def test(entry, candidates):
            outside = lineal(self._outside_part(entry.geometry, candidates, tolerance))
            if outside is None or outside.length <= tolerance:
                return []
            return [
                self._finding(
                    "REL_LINE_OUTSIDE_POLYGON", rule, entry,
                    f"Line leaves {rule.related_table} by {outside.length:.6g}",
                    anchor=outside, length=outside.length,
                )
            ]

        return self._run(main, related, test, tolerance)

    def _polygon_within_polygon(self, rule, main, related):
        tolerance = self.tolerance(rule)

        def test(entry, candidates):
            outside = polygonal(self._outside_part(entry.geometry, candidates, 0.0))
            if outside is None or outside.area <= tolerance:
                return []
            return [
                self._finding(
                    "REL_POLYGON_NOT_WITHIN", rule, entry,
                    f"Polygon extends {outside.area:.6g} outside {rule.related_table}",
                    anchor=outside, area=outside.area,
                )
            ]

        return self._run(main, related, test, tolerance)

    def _polygon_not_overlap(self, rule, main, related):
        tolerance = self.tolerance(rule)
        same_table = rule.main_table == rule.related_table

        def test(entry, candidates):
            found = []
            for candidate in candidates:
                if same_table and candidate.seq <= entry.seq:
                    continue
                if not entry.geometry.intersects(candidate.geometry):
                    continue
                shared = polygonal(entry.geometry.intersection(candidate.geometry))
                if shared is not None and shared.area > tolerance:
                    found.append(
                        self._finding(
                            "REL_POLYGON_OVERLAP", rule, entry,
                            f"Overlaps {candidate.ref.table} feature {candidate.ref.fid}",
                            target=candidate, anchor=shared, area=shared.area,
                        )
                    )
            return found

        return self._run(main, related, test)

    def _polygon_not_intersect_line(self, rule, main, related):
        def test(entry, candidates):
            found = []
            for candidate in candidates:
                line = candidate.geometry
                if not entry.geometry.intersects(line) or entry.geometry.touches(line):
                    continue
                shared = entry.geometry.intersection(line)
                found.append(
                    self._finding(
                        "REL_POLYGON_INTERSECTS_LINE", rule, entry,
                        f"Crossed by {candidate.ref.table} feature {candidate.ref.fid}",
                        target=candidate, anchor=lineal(shared) or shared,
                    )
                )
            return found

        return self._run(main, related, test)

    def _polygon_not_contain_point(self, rule, main, related):
        def test(entry, candidates):
            return [
                self._finding(
                    "REL_POLYGON_CONTAINS_POINT", rule, entry,
                    f"Contains {candidate.ref.table} feature {candidate.ref.fid}",
                    target=candidate, anchor=candidate.geometry,
                )
                for candidate in candidates
                if entry.geometry.contains(candidate.geometry)
            ]

        return self._run(main, related, test)

    def _line_connectivity(self, rule, main, related):
        dangles = find_dangles(main, self.criteria, targets=related, search_distance=self.tolerance(rule))
        return [
            replace(f, code=f.code.replace("GEOM_", "REL_LINE_"), severity=Severity.ERROR)
            for f in dangles
        ]
