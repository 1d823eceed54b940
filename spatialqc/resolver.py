"""
Error Location Resolver
=======================

Turns raw Findings into Located or Unlocated Findings.

Resolution tiers, tried in order:
1. the validator's anchor geometry
2. the geometry WKT carried by the finding
3. the validator's explicit coordinate
4. the feature geometry re-read from the source by table and id
5. Unlocated

A finding never receives a coordinate it did not earn. ``None`` is the
only "unknown" marker; ``(0, 0)`` is a real place.
"""

import logging
import threading
from collections import Counter
from typing import Dict, Iterable, List, Optional

from shapely import wkt
from shapely.errors import ShapelyError

from .exceptions import SourceAccessError
from .geometry import anchor_coordinate, is_usable, representative_coordinate
from .models import Coordinate, Finding, GeometryKind, LocationStatus
from .source import GeometrySource


class ErrorLocationResolver:
    """
    Best-effort locator for findings.

    Args:
        source: Geometry source used for the fetch-by-id tier (optional)
        logger: Logger instance for output
    """

    TIERS = ("anchor", "wkt", "coordinate", "source", "unlocated")

    def __init__(
        self,
        source: Optional[GeometrySource] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.source = source
        self.logger = logger or logging.getLogger(__name__)
        self._stats: Counter = Counter()
        self._lock = threading.Lock()

    def stats(self) -> Dict[str, int]:
        """Number of findings resolved by each tier."""
        with self._lock:
            return {tier: self._stats.get(tier, 0) for tier in self.TIERS}

    def resolve_all(self, findings: Iterable[Finding]) -> List[Finding]:
        return [self.resolve(f) for f in findings]

    def resolve(self, finding: Finding) -> Finding:
        """
        Resolve one finding.

        Already resolved findings are returned unchanged; Unlocated is
        terminal.
        """
        if finding.status is not LocationStatus.PENDING:
            return finding

        for tier, attempt in (
            ("anchor", self._from_anchor),
            ("wkt", self._from_wkt),
            ("coordinate", self._from_coordinate),
            ("source", self._from_source),
        ):
            try:
                located = attempt(finding)
            except (SourceAccessError, ShapelyError, ValueError, TypeError, AttributeError) as e:
                self.logger.debug(f"Tier '{tier}' failed for {finding.code} {finding.ref}: {e}")
                continue
            if located is not None:
                self._count(tier)
                return located

        self._count("unlocated")
        return finding.unlocated()

    def _count(self, tier: str) -> None:
        with self._lock:
            self._stats[tier] += 1

    @staticmethod
    def _explicit(finding: Finding) -> Optional[Coordinate]:
        if finding.location is None:
            return None
        coordinate = Coordinate(float(finding.location[0]), float(finding.location[1]))
        return coordinate if coordinate.is_finite() else None

    def _from_geometry(self, finding: Finding, geom) -> Optional[Finding]:
        if not is_usable(geom):
            return None
        coordinate = self._explicit(finding) or anchor_coordinate(geom)
        if coordinate is None:
            return None
        return finding.located(coordinate, GeometryKind.from_geometry(geom), anchor=geom)

    def _from_anchor(self, finding: Finding) -> Optional[Finding]:
        if finding.anchor is None:
            return None
        return self._from_geometry(finding, finding.anchor)

    def _from_wkt(self, finding: Finding) -> Optional[Finding]:
        if not finding.geometry_wkt:
            return None
        return self._from_geometry(finding, wkt.loads(finding.geometry_wkt))

    def _from_coordinate(self, finding: Finding) -> Optional[Finding]:
        coordinate = self._explicit(finding)
        if coordinate is None:
            return None
        return finding.located(coordinate, GeometryKind.POINT)

    def _from_source(self, finding: Finding) -> Optional[Finding]:
        if self.source is None or finding.fid is None or not finding.table:
            return None
        geom = self.source.fetch_feature(finding.table, finding.fid)
        if not is_usable(geom):
            return None
        coordinate = representative_coordinate(geom)
        if coordinate is None:
            return None
        return finding.located(coordinate, GeometryKind.from_geometry(geom))
