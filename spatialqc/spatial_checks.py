"""
Index-Driven Spatial Checks
===========================

Duplicate and overlap detection within one table. Candidates come from a
spatial index; exact geometric tests decide. Each pair is reported once,
on the later feature, referencing the earlier one.
"""

import logging
from typing import List, Optional

from shapely.errors import GEOSException

from .geometry import anchor_coordinate, lineal, polygonal
from .models import Finding, Severity
from .spatial_index import IndexEntry, SpatialIndex

logger = logging.getLogger(__name__)


def is_duplicate(a, b, tolerance: float) -> bool:
    """True when ``b`` repeats ``a`` exactly or within ``tolerance`` Hausdorff distance."""
    if a.geom_type != b.geom_type:
        return False
    try:
        if a.equals(b):
            return True
    except GEOSException:
        pass
    return a.hausdorff_distance(b) < tolerance


def find_duplicates(
    index: SpatialIndex,
    tolerance: float,
    table: Optional[str] = None,
) -> List[Finding]:
    """
    Find duplicated features in an index.

    For each entry in insertion order, the entry's own expanded envelope is
    queried. Unvisited later candidates that duplicate it are reported and
    marked visited, so three mutual duplicates give two findings.

    Args:
        index: Index built over one table
        tolerance: Hausdorff distance below which two geometries are duplicates
        table: Table name for the findings (defaults to the entry's table)

    Returns:
        List of GEOM_DUPLICATE findings
    """
    findings = []
    visited = set()
    for entry in index.entries():
        if entry.ref in visited:
            continue
        for candidate in index.query(entry.envelope.expand(tolerance)):
            if candidate.seq <= entry.seq or candidate.ref in visited:
                continue
            if not is_duplicate(entry.geometry, candidate.geometry, tolerance):
                continue
            visited.add(candidate.ref)
            findings.append(
                Finding(
                    code="GEOM_DUPLICATE",
                    severity=Severity.ERROR,
                    table=table or candidate.ref.table,
                    fid=candidate.ref.fid,
                    target_table=table or entry.ref.table,
                    target_fid=entry.ref.fid,
                    message=f"Duplicate of feature {entry.ref.fid}",
                    anchor=candidate.geometry,
                )
            )
    logger.debug(f"Duplicate search over {len(index)} features found {len(findings)}")
    return findings


def _overlap_geometry(a: IndexEntry, b: IndexEntry, tolerance: float):
    geom_a, geom_b = a.geometry, b.geometry
    area_types = ("Polygon", "MultiPolygon")
    line_types = ("LineString", "MultiLineString")
    if geom_a.geom_type in area_types and geom_b.geom_type in area_types:
        if not geom_a.intersects(geom_b):
            return None, 0.0
        shared = polygonal(geom_a.intersection(geom_b))
        measure = shared.area if shared is not None else 0.0
    elif geom_a.geom_type in line_types and geom_b.geom_type in line_types:
        if not geom_a.intersects(geom_b):
            return None, 0.0
        shared = lineal(geom_a.intersection(geom_b))
        measure = shared.length if shared is not None else 0.0
    else:
        return None, 0.0
    if shared is None or measure <= tolerance:
        return None, measure
    return shared, measure


def find_overlaps(
    index: SpatialIndex,
    tolerance: float,
    table: Optional[str] = None,
) -> List[Finding]:
    """
    Find overlapping polygons (shared area) and lines (shared length).

    Location is the centroid of the shared geometry, which becomes the
    finding's anchor.

    Args:
        index: Index built over one table
        tolerance: Shared area or length that must be exceeded
        table: Table name for the findings

    Returns:
        List of GEOM_OVERLAP findings
    """
    findings = []
    for entry in index.entries():
        for candidate in index.query(entry.envelope):
            if candidate.seq <= entry.seq:
                continue
            try:
                shared, measure = _overlap_geometry(entry, candidate, tolerance)
            except GEOSException as e:
                logger.debug(f"Overlap test skipped for {entry.ref} / {candidate.ref}: {e}")
                continue
            if shared is None:
                continue
            findings.append(
                Finding(
                    code="GEOM_OVERLAP",
                    severity=Severity.ERROR,
                    table=table or candidate.ref.table,
                    fid=candidate.ref.fid,
                    target_table=table or entry.ref.table,
                    target_fid=entry.ref.fid,
                    message=f"Overlaps feature {entry.ref.fid} by {measure:.6g}",
                    location=anchor_coordinate(shared),
                    anchor=shared,
                    details={"overlap": measure},
                )
            )
    return findings
