"""
Geometry Validators
===================

Per-feature geometry quality checks. Each validator turns one geometry
into zero or more Findings and pins every Finding to the exact offending
coordinate where the check can name one.

Validators:
- ValidityValidator: OGC validity, with the violation kind classified
- SimplicityValidator: self-intersecting lines and repeated points
- SpikeValidator: vertices with a very sharp interior angle
- SliverValidator: thin polygons (small, non-compact and elongated)
- ShortLineValidator / SmallAreaValidator: features below size thresholds
- MinimumVertexValidator: too few distinct vertices or unclosed rings

Undershoot and overshoot detection needs neighbouring lines and works on
spatial indexes instead of single geometries (``find_dangles``).

Author: SpatialQC Team
License: MIT
Version: 1.0.0
"""

import logging
import math
import re
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from shapely.geometry import LineString, Point
from shapely.ops import nearest_points, unary_union
from shapely.validation import explain_validity

from .criteria import GeometryCheckConfig, GeometryCriteria
from .geometry import (
    envelope_center,
    first_vertex,
    iter_parts,
    line_midpoint_vertex,
    line_parts,
    ring_midpoint,
)
from .models import Coordinate, Envelope, FeatureRef, Finding, Severity
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)

CLOSED_RING_TOLERANCE = 1e-9

_REASON_COORDINATE = re.compile(r"\[\s*([-+0-9.eEinfaINFA]+)[\s,]+([-+0-9.eEinfaINFA]+)")

AREA_TYPES = ("Polygon", "MultiPolygon")
LINE_TYPES = ("LineString", "MultiLineString")


def classify_validity(reason: str) -> str:
    """
    Classify a GEOS validity explanation.

    Returns:
        One of ``ring_self_intersection``, ``self_intersection``,
        ``ring_not_closed``, ``hole_outside_shell``, ``nested_holes``,
        ``nested_shells``, ``disconnected_interior``, ``too_few_points``,
        ``invalid_coordinate``, ``duplicate_rings`` or ``unknown``
    """
    text = reason.lower()
    if "ring self-intersection" in text or "ring self intersection" in text:
        return "ring_self_intersection"
    if "self-intersection" in text or "self intersection" in text:
        return "self_intersection"
    if "not closed" in text:
        return "ring_not_closed"
    if "hole" in text and ("outside" in text or "exterior" in text):
        return "hole_outside_shell"
    if "nested hole" in text or "holes are nested" in text:
        return "nested_holes"
    if "nested shell" in text:
        return "nested_shells"
    if "disconnected" in text:
        return "disconnected_interior"
    if "too few points" in text:
        return "too_few_points"
    if "invalid coordinate" in text or re.search(r"\b(nan|inf)\b", text):
        return "invalid_coordinate"
    if "duplicate ring" in text:
        return "duplicate_rings"
    return "unknown"


def reason_coordinate(reason: str) -> Optional[Coordinate]:
    """Extract the ``[x y]`` coordinate from a GEOS validity explanation."""
    match = _REASON_COORDINATE.search(reason or "")
    if not match:
        return None
    try:
        coordinate = Coordinate(float(match.group(1)), float(match.group(2)))
    except ValueError:
        return None
    return coordinate if coordinate.is_finite() else None


def self_intersection_nodes(geom) -> List[Coordinate]:
    """
    Points where a lineal geometry touches or crosses itself.

    The geometry is noded with a unary union; any node shared by three or
    more segment ends is a self-intersection.
    """
    lines = line_parts(geom)
    if not lines:
        return []
    counts: Counter = Counter()
    for part in line_parts(unary_union(geom)):
        coords = part.coords
        counts[tuple(coords[0][:2])] += 1
        counts[tuple(coords[-1][:2])] += 1
    return [Coordinate(*xy) for xy, count in counts.items() if count >= 3]


def is_closed(coords: Sequence, tolerance: float = CLOSED_RING_TOLERANCE) -> bool:
    if len(coords) < 2:
        return False
    first, last = coords[0], coords[-1]
    return math.hypot(first[0] - last[0], first[1] - last[1]) <= tolerance


def distinct_vertex_count(coords: Sequence, tolerance: float) -> int:
    """Count vertices that differ by more than ``tolerance``, ignoring a closing vertex."""
    points = [tuple(c[:2]) for c in coords]
    if len(points) > 1 and is_closed(points, tolerance):
        points = points[:-1]
    if tolerance > 0:
        keys = {(round(x / tolerance), round(y / tolerance)) for x, y in points}
    else:
        keys = set(points)
    return len(keys)


def check_ring_coordinates(coords: Sequence, tolerance: float) -> Optional[str]:
    """
    Check a raw ring coordinate sequence.

    Args:
        coords: Ring coordinates, closing vertex included
        tolerance: Closure and distinctness tolerance

    Returns:
        A description of the violation, or None when the ring is acceptable
    """
    if not is_closed(coords, tolerance):
        return "ring is not closed"
    distinct = distinct_vertex_count(coords, tolerance)
    if distinct < 3:
        return f"ring has {distinct} distinct vertices, at least 3 required"
    return None


def vertex_angles(coords: Sequence, closed: bool) -> List[Tuple[int, float]]:
    """
    Interior angle in degrees at each vertex that has two neighbours.

    Closed rings use circular neighbours so the first vertex is measured
    against the last distinct one. Open lines skip their endpoints. A
    zero-length neighbour segment yields 180 degrees.
    """
    pts = np.asarray([c[:2] for c in coords], dtype=float)
    if closed:
        pts = pts[:-1]
    n = len(pts)
    if n < 3:
        return []
    prev_pts = np.roll(pts, 1, axis=0)
    next_pts = np.roll(pts, -1, axis=0)
    v1 = prev_pts - pts
    v2 = next_pts - pts
    norms = np.linalg.norm(v1, axis=1) * np.linalg.norm(v2, axis=1)
    dots = np.einsum("ij,ij->i", v1, v2)
    with np.errstate(divide="ignore", invalid="ignore"):
        cosines = np.clip(dots / norms, -1.0, 1.0)
    angles = np.degrees(np.arccos(cosines))
    angles[norms == 0] = 180.0
    indices = range(n) if closed else range(1, n - 1)
    return [(i, float(angles[i])) for i in indices]


class GeometryValidator:
    """Base class for single-geometry validators."""

    code = ""
    severity = Severity.ERROR
    geometry_types: Tuple[str, ...] = ()

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def applies_to(self, geom) -> bool:
        return not self.geometry_types or geom.geom_type in self.geometry_types

    def validate(self, ref: FeatureRef, geom, criteria: GeometryCriteria) -> List[Finding]:
        if geom is None or geom.is_empty or not self.applies_to(geom):
            return []
        return self._validate(ref, geom, criteria)

    def _validate(self, ref: FeatureRef, geom, criteria: GeometryCriteria) -> List[Finding]:
        raise NotImplementedError

    def _finding(self, ref: FeatureRef, message: str, **kwargs) -> Finding:
        return Finding(
            code=self.code,
            severity=self.severity,
            table=ref.table,
            fid=ref.fid,
            message=message,
            **kwargs,
        )


class ValidityValidator(GeometryValidator):
    code = "GEOM_INVALID"

    def _validate(self, ref, geom, criteria):
        if geom.is_valid:
            return []
        reason = explain_validity(geom)
        kind = classify_validity(reason)
        location = reason_coordinate(reason) or envelope_center(geom)
        self.logger.debug(f"{ref.table}:{ref.fid} invalid ({kind}): {reason}")
        return [
            self._finding(
                ref,
                f"Invalid geometry: {reason}",
                location=location,
                anchor=Point(location) if location else None,
                details={"violation": kind, "reason": reason},
            )
        ]


class SimplicityValidator(GeometryValidator):
    """Lines must not cross or touch themselves; multipoints must not repeat."""

    code = "GEOM_NOT_SIMPLE"
    geometry_types = LINE_TYPES + ("MultiPoint",)

    def _validate(self, ref, geom, criteria):
        if geom.is_simple:
            return []
        if geom.geom_type == "MultiPoint":
            seen = Counter(tuple(p.coords[0][:2]) for p in geom.geoms)
            nodes = [Coordinate(*xy) for xy, count in seen.items() if count > 1]
        else:
            nodes = self_intersection_nodes(geom)
        location = nodes[0] if nodes else envelope_center(geom)
        return [
            self._finding(
                ref,
                "Geometry is not simple",
                location=location,
                anchor=Point(location) if location else None,
                details={"intersections": len(nodes)},
            )
        ]


class SpikeValidator(GeometryValidator):
    code = "GEOM_SPIKE"
    severity = Severity.WARNING
    geometry_types = LINE_TYPES + AREA_TYPES

    def _sequences(self, geom):
        for part in iter_parts(geom):
            if part.geom_type == "Polygon":
                yield part.exterior.coords, True
                for interior in part.interiors:
                    yield interior.coords, True
            else:
                coords = part.coords
                yield coords, is_closed(coords)

    def _validate(self, ref, geom, criteria):
        candidates = []
        for coords, closed in self._sequences(geom):
            for i, angle in vertex_angles(coords, closed):
                if angle < criteria.spike_angle_threshold:
                    candidates.append((angle, Coordinate(coords[i][0], coords[i][1])))
        if not candidates:
            return []
        if not criteria.report_all_spikes:
            candidates = [min(candidates, key=lambda c: c[0])]
        return [
            self._finding(
                ref,
                f"Spike with interior angle {angle:.3f} degrees",
                location=vertex,
                anchor=Point(vertex),
                details={"angle": angle},
            )
            for angle, vertex in candidates
        ]


def sliver_metrics(geom) -> Optional[Dict[str, float]]:
    """Area, perimeter, compactness and elongation of a polygonal geometry."""
    area = geom.area
    perimeter = geom.length
    if area <= 0 or perimeter <= 0:
        return None
    shape_index = 4.0 * math.pi * area / (perimeter * perimeter)
    return {
        "area": area,
        "perimeter": perimeter,
        "shape_index": shape_index,
        "elongation": 1.0 / shape_index,
    }


class SliverValidator(GeometryValidator):
    code = "GEOM_SLIVER"
    severity = Severity.WARNING
    geometry_types = AREA_TYPES

    def _validate(self, ref, geom, criteria):
        metrics = sliver_metrics(geom)
        if metrics is None:
            return []
        if not (
            metrics["area"] < criteria.sliver_area
            and metrics["shape_index"] < criteria.sliver_shape_index
            and metrics["elongation"] > criteria.sliver_elongation
        ):
            return []
        location = ring_midpoint(geom) or envelope_center(geom)
        return [
            self._finding(
                ref,
                f"Sliver polygon (area {metrics['area']:.6g}, "
                f"shape index {metrics['shape_index']:.4g}, "
                f"elongation {metrics['elongation']:.4g})",
                location=location,
                details=metrics,
            )
        ]


class ShortLineValidator(GeometryValidator):
    code = "GEOM_SHORT_LINE"
    severity = Severity.WARNING
    geometry_types = LINE_TYPES

    def _validate(self, ref, geom, criteria):
        length = geom.length
        if not 0 < length < criteria.min_line_length:
            return []
        return [
            self._finding(
                ref,
                f"Line length {length:.6g} below {criteria.min_line_length}",
                location=line_midpoint_vertex(geom) or envelope_center(geom),
                details={"length": length},
            )
        ]


class SmallAreaValidator(GeometryValidator):
    code = "GEOM_SMALL_AREA"
    severity = Severity.WARNING
    geometry_types = AREA_TYPES

    def _validate(self, ref, geom, criteria):
        area = geom.area
        if not 0 < area < criteria.min_polygon_area:
            return []
        return [
            self._finding(
                ref,
                f"Polygon area {area:.6g} below {criteria.min_polygon_area}",
                location=envelope_center(geom),
                details={"area": area},
            )
        ]


class MinimumVertexValidator(GeometryValidator):
    """Points need one vertex, lines two distinct vertices, rings three."""

    code = "GEOM_MIN_VERTEX"

    def _problems(self, geom, tolerance: float) -> List[str]:
        problems = []
        for part in iter_parts(geom):
            geom_type = part.geom_type
            if geom_type == "Point":
                if len(part.coords) < 1:
                    problems.append("point without coordinates")
            elif geom_type in ("LineString", "LinearRing"):
                distinct = distinct_vertex_count(part.coords, 0.0)
                if distinct < 2:
                    problems.append(f"line has {distinct} distinct vertices, at least 2 required")
            elif geom_type == "Polygon":
                for ring in [part.exterior, *part.interiors]:
                    problem = check_ring_coordinates(ring.coords, tolerance)
                    if problem:
                        problems.append(problem)
        return problems

    def _validate(self, ref, geom, criteria):
        problems = self._problems(geom, criteria.ring_closure_tolerance)
        if not problems:
            return []
        return [
            self._finding(
                ref,
                f"Too few vertices: {problems[0]}",
                location=first_vertex(geom) or envelope_center(geom),
                details={"problems": problems},
            )
        ]


VALIDATORS: Dict[str, GeometryValidator] = {
    "validity": ValidityValidator(),
    "simplicity": SimplicityValidator(),
    "spike": SpikeValidator(),
    "sliver": SliverValidator(),
    "short_line": ShortLineValidator(),
    "small_area": SmallAreaValidator(),
    "min_vertex": MinimumVertexValidator(),
}


def validate_feature(
    ref: FeatureRef,
    geom,
    criteria: GeometryCriteria,
    checks: Optional[GeometryCheckConfig] = None,
) -> List[Finding]:
    """
    Run every enabled single-geometry validator on one feature.

    A null or empty geometry yields a single GEOM_EMPTY finding.
    """
    if geom is None or geom.is_empty:
        return [
            Finding(
                code="GEOM_EMPTY",
                severity=Severity.ERROR,
                table=ref.table,
                fid=ref.fid,
                message="Feature has no geometry",
            )
        ]
    checks = checks or GeometryCheckConfig()
    findings = []
    for name, validator in VALIDATORS.items():
        if getattr(checks, name, True):
            findings.extend(validator.validate(ref, geom, criteria))
    return findings


def _endpoints(geom) -> List[Tuple[float, float]]:
    points = []
    for part in line_parts(geom):
        coords = part.coords
        if len(coords) < 2 or is_closed(coords, 0.0):
            continue
        points.append(tuple(coords[0][:2]))
        points.append(tuple(coords[-1][:2]))
    return points


def find_dangles(
    lines: SpatialIndex,
    criteria: GeometryCriteria,
    targets: Optional[SpatialIndex] = None,
    search_distance: Optional[float] = None,
) -> List[Finding]:
    """
    Find undershoots and overshoots between line features.

    An endpoint is dangling when no other line lies within
    ``endpoint_snap_tolerance`` of it. For each dangling endpoint the
    nearest other line within ``search_distance`` is located; if the
    nearest point is that line's own endpoint the finding is an overshoot,
    otherwise an undershoot. The finding sits at the midpoint of the gap
    and its anchor is the connecting segment.

    Args:
        lines: Index over the lines whose endpoints are tested
        criteria: Thresholds (snap tolerance, default search distance)
        targets: Index over the lines to connect to (defaults to ``lines``)
        search_distance: Gap size searched (defaults to network_search_distance)

    Returns:
        List of GEOM_UNDERSHOOT / GEOM_OVERSHOOT findings
    """
    targets = targets if targets is not None else lines
    distance = criteria.network_search_distance if search_distance is None else search_distance
    snap = criteria.endpoint_snap_tolerance
    findings = []
    reported = set()
    for entry in lines.entries():
        for xy in _endpoints(entry.geometry):
            point = Point(xy)
            window = Envelope(xy[0], xy[1], xy[0], xy[1]).expand(distance)
            others = [c for c in targets.query(window) if c.ref != entry.ref]
            if not others:
                continue
            distances = [(c.geometry.distance(point), c) for c in others]
            if any(d <= snap for d, _ in distances):
                continue
            gap, nearest = min(distances, key=lambda item: (item[0], item[1].seq))
            if gap > distance:
                continue
            near = nearest_points(point, nearest.geometry)[1]
            near_xy = (near.x, near.y)
            key = frozenset(((round(xy[0], 12), round(xy[1], 12)), (round(near.x, 12), round(near.y, 12))))
            if key in reported:
                continue
            reported.add(key)
            at_endpoint = any(
                math.hypot(near.x - ex, near.y - ey) <= snap
                for ex, ey in _endpoints(nearest.geometry)
            )
            code = "GEOM_OVERSHOOT" if at_endpoint else "GEOM_UNDERSHOOT"
            midpoint = Coordinate((xy[0] + near.x) / 2.0, (xy[1] + near.y) / 2.0)
            findings.append(
                Finding(
                    code=code,
                    severity=Severity.WARNING,
                    table=entry.ref.table,
                    fid=entry.ref.fid,
                    target_table=nearest.ref.table,
                    target_fid=nearest.ref.fid,
                    message=f"Line end {gap:.6g} away from feature {nearest.ref.fid}",
                    location=midpoint,
                    anchor=LineString([xy, near_xy]),
                    details={"gap": gap},
                )
            )
    logger.debug(f"Dangle search over {len(lines)} lines found {len(findings)}")
    return findings
