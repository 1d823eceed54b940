"""
Geometry Helpers
================

Coordinate derivation shared by validators and the location resolver.
Every helper returns ``None`` instead of a made-up coordinate when the
geometry offers nothing usable.
"""

from typing import Iterator, List, Optional

from shapely.geometry import GeometryCollection, MultiLineString, MultiPolygon
from shapely.geometry.base import BaseGeometry

from .models import Coordinate, Envelope


def is_usable(geom) -> bool:
    return isinstance(geom, BaseGeometry) and not geom.is_empty


def _coordinate(xy) -> Optional[Coordinate]:
    coordinate = Coordinate(float(xy[0]), float(xy[1]))
    return coordinate if coordinate.is_finite() else None


def iter_parts(geom) -> Iterator[BaseGeometry]:
    """Yield the single-part components of a geometry."""
    if geom is None or geom.is_empty:
        return
    if hasattr(geom, "geoms"):
        for part in geom.geoms:
            yield from iter_parts(part)
    else:
        yield geom


def polygon_parts(geom) -> List[BaseGeometry]:
    return [p for p in iter_parts(geom) if p.geom_type == "Polygon"]


def line_parts(geom) -> List[BaseGeometry]:
    return [p for p in iter_parts(geom) if p.geom_type in ("LineString", "LinearRing")]


def polygonal(geom) -> Optional[BaseGeometry]:
    """Polygonal part of a (possibly mixed) geometry, or None."""
    parts = polygon_parts(geom)
    if not parts:
        return None
    return parts[0] if len(parts) == 1 else MultiPolygon(parts)


def lineal(geom) -> Optional[BaseGeometry]:
    parts = line_parts(geom)
    if not parts:
        return None
    return parts[0] if len(parts) == 1 else MultiLineString(parts)


def envelope_center(geom) -> Optional[Coordinate]:
    if not is_usable(geom):
        return None
    return _coordinate(Envelope.of(geom).center)


def first_vertex(geom) -> Optional[Coordinate]:
    for part in iter_parts(geom):
        if part.geom_type == "Polygon":
            coords = part.exterior.coords
        else:
            coords = part.coords
        if len(coords) > 0:
            return _coordinate(coords[0])
    return None


def line_midpoint_vertex(geom) -> Optional[Coordinate]:
    """Middle vertex (``coords[n // 2]``) of the first line part."""
    for part in line_parts(geom):
        coords = part.coords
        if len(coords) > 0:
            return _coordinate(coords[len(coords) // 2])
    return None


def ring_midpoint(geom) -> Optional[Coordinate]:
    """Middle vertex of the first polygon's exterior ring."""
    for part in polygon_parts(geom):
        coords = part.exterior.coords
        if len(coords) > 0:
            return _coordinate(coords[len(coords) // 2])
    return None


def representative_coordinate(geom) -> Optional[Coordinate]:
    """
    Coordinate used to place a feature on a map.

    First point for points, middle vertex for lines, exterior ring
    midpoint for polygons, envelope centre for anything else.
    """
    if not is_usable(geom):
        return None
    geom_type = geom.geom_type
    coordinate = None
    if geom_type in ("Point", "MultiPoint"):
        coordinate = first_vertex(geom)
    elif geom_type in ("LineString", "MultiLineString", "LinearRing"):
        coordinate = line_midpoint_vertex(geom)
    elif geom_type in ("Polygon", "MultiPolygon"):
        coordinate = ring_midpoint(geom)
    return coordinate or envelope_center(geom)


def anchor_coordinate(geom) -> Optional[Coordinate]:
    """
    Coordinate of a display geometry produced by a validator.

    Points give themselves, lines their half-length point, areas their
    centroid.
    """
    if not is_usable(geom):
        return None
    geom_type = geom.geom_type
    if geom_type in ("Point", "MultiPoint"):
        return first_vertex(geom)
    if geom_type in ("LineString", "MultiLineString", "LinearRing"):
        return _coordinate(geom.interpolate(0.5, normalized=True).coords[0])
    if isinstance(geom, GeometryCollection):
        area = polygonal(geom) or lineal(geom)
        if area is not None:
            return anchor_coordinate(area)
    centroid = geom.centroid
    if centroid.is_empty:
        return envelope_center(geom)
    return _coordinate(centroid.coords[0])
