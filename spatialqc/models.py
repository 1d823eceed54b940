"""
SpatialQC Data Model
====================

Value types shared by the index, validators, resolver and orchestrator.

A Finding's location is optional. ``None`` means "not yet known" and is
never confused with the coordinate origin.
"""

import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class Severity(Enum):
    """Severity of a Finding."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class GeometryKind(Enum):
    """Kind of the display geometry attached to a located Finding."""

    POINT = "Point"
    LINE = "Line"
    POLYGON = "Polygon"

    @classmethod
    def from_geometry(cls, geom) -> "GeometryKind":
        geom_type = getattr(geom, "geom_type", "")
        if "Polygon" in geom_type:
            return cls.POLYGON
        if "LineString" in geom_type or "LinearRing" in geom_type:
            return cls.LINE
        return cls.POINT


class LocationStatus(Enum):
    """Resolution state of a Finding."""

    PENDING = "pending"
    LOCATED = "located"
    UNLOCATED = "unlocated"


class Coordinate(NamedTuple):
    x: float
    y: float

    def is_finite(self) -> bool:
        return math.isfinite(self.x) and math.isfinite(self.y)


class FeatureRef(NamedTuple):
    """Stable identity of a feature within one run."""

    table: str
    fid: Any


@dataclass(frozen=True)
class Envelope:
    """Axis-aligned bounding rectangle."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def of(cls, geom) -> "Envelope":
        min_x, min_y, max_x, max_y = geom.bounds
        return cls(min_x, min_y, max_x, max_y)

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Coordinate:
        return Coordinate((self.min_x + self.max_x) / 2.0, (self.min_y + self.max_y) / 2.0)

    def expand(self, distance: float) -> "Envelope":
        if distance <= 0:
            return self
        return Envelope(
            self.min_x - distance,
            self.min_y - distance,
            self.max_x + distance,
            self.max_y + distance,
        )

    def intersects(self, other: "Envelope") -> bool:
        return not (
            other.min_x > self.max_x
            or other.max_x < self.min_x
            or other.min_y > self.max_y
            or other.max_y < self.min_y
        )

    def contains(self, other: "Envelope") -> bool:
        return (
            self.min_x <= other.min_x
            and self.min_y <= other.min_y
            and self.max_x >= other.max_x
            and self.max_y >= other.max_y
        )

    def as_tuple(self):
        return (self.min_x, self.min_y, self.max_x, self.max_y)


@dataclass(frozen=True)
class Finding:
    """
    One data-quality problem.

    Attributes:
        code: Error code, e.g. ``GEOM_SLIVER``
        severity: Severity of the problem
        table: Table of the offending feature (empty for dataset-level findings)
        fid: Feature id, or None for table/schema level findings
        message: Human readable description
        location: Exact offending coordinate if a validator knows it
        anchor: Small display geometry (vertex, overlap area, connecting segment)
        geometry_wkt: WKT fallback for the display geometry
        target_table: Table of the related feature for pairwise findings
        target_fid: Id of the related feature for pairwise findings
        kind: Kind tag of the display geometry once located
        status: Resolution state
        details: Measured values supporting the finding
    """

    code: str
    severity: Severity
    table: str
    fid: Any = None
    message: str = ""
    location: Optional[Coordinate] = None
    anchor: Any = None
    geometry_wkt: Optional[str] = None
    target_table: Optional[str] = None
    target_fid: Any = None
    kind: Optional[GeometryKind] = None
    status: LocationStatus = LocationStatus.PENDING
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> FeatureRef:
        return FeatureRef(self.table, self.fid)

    @property
    def is_located(self) -> bool:
        return self.status is LocationStatus.LOCATED

    def located(self, location: Coordinate, kind: GeometryKind, anchor=None) -> "Finding":
        return replace(
            self,
            location=Coordinate(float(location[0]), float(location[1])),
            kind=kind,
            anchor=anchor,
            status=LocationStatus.LOCATED,
        )

    def unlocated(self) -> "Finding":
        return replace(
            self,
            location=None,
            anchor=None,
            kind=None,
            status=LocationStatus.UNLOCATED,
        )


class UnitStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class WorkUnitResult:
    """Outcome of one work unit (a table or a table pair) in a stage."""

    name: str
    stage: str
    status: UnitStatus
    error: Optional[str] = None
    elapsed_seconds: float = 0.0
    findings_count: int = 0


@dataclass
class RunSummary:
    """Summary returned by every run, including failed and cancelled ones."""

    located: int = 0
    unlocated: int = 0
    by_code: Dict[str, int] = field(default_factory=dict)
    units: List[WorkUnitResult] = field(default_factory=list)
    cancelled: bool = False
    started_at: float = field(default_factory=time.time)
    elapsed_seconds: float = 0.0

    @property
    def total_findings(self) -> int:
        return self.located + self.unlocated

    @property
    def failed_units(self) -> List[WorkUnitResult]:
        return [u for u in self.units if u.status is UnitStatus.FAILED]

    @property
    def cancelled_units(self) -> List[WorkUnitResult]:
        return [u for u in self.units if u.status is UnitStatus.CANCELLED]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "located": self.located,
            "unlocated": self.unlocated,
            "total_findings": self.total_findings,
            "by_code": dict(self.by_code),
            "failed_units": [
                {"name": u.name, "stage": u.stage, "error": u.error}
                for u in self.failed_units
            ],
            "cancelled": self.cancelled,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }
