"""
SpatialQC Thresholds, Settings and Rules
========================================

Typed views over the configuration sections. Each view validates itself
when a stage starts; an invalid value raises ConfigurationError and is
never replaced by a default.
"""

import math
import os
import re
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from .exceptions import ConfigurationError

INDEX_STRATEGIES = ("grid", "rtree", "quadtree")

GEOMETRY_TYPES = ("Point", "LineString", "Polygon")

RELATION_CASES = (
    "point_inside_polygon",
    "line_within_polygon",
    "polygon_within_polygon",
    "polygon_not_overlap",
    "polygon_not_intersect_line",
    "polygon_not_contain_point",
    "line_connectivity",
)

ATTRIBUTE_CHECKS = ("notnull", "notzero", "codelist", "range", "regex", "regexnot", "multipleof")

ATTRIBUTE_RELATION_CASES = ("reference_exists", "connected_lines_same_attribute")


def _from_mapping(cls, data: Optional[Dict[str, Any]], section: str):
    data = dict(data or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}': {unknown}")
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid '{section}' section: {e}")


def _require_positive(name: str, value: Any, allow_zero: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigurationError(f"{name} must be positive, got {value!r}")


@dataclass
class GeometryCriteria:
    """Thresholds for the geometry and relation validators."""

    min_line_length: float = 0.01
    min_polygon_area: float = 1.0
    overlap_tolerance: float = 0.001
    duplicate_tolerance: float = 0.001
    sliver_area: float = 2.0
    sliver_shape_index: float = 0.1
    sliver_elongation: float = 10.0
    spike_angle_threshold: float = 10.0
    report_all_spikes: bool = False
    ring_closure_tolerance: float = 1e-8
    network_search_distance: float = 0.1
    endpoint_snap_tolerance: float = 1e-8
    line_within_polygon_tolerance: float = 0.001
    polygon_within_polygon_tolerance: float = 0.001
    line_connectivity_tolerance: float = 1.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GeometryCriteria":
        return _from_mapping(cls, data, "criteria")

    def validate(self) -> "GeometryCriteria":
        """
        Check every threshold.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: If any threshold is out of range
        """
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "report_all_spikes":
                if not isinstance(value, bool):
                    raise ConfigurationError(f"report_all_spikes must be a boolean, got {value!r}")
                continue
            _require_positive(f.name, value, allow_zero=True)
        if not 0 < self.spike_angle_threshold < 180:
            raise ConfigurationError(
                f"spike_angle_threshold must be in (0, 180) degrees, got {self.spike_angle_threshold}"
            )
        if self.sliver_shape_index > 1:
            raise ConfigurationError(
                f"sliver_shape_index must be at most 1, got {self.sliver_shape_index}"
            )
        return self


@dataclass
class PerformanceSettings:
    """Parallelism bounds and resource limits for the scheduler."""

    min_workers: int = 1
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    resource_sampling_interval: float = 2.0
    cpu_limit_percent: float = 80.0
    memory_limit_percent: float = 80.0
    high_memory_percent: float = 90.0
    batch_size: int = 1000
    index_strategy: str = "grid"
    history_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PerformanceSettings":
        return _from_mapping(cls, data, "performance")

    def validate(self) -> "PerformanceSettings":
        """
        Check parallelism bounds and limits.

        Raises:
            ConfigurationError: If a value is out of range
        """
        for name in ("min_workers", "max_workers", "batch_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if self.min_workers > self.max_workers:
            raise ConfigurationError(
                f"min_workers ({self.min_workers}) exceeds max_workers ({self.max_workers})"
            )
        _require_positive("resource_sampling_interval", self.resource_sampling_interval)
        for name in ("cpu_limit_percent", "memory_limit_percent", "high_memory_percent"):
            value = getattr(self, name)
            _require_positive(name, value)
            if value > 100:
                raise ConfigurationError(f"{name} must be at most 100, got {value}")
        if self.high_memory_percent < self.memory_limit_percent:
            raise ConfigurationError("high_memory_percent must not be below memory_limit_percent")
        if self.index_strategy not in INDEX_STRATEGIES:
            raise ConfigurationError(
                f"Unknown index strategy '{self.index_strategy}'. Available: {list(INDEX_STRATEGIES)}"
            )
        if self.history_file is not None and not isinstance(self.history_file, str):
            raise ConfigurationError(f"history_file must be a path string, got {self.history_file!r}")
        return self


@dataclass
class GeometryCheckConfig:
    """Per-table switches for the geometry stage."""

    validity: bool = True
    simplicity: bool = True
    duplicate: bool = True
    overlap: bool = True
    sliver: bool = True
    spike: bool = True
    short_line: bool = True
    small_area: bool = True
    min_vertex: bool = True
    undershoot: bool = True


@dataclass
class FieldRule:
    name: str
    dtype: str = "string"
    required: bool = True


@dataclass
class TableRule:
    """Expected table with its geometry type, fields and geometry checks."""

    table: str
    geometry_type: Optional[str] = None
    required: bool = True
    strict_fields: bool = False
    fields: List[FieldRule] = field(default_factory=list)
    checks: GeometryCheckConfig = field(default_factory=GeometryCheckConfig)


@dataclass
class RelationRule:
    case: str
    main_table: str
    related_table: str
    tolerance: Optional[float] = None


@dataclass
class AttributeRule:
    table: str
    field: str
    check: str
    value: Any = None


@dataclass
class AttributeRelationRule:
    case: str
    main_table: str
    field: str
    related_table: Optional[str] = None
    related_field: Optional[str] = None
    tolerance: Optional[float] = None


@dataclass
class RuleSet:
    """All rules of one run, grouped by the stage that evaluates them."""

    tables: List[TableRule] = field(default_factory=list)
    relations: List[RelationRule] = field(default_factory=list)
    attributes: List[AttributeRule] = field(default_factory=list)
    attribute_relations: List[AttributeRelationRule] = field(default_factory=list)

    def table_rule(self, table: str) -> Optional[TableRule]:
        for rule in self.tables:
            if rule.table == table:
                return rule
        return None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RuleSet":
        """
        Build a rule set from the ``rules`` configuration section.

        Args:
            data: Mapping with optional ``tables``, ``relations``,
                ``attributes`` and ``attribute_relations`` lists

        Returns:
            RuleSet instance

        Raises:
            ConfigurationError: If a rule is malformed
        """
        data = data or {}
        tables = []
        for raw in data.get("tables", []):
            raw = dict(raw)
            field_rules = [_from_mapping(FieldRule, f, "rules.tables.fields") for f in raw.pop("fields", [])]
            checks = _from_mapping(GeometryCheckConfig, raw.pop("checks", None), "rules.tables.checks")
            rule = _from_mapping(TableRule, raw, "rules.tables")
            rule.fields = field_rules
            rule.checks = checks
            tables.append(rule)
        rules = cls(
            tables=tables,
            relations=[_from_mapping(RelationRule, r, "rules.relations") for r in data.get("relations", [])],
            attributes=[_from_mapping(AttributeRule, r, "rules.attributes") for r in data.get("attributes", [])],
            attribute_relations=[
                _from_mapping(AttributeRelationRule, r, "rules.attribute_relations")
                for r in data.get("attribute_relations", [])
            ],
        )
        return rules.validate()

    def validate(self) -> "RuleSet":
        for rule in self.tables:
            if rule.geometry_type is not None and rule.geometry_type not in GEOMETRY_TYPES:
                raise ConfigurationError(
                    f"Table '{rule.table}': unknown geometry type '{rule.geometry_type}'"
                )
        for rule in self.relations:
            if rule.case not in RELATION_CASES:
                raise ConfigurationError(f"Unknown relation case '{rule.case}'")
            if rule.tolerance is not None:
                _require_positive(f"{rule.case}.tolerance", rule.tolerance, allow_zero=True)
        for rule in self.attributes:
            if rule.check not in ATTRIBUTE_CHECKS:
                raise ConfigurationError(f"Unknown attribute check '{rule.check}'")
            if rule.check == "codelist" and not isinstance(rule.value, (list, tuple)):
                raise ConfigurationError(f"{rule.table}.{rule.field}: codelist needs a list value")
            if rule.check == "range":
                if not isinstance(rule.value, (list, tuple)) or len(rule.value) != 2:
                    raise ConfigurationError(f"{rule.table}.{rule.field}: range needs [min, max]")
            if rule.check in ("regex", "regexnot") and not isinstance(rule.value, str):
                raise ConfigurationError(f"{rule.table}.{rule.field}: {rule.check} needs a pattern")
            if rule.check in ("regex", "regexnot"):
                try:
                    re.compile(rule.value)
                except re.error as e:
                    raise ConfigurationError(f"{rule.table}.{rule.field}: invalid pattern: {e}")
            if rule.check == "multipleof":
                _require_positive(f"{rule.table}.{rule.field}.multipleof", rule.value)
        for rule in self.attribute_relations:
            if rule.case not in ATTRIBUTE_RELATION_CASES:
                raise ConfigurationError(f"Unknown attribute relation case '{rule.case}'")
            if rule.case == "reference_exists" and not (rule.related_table and rule.related_field):
                raise ConfigurationError("reference_exists needs related_table and related_field")
        return self
