"""
Attribute and Attribute-Relation Rules
======================================

Value checks on single fields and consistency checks between tables.
Findings from value checks carry no geometry; the location resolver
places them by re-reading the feature from the source.
"""

import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .criteria import AttributeRelationRule, AttributeRule, GeometryCriteria
from .exceptions import ConfigurationError
from .geometry import line_parts
from .models import Coordinate, Finding, Severity
from .source import SourceFeature

logger = logging.getLogger(__name__)


def is_null(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


class AttributeChecker:
    """
    Evaluate attribute value rules over streamed features.

    Args:
        logger: Logger instance for output
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def violation(self, rule: AttributeRule, value: Any) -> Optional[str]:
        """
        Describe why ``value`` breaks ``rule``, or return None.

        Null values are only reported by ``notnull``.

        Raises:
            ConfigurationError: If the rule's check or pattern is unusable
        """
        check = rule.check
        if check == "notnull":
            return "value is empty" if is_null(value) else None
        if is_null(value):
            return None
        if check == "notzero":
            number = _as_number(value)
            return "value is zero" if number == 0 else None
        if check == "codelist":
            allowed = {str(v) for v in rule.value}
            return None if str(value) in allowed else f"'{value}' not in code list"
        if check == "range":
            number = _as_number(value)
            low, high = rule.value
            if number is None:
                return f"'{value}' is not numeric"
            if number < low or number > high:
                return f"{number:g} outside [{low}, {high}]"
            return None
        if check in ("regex", "regexnot"):
            try:
                pattern = re.compile(rule.value)
            except re.error as e:
                raise ConfigurationError(f"Invalid pattern for {rule.table}.{rule.field}: {e}")
            if check == "regex":
                return None if pattern.fullmatch(str(value)) else f"'{value}' does not match {rule.value}"
            return f"'{value}' matches forbidden {rule.value}" if pattern.search(str(value)) else None
        if check == "multipleof":
            number = _as_number(value)
            if number is None:
                return f"'{value}' is not numeric"
            remainder = math.remainder(number, float(rule.value))
            return None if math.isclose(remainder, 0.0, abs_tol=1e-9) else f"{number:g} is not a multiple of {rule.value}"
        raise ConfigurationError(f"Unknown attribute check '{check}'")

    def check(self, rule: AttributeRule, features: Iterable[SourceFeature]) -> List[Finding]:
        findings = []
        missing_field = False
        for feature in features:
            if rule.field not in feature.attributes:
                missing_field = True
                continue
            problem = self.violation(rule, feature.attributes[rule.field])
            if problem:
                findings.append(
                    Finding(
                        code=f"ATTR_{rule.check.upper()}",
                        severity=Severity.ERROR,
                        table=rule.table,
                        fid=feature.fid,
                        message=f"{rule.field}: {problem}",
                        details={"field": rule.field, "value": feature.attributes[rule.field]},
                    )
                )
        if missing_field:
            self.logger.warning(f"Field '{rule.field}' missing in '{rule.table}', {rule.check} check skipped")
        return findings


class AttributeRelationChecker:
    """
    Evaluate attribute consistency between features.

    Args:
        criteria: Geometry thresholds (endpoint snap tolerance)
        logger: Logger instance for output
    """

    def __init__(self, criteria: GeometryCriteria, logger: Optional[logging.Logger] = None):
        self.criteria = criteria
        self.logger = logger or logging.getLogger(__name__)

    def reference_exists(
        self,
        rule: AttributeRelationRule,
        main: Iterable[SourceFeature],
        related: Iterable[SourceFeature],
    ) -> List[Finding]:
        """Every non-null ``field`` value in main must occur in ``related_field``."""
        keys = {
            str(f.attributes.get(rule.related_field))
            for f in related
            if not is_null(f.attributes.get(rule.related_field))
        }
        findings = []
        for feature in main:
            value = feature.attributes.get(rule.field)
            if is_null(value) or str(value) in keys:
                continue
            findings.append(
                Finding(
                    code="ATTR_REL_REFERENCE_MISSING",
                    severity=Severity.ERROR,
                    table=rule.main_table,
                    fid=feature.fid,
                    target_table=rule.related_table,
                    message=f"{rule.field}='{value}' has no match in {rule.related_table}.{rule.related_field}",
                    details={"field": rule.field, "value": value},
                )
            )
        return findings

    def _node_key(self, xy: Tuple[float, float], tolerance: float) -> Tuple[float, float]:
        if tolerance <= 0:
            return (xy[0], xy[1])
        return (round(xy[0] / tolerance), round(xy[1] / tolerance))

    def connected_lines_same_attribute(
        self,
        rule: AttributeRelationRule,
        lines: Iterable[SourceFeature],
    ) -> List[Finding]:
        """
        Lines meeting at an endpoint must carry the same ``field`` value.

        Each mismatching pair is reported once, on the later line, at the
        shared endpoint.
        """
        tolerance = rule.tolerance if rule.tolerance is not None else self.criteria.endpoint_snap_tolerance
        nodes: Dict[Tuple[float, float], List[Tuple[int, SourceFeature, Coordinate]]] = {}
        for order, feature in enumerate(lines):
            geom = feature.geometry
            if geom is None or geom.is_empty:
                continue
            for part in line_parts(geom):
                coords = part.coords
                if len(coords) < 2:
                    continue
                for xy in (coords[0], coords[-1]):
                    nodes.setdefault(self._node_key(xy, tolerance), []).append(
                        (order, feature, Coordinate(xy[0], xy[1]))
                    )

        findings = []
        reported = set()
        for members in nodes.values():
            for i, (order_a, a, _) in enumerate(members):
                for order_b, b, at in members[i + 1:]:
                    if order_a == order_b:
                        continue
                    first, second = (a, b) if order_a < order_b else (b, a)
                    pair = (first.fid, second.fid)
                    if pair in reported:
                        continue
                    value_a = first.attributes.get(rule.field)
                    value_b = second.attributes.get(rule.field)
                    if is_null(value_a) and is_null(value_b):
                        continue
                    if str(value_a) == str(value_b):
                        continue
                    reported.add(pair)
                    findings.append(
                        Finding(
                            code="ATTR_REL_CONNECTED_MISMATCH",
                            severity=Severity.ERROR,
                            table=rule.main_table,
                            fid=second.fid,
                            target_table=rule.main_table,
                            target_fid=first.fid,
                            message=f"{rule.field} '{value_b}' differs from connected line value '{value_a}'",
                            location=at,
                            details={"field": rule.field},
                        )
                    )
        return findings
