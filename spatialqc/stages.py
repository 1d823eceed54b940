"""
Validation Stages
=================

The five stages of a run, in order: table, schema, geometry, relation
and attribute. Each stage checks its configuration when it starts and
plans independent work units (a table or a table pair) for the
scheduler.
"""

import logging
import threading
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from shapely.errors import GEOSException

from .attributes import AttributeChecker, AttributeRelationChecker
from .criteria import GeometryCheckConfig, GeometryCriteria, PerformanceSettings, RuleSet, TableRule
from .exceptions import ConfigurationError
from .models import FeatureRef, Finding, Severity
from .relations import RelationChecker
from .scheduler import CancellationToken, WorkUnit
from .source import GeometrySource, normalize_geometry_type
from .spatial_checks import find_duplicates, find_overlaps
from .spatial_index import SpatialIndex, create_index
from .validators import find_dangles, validate_feature


@dataclass
class RunContext:
    """Everything a stage needs from the run."""

    source: GeometrySource
    rules: RuleSet
    criteria: GeometryCriteria
    performance: PerformanceSettings
    emit: Callable[[List[Finding]], int]
    token: CancellationToken = field(default_factory=CancellationToken)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))


class Stage:
    """Base class of a pipeline stage."""

    name = ""

    def validate_config(self, context: RunContext) -> None:
        """Raise ConfigurationError when the stage cannot run."""
        context.rules.validate()

    def plan(self, context: RunContext) -> List[WorkUnit]:
        raise NotImplementedError

    def scope(self, context: RunContext) -> ExitStack:
        """Resources held for the duration of the stage."""
        return ExitStack()


def _dataset_finding(code: str, severity: Severity, table: str, message: str, **details) -> Finding:
    return Finding(code=code, severity=severity, table=table, message=message, details=details)


class TableStage(Stage):
    """Declared tables must exist, hold features and have the declared geometry type."""

    name = "table"

    def plan(self, context):
        units = [WorkUnit(rule.table, self._unit(context, rule)) for rule in context.rules.tables]
        if context.rules.tables:
            units.append(WorkUnit("<undeclared>", self._undeclared(context)))
        return units

    def _unit(self, context: RunContext, rule: TableRule):
        def run() -> int:
            source = context.source
            if rule.table not in source.list_tables():
                if not rule.required:
                    return 0
                return context.emit([
                    _dataset_finding("TABLE_MISSING", Severity.ERROR, rule.table,
                                     f"Required table '{rule.table}' is missing")
                ])
            findings = []
            if source.feature_count(rule.table) == 0:
                findings.append(
                    _dataset_finding("TABLE_EMPTY", Severity.WARNING, rule.table,
                                     f"Table '{rule.table}' has no features")
                )
            actual = source.geometry_type(rule.table)
            if rule.geometry_type and actual and normalize_geometry_type(actual) != rule.geometry_type:
                findings.append(
                    _dataset_finding("TABLE_GEOMETRY_MISMATCH", Severity.ERROR, rule.table,
                                     f"Expected {rule.geometry_type} geometries, found {actual}",
                                     expected=rule.geometry_type, actual=actual)
                )
            return context.emit(findings)

        return run

    def _undeclared(self, context: RunContext):
        def run() -> int:
            declared = {rule.table for rule in context.rules.tables}
            return context.emit([
                _dataset_finding("TABLE_UNDECLARED", Severity.INFO, table,
                                 f"Table '{table}' has no rule")
                for table in context.source.list_tables()
                if table not in declared
            ])

        return run


class SchemaStage(Stage):
    """Declared fields must exist with the declared type family."""

    name = "schema"

    def plan(self, context):
        return [
            WorkUnit(rule.table, self._unit(context, rule))
            for rule in context.rules.tables
            if rule.fields or rule.strict_fields
        ]

    def _unit(self, context: RunContext, rule: TableRule):
        def run() -> int:
            if rule.table not in context.source.list_tables():
                return 0
            actual = context.source.schema(rule.table)
            findings = []
            for field_rule in rule.fields:
                if field_rule.name not in actual:
                    if field_rule.required:
                        findings.append(
                            _dataset_finding("SCHEMA_FIELD_MISSING", Severity.ERROR, rule.table,
                                             f"Field '{field_rule.name}' is missing",
                                             field=field_rule.name)
                        )
                    continue
                if actual[field_rule.name] != field_rule.dtype:
                    findings.append(
                        _dataset_finding("SCHEMA_TYPE_MISMATCH", Severity.ERROR, rule.table,
                                         f"Field '{field_rule.name}' is {actual[field_rule.name]}, "
                                         f"expected {field_rule.dtype}",
                                         field=field_rule.name, expected=field_rule.dtype,
                                         actual=actual[field_rule.name])
                    )
            if rule.strict_fields:
                declared = {f.name for f in rule.fields}
                findings.extend(
                    _dataset_finding("SCHEMA_UNEXPECTED_FIELD", Severity.INFO, rule.table,
                                     f"Field '{name}' is not declared", field=name)
                    for name in actual
                    if name not in declared
                )
            return context.emit(findings)

        return run


class GeometryStage(Stage):
    """
    Per-feature validators, then duplicate, overlap and dangle detection
    on an index scoped to the table's pass.
    """

    name = "geometry"

    def validate_config(self, context):
        context.criteria.validate()
        context.performance.validate()

    def tables(self, context: RunContext) -> List[str]:
        available = context.source.list_tables()
        if not context.rules.tables:
            return available
        return [rule.table for rule in context.rules.tables if rule.table in available]

    def plan(self, context):
        return [WorkUnit(table, self._unit(context, table)) for table in self.tables(context)]

    def _unit(self, context: RunContext, table: str):
        def run() -> int:
            rule = context.rules.table_rule(table)
            checks = rule.checks if rule else GeometryCheckConfig()
            criteria = context.criteria
            index = create_index(
                context.performance.index_strategy,
                tolerance=criteria.duplicate_tolerance,
                logger=context.logger,
            )
            emitted = 0
            lineal = False
            with index.pass_scope():
                for batch in context.source.iter_batches(table, context.performance.batch_size):
                    context.token.raise_if_cancelled()
                    findings = []
                    for feature in batch:
                        ref = FeatureRef(table, feature.fid)
                        geom = feature.geometry
                        try:
                            findings.extend(validate_feature(ref, geom, criteria, checks))
                        except GEOSException as e:
                            context.logger.warning(f"Geometry checks failed for {table}:{feature.fid}: {e}")
                        if geom is not None and not geom.is_empty:
                            lineal = lineal or "LineString" in geom.geom_type
                            index.insert(ref, geom)
                    emitted += context.emit(findings)

                context.token.raise_if_cancelled()
                if checks.duplicate:
                    emitted += context.emit(find_duplicates(index, criteria.duplicate_tolerance, table))
                if checks.overlap:
                    emitted += context.emit(find_overlaps(index, criteria.overlap_tolerance, table))
                if checks.undershoot and lineal:
                    emitted += context.emit(find_dangles(index, criteria))
            context.logger.info(f"Geometry stage: {table} produced {emitted} findings")
            return emitted

        return run


class IndexCache:
    """
    Indexes shared by the units of one stage, built once per table and
    released when the stage scope closes.
    """

    def __init__(self, context: RunContext, stack: ExitStack):
        self.context = context
        self.stack = stack
        self._lock = threading.Lock()
        self._indexes: Dict[str, SpatialIndex] = {}
        self._building: Dict[str, threading.Lock] = {}

    def get(self, table: str) -> SpatialIndex:
        with self._lock:
            if table in self._indexes:
                return self._indexes[table]
            table_lock = self._building.setdefault(table, threading.Lock())
        with table_lock:
            with self._lock:
                if table in self._indexes:
                    return self._indexes[table]
            index = create_index(
                self.context.performance.index_strategy,
                tolerance=self.context.criteria.duplicate_tolerance,
                logger=self.context.logger,
            )
            index.build(
                (FeatureRef(table, f.fid), f.geometry)
                for f in self.context.source.stream_features(table, self.context.performance.batch_size)
            )
            with self._lock:
                self._indexes[table] = index
                self.stack.enter_context(index.pass_scope())
            return index


class RelationStage(Stage):
    """Spatial relation rules between table pairs."""

    name = "relation"

    def __init__(self):
        self._cache: Optional[IndexCache] = None

    def validate_config(self, context):
        context.criteria.validate()
        context.rules.validate()

    def scope(self, context):
        stack = ExitStack()
        self._cache = IndexCache(context, stack)
        return stack

    def plan(self, context):
        return [
            WorkUnit(f"{rule.case}:{rule.main_table}->{rule.related_table}", self._unit(context, rule))
            for rule in context.rules.relations
        ]

    def _unit(self, context: RunContext, rule):
        def run() -> int:
            for table in (rule.main_table, rule.related_table):
                if table not in context.source.list_tables():
                    raise ConfigurationError(f"Relation {rule.case} refers to missing table '{table}'")
            context.token.raise_if_cancelled()
            main = self._cache.get(rule.main_table)
            related = self._cache.get(rule.related_table)
            context.token.raise_if_cancelled()
            return context.emit(RelationChecker(context.criteria, context.logger).check(rule, main, related))

        return run


class AttributeStage(Stage):
    """Attribute value rules and attribute relations between tables."""

    name = "attribute"

    def plan(self, context):
        units = [
            WorkUnit(f"{rule.check}:{rule.table}.{rule.field}", self._value_unit(context, rule))
            for rule in context.rules.attributes
        ]
        units.extend(
            WorkUnit(f"{rule.case}:{rule.main_table}.{rule.field}", self._relation_unit(context, rule))
            for rule in context.rules.attribute_relations
        )
        return units

    def _value_unit(self, context: RunContext, rule):
        def run() -> int:
            if rule.table not in context.source.list_tables():
                raise ConfigurationError(f"Attribute rule refers to missing table '{rule.table}'")
            findings = []
            checker = AttributeChecker(context.logger)
            for batch in context.source.iter_batches(rule.table, context.performance.batch_size):
                context.token.raise_if_cancelled()
                findings.extend(checker.check(rule, batch))
            return context.emit(findings)

        return run

    def _relation_unit(self, context: RunContext, rule):
        def run() -> int:
            checker = AttributeRelationChecker(context.criteria, context.logger)
            source = context.source
            batch_size = context.performance.batch_size
            for table in filter(None, (rule.main_table, rule.related_table)):
                if table not in source.list_tables():
                    raise ConfigurationError(f"Attribute relation refers to missing table '{table}'")
            context.token.raise_if_cancelled()
            main = list(source.stream_features(rule.main_table, batch_size))
            if rule.case == "reference_exists":
                related = source.stream_features(rule.related_table, batch_size)
                findings = checker.reference_exists(rule, main, related)
            else:
                findings = checker.connected_lines_same_attribute(rule, main)
            return context.emit(findings)

        return run


def default_stages() -> List[Stage]:
    return [TableStage(), SchemaStage(), GeometryStage(), RelationStage(), AttributeStage()]
