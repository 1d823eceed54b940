"""
SpatialQC - Geospatial Data Quality Engine
==========================================

Batch quality checks for vector datasets. Tables are checked for
completeness and schema, features for geometry validity and quality, and
tables against each other for spatial and attribute relations. Every
finding is placed on the map where the problem is, or explicitly marked
as unlocated.

Key Features:
- Grid, R-tree and quad-tree spatial indexes behind one interface
- Validity, simplicity, spike, sliver, size and vertex-count validators
- Duplicate, overlap, undershoot and overshoot detection
- Best-effort error location with an explicit unlocated state
- Resource-adaptive parallel execution with remaining-time estimates
- Python API and command-line interface

Author: SpatialQC Team
License: MIT
Version: 1.0.0
"""

__version__ = "1.0.0"
__author__ = "SpatialQC Team"
__license__ = "MIT"

from .criteria import GeometryCriteria, PerformanceSettings, RuleSet
from .exceptions import ConfigurationError, SourceAccessError, SpatialQCError
from .models import Finding, GeometryKind, LocationStatus, Severity
from .orchestrator import StageOrchestrator
from .resolver import ErrorLocationResolver
from .source import GeoDataFrameSource, VectorFileSource
from .spatial_index import create_index

__all__ = [
    "GeometryCriteria",
    "PerformanceSettings",
    "RuleSet",
    "ConfigurationError",
    "SourceAccessError",
    "SpatialQCError",
    "Finding",
    "GeometryKind",
    "LocationStatus",
    "Severity",
    "StageOrchestrator",
    "ErrorLocationResolver",
    "GeoDataFrameSource",
    "VectorFileSource",
    "create_index",
]
