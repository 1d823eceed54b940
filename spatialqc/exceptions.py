"""
SpatialQC Exceptions
====================

Custom exception classes for the SpatialQC data-quality engine.

Data-quality problems are never raised: they are reported as Findings.
Exceptions are reserved for source access, configuration and run control.
"""


class SpatialQCError(Exception):
    """Base exception for SpatialQC errors."""

    pass


class SourceAccessError(SpatialQCError):
    """Exception raised when the geometry source cannot be read."""

    pass


class TableNotFoundError(SourceAccessError):
    """Exception raised when a table is not present in the dataset."""

    pass


class ConfigurationError(SpatialQCError):
    """Exception raised for invalid thresholds, settings or rules."""

    pass


class SpatialIndexError(SpatialQCError):
    """Exception raised for misuse of a spatial index."""

    pass


class RunCancelledError(SpatialQCError):
    """Exception raised inside a work unit when the run has been cancelled."""

    pass
