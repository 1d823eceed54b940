#!/usr/bin/env python3
"""
Pytest configuration and shared fixtures for SpatialQC tests
"""

import shutil
import tempfile
import warnings

import geopandas as gpd
import pytest
from shapely.geometry import LineString, Point, Polygon

from spatialqc.criteria import GeometryCriteria, PerformanceSettings
from spatialqc.models import FeatureRef
from spatialqc.source import GeoDataFrameSource

# Suppress common deprecation warnings for cleaner test output
warnings.filterwarnings("ignore", category=DeprecationWarning, module="pyogrio")
warnings.filterwarnings(
    "ignore", category=RuntimeWarning, message=".*invalid value encountered.*"
)


@pytest.fixture(scope="session")
def temp_dir():
    """Create a temporary directory for test data"""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def criteria():
    """Default geometry thresholds"""
    return GeometryCriteria()


@pytest.fixture
def performance():
    """Small, deterministic performance settings"""
    return PerformanceSettings(
        min_workers=1,
        max_workers=2,
        resource_sampling_interval=60.0,
        batch_size=2,
    )


@pytest.fixture
def ref():
    """Factory for feature references"""

    def make(fid=1, table="parcels"):
        return FeatureRef(table, fid)

    return make


@pytest.fixture
def needle_polygon():
    """Thin triangle: area 0.05, perimeter about 20.01"""
    return Polygon([(0, 0), (0, 0.01), (10, 0)])


@pytest.fixture
def parcels_gdf(needle_polygon):
    """Parcels with a compact square, a needle and two duplicated squares"""
    return gpd.GeoDataFrame(
        {
            "parcel_id": ["P1", "P2", "P3", "P4"],
            "land_use": ["RES", "COM", "XXX", "RES"],
            "area_ha": [4.0, 0.05, 4.0, 4.0],
            "geometry": [
                Polygon([(100, 100), (102, 100), (102, 102), (100, 102)]),
                needle_polygon,
                Polygon([(200, 200), (202, 200), (202, 202), (200, 202)]),
                Polygon([(200, 200), (202, 200), (202, 202), (200, 202)]),
            ],
        },
        index=[1, 2, 3, 4],
    )


@pytest.fixture
def roads_gdf():
    """Road network with one undershooting road end"""
    return gpd.GeoDataFrame(
        {
            "road_class": ["A01", "A01", "b-2"],
            "geometry": [
                LineString([(0, 50), (50, 50)]),
                LineString([(50, 50), (100, 50)]),
                LineString([(25, 50.05), (25, 80)]),
            ],
        },
        index=[10, 11, 12],
    )


@pytest.fixture
def wells_gdf():
    """Point features, one on the origin"""
    return gpd.GeoDataFrame(
        {"well_id": ["W1", "W2"], "geometry": [Point(101, 101), Point(0, 0)]},
        index=[1, 2],
    )


@pytest.fixture
def dataset_tables(parcels_gdf, roads_gdf, wells_gdf):
    return {"parcels": parcels_gdf, "roads": roads_gdf, "wells": wells_gdf}


@pytest.fixture
def source(dataset_tables):
    """Open in-memory source over the sample tables"""
    with GeoDataFrameSource(dataset_tables) as src:
        yield src
