"""
Geometry Sources
================

Read-only access to the tables of a vector dataset.

A source lists its tables, streams ``(fid, geometry, attributes)`` records
lazily in one pass, and fetches a single feature's geometry by id. Sources
are context managers; leaving the ``with`` block releases the dataset.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Union

import geopandas as gpd
import pandas as pd
import pyogrio

from .exceptions import SourceAccessError, TableNotFoundError


class SourceFeature(NamedTuple):
    fid: Any
    geometry: Any
    attributes: Dict[str, Any]


def normalize_geometry_type(geometry_type: Optional[str]) -> Optional[str]:
    """Map driver geometry names (``MultiPolygon Z``, ``3D LineString``) to a base type."""
    if not geometry_type:
        return None
    name = geometry_type.replace("3D ", "").split(" ")[0]
    if name.startswith("Multi"):
        name = name[len("Multi"):]
    if name in ("Point", "LineString", "Polygon"):
        return name
    return geometry_type


def dtype_family(dtype: Any) -> str:
    """Reduce a pandas or driver dtype to integer/float/string/datetime/boolean."""
    text = str(dtype).lower()
    if "bool" in text:
        return "boolean"
    if "int" in text:
        return "integer"
    if "float" in text or "double" in text or "real" in text:
        return "float"
    if "datetime" in text or "date" in text or "time" in text:
        return "datetime"
    return "string"


class GeometrySource(ABC):
    """Abstract read-only source of table features."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._open = False

    def __enter__(self) -> "GeometrySource":
        if not self._open:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._open

    def _ensure_open(self) -> None:
        if not self._open:
            raise SourceAccessError(f"{self.__class__.__name__} is not open")

    def _ensure_table(self, table: str) -> None:
        self._ensure_open()
        if table not in self.list_tables():
            raise TableNotFoundError(f"Table '{table}' not found")

    @abstractmethod
    def open(self) -> "GeometrySource":
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def list_tables(self) -> List[str]:
        pass

    @abstractmethod
    def stream_features(self, table: str, batch_size: int = 1000) -> Iterator[SourceFeature]:
        """Yield every feature of ``table`` once, lazily."""
        pass

    @abstractmethod
    def fetch_feature(self, table: str, fid: Any):
        """Return the geometry of one feature, or None if it has none."""
        pass

    @abstractmethod
    def feature_count(self, table: str) -> int:
        pass

    @abstractmethod
    def schema(self, table: str) -> Dict[str, str]:
        """Return ``{field name: dtype family}`` without the geometry column."""
        pass

    @abstractmethod
    def geometry_type(self, table: str) -> Optional[str]:
        pass

    def iter_batches(self, table: str, batch_size: int = 1000) -> Iterator[List[SourceFeature]]:
        """Group ``stream_features`` into lists of at most ``batch_size`` features."""
        batch: List[SourceFeature] = []
        for feature in self.stream_features(table, batch_size=batch_size):
            batch.append(feature)
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch


def _records(gdf: gpd.GeoDataFrame) -> Iterator[SourceFeature]:
    geom_col = gdf.geometry.name
    attributes = pd.DataFrame(gdf.drop(columns=[geom_col])).to_dict("records")
    for fid, geom, attrs in zip(gdf.index, gdf.geometry, attributes):
        yield SourceFeature(fid, geom, attrs)


class GeoDataFrameSource(GeometrySource):
    """
    In-memory source backed by one GeoDataFrame per table.

    The frame index is the feature id.
    """

    def __init__(
        self,
        tables: Dict[str, gpd.GeoDataFrame],
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self.tables = dict(tables)

    def open(self) -> "GeoDataFrameSource":
        self._open = True
        return self

    def close(self) -> None:
        self._open = False

    def list_tables(self) -> List[str]:
        self._ensure_open()
        return list(self.tables.keys())

    def stream_features(self, table: str, batch_size: int = 1000) -> Iterator[SourceFeature]:
        self._ensure_table(table)
        return _records(self.tables[table])

    def fetch_feature(self, table: str, fid: Any):
        self._ensure_table(table)
        gdf = self.tables[table]
        if fid not in gdf.index:
            return None
        geom = gdf.geometry.loc[fid]
        if geom is None or geom.is_empty:
            return None
        return geom

    def feature_count(self, table: str) -> int:
        self._ensure_table(table)
        return len(self.tables[table])

    def schema(self, table: str) -> Dict[str, str]:
        self._ensure_table(table)
        gdf = self.tables[table]
        return {
            str(name): dtype_family(dtype)
            for name, dtype in gdf.dtypes.items()
            if name != gdf.geometry.name
        }

    def geometry_type(self, table: str) -> Optional[str]:
        self._ensure_table(table)
        types = self.tables[table].geometry.dropna().geom_type.unique()
        normalized = {normalize_geometry_type(t) for t in types}
        if len(normalized) == 1:
            return normalized.pop()
        return None


class VectorFileSource(GeometrySource):
    """
    File-backed source for GeoPackage, Shapefile and FileGDB datasets.

    Layers are read through geopandas with the pyogrio engine, in batches
    of ``batch_size`` features. The driver FID is the feature id.
    """

    def __init__(self, path: Union[str, Path], logger: Optional[logging.Logger] = None):
        super().__init__(logger)
        self.path = Path(path)
        self._layers: Dict[str, Optional[str]] = {}
        self._info: Dict[str, Dict[str, Any]] = {}

    def open(self) -> "VectorFileSource":
        """
        Open the dataset and read its layer list.

        Raises:
            SourceAccessError: If the dataset does not exist or cannot be read
        """
        if not self.path.exists():
            raise SourceAccessError(f"Dataset not found: {self.path}")
        try:
            layers = pyogrio.list_layers(str(self.path))
        except Exception as e:
            raise SourceAccessError(f"Cannot open dataset {self.path}: {e}")
        self._layers = {str(name): geom_type for name, geom_type in layers}
        self._open = True
        self.logger.info(f"Opened {self.path} with {len(self._layers)} tables")
        return self

    def close(self) -> None:
        self._layers = {}
        self._info = {}
        self._open = False

    def list_tables(self) -> List[str]:
        self._ensure_open()
        return list(self._layers.keys())

    def _read_info(self, table: str) -> Dict[str, Any]:
        self._ensure_table(table)
        if table not in self._info:
            try:
                self._info[table] = pyogrio.read_info(str(self.path), layer=table)
            except Exception as e:
                raise SourceAccessError(f"Cannot read metadata of '{table}': {e}")
        return self._info[table]

    def stream_features(self, table: str, batch_size: int = 1000) -> Iterator[SourceFeature]:
        total = self.feature_count(table)
        offset = 0
        while offset < total:
            try:
                gdf = gpd.read_file(
                    self.path,
                    layer=table,
                    engine="pyogrio",
                    skip_features=offset,
                    max_features=batch_size,
                    fid_as_index=True,
                )
            except Exception as e:
                raise SourceAccessError(f"Failed reading '{table}' at offset {offset}: {e}")
            if gdf.empty:
                break
            yield from _records(gdf)
            offset += len(gdf)

    def fetch_feature(self, table: str, fid: Any):
        self._ensure_table(table)
        try:
            gdf = pyogrio.read_dataframe(str(self.path), layer=table, fids=[int(fid)])
        except Exception as e:
            raise SourceAccessError(f"Failed fetching {table}:{fid}: {e}")
        if gdf.empty:
            return None
        return gdf.geometry.iloc[0]

    def feature_count(self, table: str) -> int:
        return int(self._read_info(table)["features"])

    def schema(self, table: str) -> Dict[str, str]:
        info = self._read_info(table)
        return {
            str(name): dtype_family(dtype)
            for name, dtype in zip(info["fields"], info["dtypes"])
        }

    def geometry_type(self, table: str) -> Optional[str]:
        self._ensure_table(table)
        return normalize_geometry_type(self._layers.get(table))
