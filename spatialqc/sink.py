"""
Findings Sink
=============

Thread-safe, append-only collection of resolved findings with tabular
export through pandas and geopandas.
"""

import json
import logging
import threading
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import geopandas as gpd
import pandas as pd
from shapely.geometry import Point

from .models import Finding, LocationStatus

COLUMNS = [
    "code", "severity", "table", "fid", "target_table", "target_fid",
    "message", "status", "kind", "x", "y", "details",
]


class FindingsSink:
    """Append-only store shared by all workers of a run."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._findings: List[Finding] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._findings)

    def append(self, finding: Finding) -> None:
        self.extend([finding])

    def extend(self, findings: Iterable[Finding]) -> int:
        findings = list(findings)
        pending = [f for f in findings if f.status is LocationStatus.PENDING]
        if pending:
            raise ValueError(f"{len(pending)} findings were not resolved before reaching the sink")
        with self._lock:
            self._findings.extend(findings)
        return len(findings)

    def findings(self) -> List[Finding]:
        with self._lock:
            return list(self._findings)

    def summary(self) -> Dict[str, Any]:
        findings = self.findings()
        located = sum(1 for f in findings if f.status is LocationStatus.LOCATED)
        return {
            "total": len(findings),
            "located": located,
            "unlocated": len(findings) - located,
            "by_code": dict(Counter(f.code for f in findings)),
            "by_severity": dict(Counter(f.severity.value for f in findings)),
        }

    def _row(self, finding: Finding) -> Dict[str, Any]:
        location = finding.location
        return {
            "code": finding.code,
            "severity": finding.severity.value,
            "table": finding.table,
            "fid": finding.fid,
            "target_table": finding.target_table,
            "target_fid": finding.target_fid,
            "message": finding.message,
            "status": finding.status.value,
            "kind": finding.kind.value if finding.kind else None,
            "x": location.x if location else None,
            "y": location.y if location else None,
            "details": json.dumps(finding.details, default=str) if finding.details else None,
        }

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame([self._row(f) for f in self.findings()], columns=COLUMNS)

    def to_geodataframe(self, crs: Optional[Any] = None, use_anchor: bool = False) -> gpd.GeoDataFrame:
        """
        Findings as a GeoDataFrame.

        Located findings get their point (or their anchor geometry when
        ``use_anchor`` is set); Unlocated findings get no geometry.
        """
        findings = self.findings()
        geometries = []
        for finding in findings:
            if finding.status is not LocationStatus.LOCATED:
                geometries.append(None)
            elif use_anchor and finding.anchor is not None:
                geometries.append(finding.anchor)
            else:
                geometries.append(Point(finding.location))
        frame = pd.DataFrame([self._row(f) for f in findings], columns=COLUMNS)
        return gpd.GeoDataFrame(frame, geometry=geometries, crs=crs)

    def write(self, path: Union[str, Path], crs: Optional[Any] = None) -> Path:
        """
        Write findings by file suffix: ``.csv`` or any vector format
        supported by geopandas (``.gpkg``, ``.geojson``, ``.shp``).
        """
        path = Path(path)
        if path.suffix.lower() == ".csv":
            self.to_dataframe().to_csv(path, index=False)
        else:
            gdf = self.to_geodataframe(crs=crs)
            for column in ("fid", "target_fid"):
                gdf[column] = gdf[column].astype(str)
            gdf.to_file(path)
        self.logger.info(f"Wrote {len(self)} findings to {path}")
        return path
