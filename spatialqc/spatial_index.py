"""
Multi-Strategy Spatial Index
============================

One spatial-index contract with three interchangeable strategies:

- ``grid``: uniform grid with an adaptive cell size
- ``rtree``: STR-packed R-tree (``shapely.STRtree``), rebuilt lazily after edits
- ``quadtree``: region quad-tree storing each entry in the deepest node
  that fully contains its envelope

Every strategy indexes tolerance-expanded envelopes and answers envelope
queries without false negatives: any entry whose expanded envelope
intersects the query envelope is returned. False positives are allowed;
callers run exact geometric tests on the candidates.

Geometry handles are borrowed for one validation pass. ``pass_scope()``
clears the index when the pass ends, also on error or cancellation.
"""

import logging
import math
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

import numpy as np
from shapely import STRtree
from shapely.geometry import box

from .exceptions import ConfigurationError, SpatialIndexError
from .models import Envelope, FeatureRef


class IndexEntry(NamedTuple):
    ref: FeatureRef
    envelope: Envelope
    geometry: Any
    tolerance: float
    seq: int


def _usable_envelope(geometry) -> Optional[Envelope]:
    if geometry is None or geometry.is_empty:
        return None
    bounds = geometry.bounds
    if not all(math.isfinite(b) for b in bounds):
        return None
    return Envelope(*bounds)


class SpatialIndex(ABC):
    """
    Common contract of all index strategies.

    Args:
        tolerance: Distance by which every indexed envelope is expanded
        logger: Logger instance for output
    """

    strategy = "abstract"

    def __init__(self, tolerance: float = 0.0, logger: Optional[logging.Logger] = None):
        if tolerance < 0 or math.isnan(tolerance):
            raise ConfigurationError(f"Index tolerance must be non-negative, got {tolerance}")
        self.tolerance = float(tolerance)
        self.logger = logger or logging.getLogger(__name__)
        self._entries: Dict[FeatureRef, IndexEntry] = {}
        self._seq = 0
        self.skipped = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ref) -> bool:
        return ref in self._entries

    def entries(self) -> List[IndexEntry]:
        """Indexed entries in insertion order."""
        return sorted(self._entries.values(), key=lambda e: e.seq)

    def get(self, ref: FeatureRef) -> Optional[IndexEntry]:
        return self._entries.get(ref)

    def build(self, features: Iterable[Tuple[FeatureRef, Any]]) -> "SpatialIndex":
        """
        Replace the index content with ``(ref, geometry)`` pairs.

        Null, empty and non-finite geometries are skipped and counted in
        ``skipped``.
        """
        self.clear()
        pending = []
        for ref, geometry in features:
            entry = self._make_entry(ref, geometry)
            if entry is not None:
                pending.append(entry)
        self._bulk_load(pending)
        self.logger.debug(
            f"Built {self.strategy} index with {len(self._entries)} entries "
            f"({self.skipped} skipped)"
        )
        return self

    def insert(self, ref: FeatureRef, geometry) -> bool:
        """Add one feature. Returns False when its geometry cannot be indexed."""
        if ref in self._entries:
            raise SpatialIndexError(f"Feature {ref} is already indexed")
        entry = self._make_entry(ref, geometry)
        if entry is None:
            return False
        self._entries[ref] = entry
        self._insert(entry)
        return True

    def remove(self, ref: FeatureRef) -> bool:
        entry = self._entries.pop(ref, None)
        if entry is None:
            return False
        self._remove(entry)
        return True

    def query(self, envelope: Envelope) -> List[IndexEntry]:
        """
        Return candidate entries whose expanded envelope intersects ``envelope``.

        Candidates are ordered by insertion sequence.
        """
        candidates = [
            entry
            for entry in self._query(envelope)
            if entry.envelope.intersects(envelope)
        ]
        candidates.sort(key=lambda e: e.seq)
        return candidates

    def query_geometry(self, geometry, distance: float = 0.0) -> List[IndexEntry]:
        envelope = _usable_envelope(geometry)
        if envelope is None:
            return []
        return self.query(envelope.expand(distance))

    def clear(self) -> None:
        self._entries.clear()
        self._seq = 0
        self.skipped = 0
        self._clear()

    @contextmanager
    def pass_scope(self) -> Iterator["SpatialIndex"]:
        """Borrow the indexed geometries for one validation pass."""
        try:
            yield self
        finally:
            released = len(self._entries)
            self.clear()
            self.logger.debug(f"Released {released} geometry handles from {self.strategy} index")

    def _make_entry(self, ref: FeatureRef, geometry) -> Optional[IndexEntry]:
        envelope = _usable_envelope(geometry)
        if envelope is None:
            self.skipped += 1
            return None
        entry = IndexEntry(ref, envelope.expand(self.tolerance), geometry, self.tolerance, self._seq)
        self._seq += 1
        return entry

    def _bulk_load(self, entries: List[IndexEntry]) -> None:
        for entry in entries:
            self._entries[entry.ref] = entry
            self._insert(entry)

    @abstractmethod
    def _insert(self, entry: IndexEntry) -> None:
        pass

    @abstractmethod
    def _remove(self, entry: IndexEntry) -> None:
        pass

    @abstractmethod
    def _query(self, envelope: Envelope) -> Iterable[IndexEntry]:
        pass

    @abstractmethod
    def _clear(self) -> None:
        pass


class GridIndex(SpatialIndex):
    """
    Uniform grid over expanded envelopes.

    The cell size is derived from the feature count, the dataset extent
    and the mean feature extent, so a query touches few entries. Inserts
    mark the grid dirty and the next query re-grids over all entries. A feature that would cover more than ``max_cells_per_feature``
    cells is registered in a bounded sample of cells along its envelope
    boundary and also kept in an oversized list that every query filters
    by envelope.
    """

    strategy = "grid"

    def __init__(
        self,
        tolerance: float = 0.0,
        cell_size: Optional[float] = None,
        max_cells_per_feature: int = 256,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(tolerance, logger)
        if cell_size is not None and cell_size <= 0:
            raise ConfigurationError(f"Grid cell size must be positive, got {cell_size}")
        if max_cells_per_feature < 4:
            raise ConfigurationError("max_cells_per_feature must be at least 4")
        self._fixed_cell_size = cell_size
        self.cell_size = cell_size
        self.max_cells_per_feature = max_cells_per_feature
        self._cells: Dict[Tuple[int, int], Set[FeatureRef]] = {}
        self._entry_cells: Dict[FeatureRef, List[Tuple[int, int]]] = {}
        self._oversized: Set[FeatureRef] = set()
        self._dirty = False

    @staticmethod
    def choose_cell_size(envelopes: List[Envelope]) -> float:
        """Pick a cell size near the larger of the mean feature extent and the mean spacing."""
        if not envelopes:
            return 1.0
        extents = np.array([max(e.width, e.height) for e in envelopes], dtype=float)
        mean_extent = float(extents.mean())
        min_x = min(e.min_x for e in envelopes)
        min_y = min(e.min_y for e in envelopes)
        max_x = max(e.max_x for e in envelopes)
        max_y = max(e.max_y for e in envelopes)
        area = max(max_x - min_x, 0.0) * max(max_y - min_y, 0.0)
        spacing = math.sqrt(area / len(envelopes)) if area > 0 else 0.0
        size = max(mean_extent, spacing)
        if not math.isfinite(size) or size <= 0:
            size = max(max_x - min_x, max_y - min_y, 1.0)
        return size

    def _cell_range(self, envelope: Envelope) -> Tuple[int, int, int, int]:
        cs = self.cell_size
        return (
            math.floor(envelope.min_x / cs),
            math.floor(envelope.min_y / cs),
            math.floor(envelope.max_x / cs),
            math.floor(envelope.max_y / cs),
        )

    def _sampled_boundary_cells(self, i0: int, j0: int, i1: int, j1: int) -> List[Tuple[int, int]]:
        ring = []
        for i in range(i0, i1 + 1):
            ring.append((i, j0))
        for j in range(j0 + 1, j1 + 1):
            ring.append((i1, j))
        if j1 > j0:
            for i in range(i1 - 1, i0 - 1, -1):
                ring.append((i, j1))
        if i1 > i0:
            for j in range(j1 - 1, j0, -1):
                ring.append((i0, j))
        step = max(1, math.ceil(len(ring) / self.max_cells_per_feature))
        return ring[::step]

    def _regrid(self) -> None:
        self._cells.clear()
        self._entry_cells.clear()
        self._oversized.clear()
        if self._fixed_cell_size is None:
            self.cell_size = self.choose_cell_size([e.envelope for e in self._entries.values()])
        for entry in self._entries.values():
            self._register(entry)
        self._dirty = False

    def _bulk_load(self, entries: List[IndexEntry]) -> None:
        for entry in entries:
            self._entries[entry.ref] = entry
        self._regrid()

    def _insert(self, entry: IndexEntry) -> None:
        if self._fixed_cell_size is None:
            self._dirty = True
        else:
            self._register(entry)

    def _register(self, entry: IndexEntry) -> None:
        i0, j0, i1, j1 = self._cell_range(entry.envelope)
        covered = (i1 - i0 + 1) * (j1 - j0 + 1)
        if covered > self.max_cells_per_feature:
            cells = self._sampled_boundary_cells(i0, j0, i1, j1)
            self._oversized.add(entry.ref)
        else:
            cells = [(i, j) for i in range(i0, i1 + 1) for j in range(j0, j1 + 1)]
        for cell in cells:
            self._cells.setdefault(cell, set()).add(entry.ref)
        self._entry_cells[entry.ref] = cells

    def _remove(self, entry: IndexEntry) -> None:
        for cell in self._entry_cells.pop(entry.ref, []):
            refs = self._cells.get(cell)
            if refs is not None:
                refs.discard(entry.ref)
                if not refs:
                    del self._cells[cell]
        self._oversized.discard(entry.ref)

    def _query(self, envelope: Envelope) -> Iterable[IndexEntry]:
        if not self._entries:
            return []
        if self._dirty:
            self._regrid()
        i0, j0, i1, j1 = self._cell_range(envelope)
        if (i1 - i0 + 1) * (j1 - j0 + 1) > max(len(self._cells), 1):
            return list(self._entries.values())
        refs: Set[FeatureRef] = set(self._oversized)
        for i in range(i0, i1 + 1):
            for j in range(j0, j1 + 1):
                refs.update(self._cells.get((i, j), ()))
        return [self._entries[r] for r in refs]

    def _clear(self) -> None:
        self._cells.clear()
        self._entry_cells.clear()
        self._oversized.clear()
        self.cell_size = self._fixed_cell_size
        self._dirty = False


class RTreeIndex(SpatialIndex):
    """
    STR-packed R-tree over expanded envelopes.

    The packed tree is immutable; ``insert`` and ``remove`` mark it dirty
    and the next query rebuilds it.
    """

    strategy = "rtree"

    def __init__(
        self,
        tolerance: float = 0.0,
        node_capacity: int = 10,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(tolerance, logger)
        self.node_capacity = node_capacity
        self._tree: Optional[STRtree] = None
        self._tree_entries: List[IndexEntry] = []
        self._dirty = False

    def _insert(self, entry: IndexEntry) -> None:
        self._dirty = True

    def _remove(self, entry: IndexEntry) -> None:
        self._dirty = True

    def _rebuild(self) -> None:
        self._tree_entries = list(self._entries.values())
        boxes = [box(*e.envelope.as_tuple()) for e in self._tree_entries]
        self._tree = STRtree(boxes, node_capacity=self.node_capacity) if boxes else None
        self._dirty = False

    def _query(self, envelope: Envelope) -> Iterable[IndexEntry]:
        if self._dirty or (self._tree is None and self._entries):
            self._rebuild()
        if self._tree is None:
            return []
        hits = self._tree.query(box(*envelope.as_tuple()))
        return [self._tree_entries[int(i)] for i in hits]

    def _clear(self) -> None:
        self._tree = None
        self._tree_entries = []
        self._dirty = False


class _QuadNode:
    __slots__ = ("bounds", "depth", "items", "children")

    def __init__(self, bounds: Envelope, depth: int):
        self.bounds = bounds
        self.depth = depth
        self.items: List[IndexEntry] = []
        self.children: Optional[List["_QuadNode"]] = None

    def split(self) -> None:
        b = self.bounds
        mid_x = (b.min_x + b.max_x) / 2.0
        mid_y = (b.min_y + b.max_y) / 2.0
        self.children = [
            _QuadNode(Envelope(b.min_x, b.min_y, mid_x, mid_y), self.depth + 1),
            _QuadNode(Envelope(mid_x, b.min_y, b.max_x, mid_y), self.depth + 1),
            _QuadNode(Envelope(b.min_x, mid_y, mid_x, b.max_y), self.depth + 1),
            _QuadNode(Envelope(mid_x, mid_y, b.max_x, b.max_y), self.depth + 1),
        ]

    def child_containing(self, envelope: Envelope) -> Optional["_QuadNode"]:
        if self.children is None:
            return None
        for child in self.children:
            if child.bounds.contains(envelope):
                return child
        return None


class QuadTreeIndex(SpatialIndex):
    """
    Region quad-tree over expanded envelopes.

    Entries straddling a split line stay in the parent node. The root is
    grown when an inserted envelope falls outside it.
    """

    strategy = "quadtree"

    def __init__(
        self,
        tolerance: float = 0.0,
        node_capacity: int = 8,
        max_depth: int = 16,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(tolerance, logger)
        if node_capacity < 1 or max_depth < 1:
            raise ConfigurationError("Quad-tree node_capacity and max_depth must be at least 1")
        self.node_capacity = node_capacity
        self.max_depth = max_depth
        self._root: Optional[_QuadNode] = None
        self._node_of: Dict[FeatureRef, _QuadNode] = {}

    @staticmethod
    def _square_around(envelope: Envelope, margin: float = 0.0) -> Envelope:
        size = max(envelope.width, envelope.height, 1e-9) * (1.0 + margin)
        cx, cy = envelope.center
        half = size / 2.0
        return Envelope(cx - half, cy - half, cx + half, cy + half)

    def _bulk_load(self, entries: List[IndexEntry]) -> None:
        if entries:
            total = Envelope(
                min(e.envelope.min_x for e in entries),
                min(e.envelope.min_y for e in entries),
                max(e.envelope.max_x for e in entries),
                max(e.envelope.max_y for e in entries),
            )
            self._root = _QuadNode(self._square_around(total, margin=0.01), 0)
        super()._bulk_load(entries)

    def _grow_root(self, envelope: Envelope) -> None:
        old = self._root.bounds
        total = Envelope(
            min(old.min_x, envelope.min_x),
            min(old.min_y, envelope.min_y),
            max(old.max_x, envelope.max_x),
            max(old.max_y, envelope.max_y),
        )
        existing = list(self._entries.values())
        self._root = _QuadNode(self._square_around(total, margin=0.5), 0)
        self._node_of.clear()
        for entry in existing:
            if entry.ref in self._node_of:
                continue
            self._place(self._root, entry)

    def _place(self, node: _QuadNode, entry: IndexEntry) -> None:
        while True:
            child = node.child_containing(entry.envelope)
            if child is None:
                break
            node = child
        node.items.append(entry)
        self._node_of[entry.ref] = node
        if (
            node.children is None
            and len(node.items) > self.node_capacity
            and node.depth < self.max_depth
        ):
            node.split()
            kept = []
            for item in node.items:
                child = node.child_containing(item.envelope)
                if child is None:
                    kept.append(item)
                else:
                    self._place(child, item)
            node.items = kept

    def _insert(self, entry: IndexEntry) -> None:
        if self._root is None:
            self._root = _QuadNode(self._square_around(entry.envelope, margin=1.0), 0)
        elif not self._root.bounds.contains(entry.envelope):
            self._grow_root(entry.envelope)
            if entry.ref in self._node_of:
                return
        self._place(self._root, entry)

    def _remove(self, entry: IndexEntry) -> None:
        node = self._node_of.pop(entry.ref, None)
        if node is not None:
            node.items = [item for item in node.items if item.ref != entry.ref]

    def _query(self, envelope: Envelope) -> Iterable[IndexEntry]:
        found: List[IndexEntry] = []
        if self._root is None:
            return found
        stack = [self._root]
        while stack:
            node = stack.pop()
            if not node.bounds.intersects(envelope):
                continue
            found.extend(node.items)
            if node.children is not None:
                stack.extend(node.children)
        return found

    def _clear(self) -> None:
        self._root = None
        self._node_of.clear()


_STRATEGIES = {
    "grid": GridIndex,
    "rtree": RTreeIndex,
    "quadtree": QuadTreeIndex,
}


def create_index(
    strategy: str = "grid",
    tolerance: float = 0.0,
    logger: Optional[logging.Logger] = None,
    **options,
) -> SpatialIndex:
    """
    Create a spatial index for the named strategy.

    Args:
        strategy: One of ``grid``, ``rtree``, ``quadtree``
        tolerance: Envelope expansion distance
        logger: Logger instance for output
        **options: Strategy specific options (cell_size, node_capacity, ...)

    Returns:
        Empty SpatialIndex instance

    Raises:
        ConfigurationError: If the strategy is unknown
    """
    try:
        index_class = _STRATEGIES[strategy]
    except KeyError:
        raise ConfigurationError(
            f"Unknown index strategy '{strategy}'. Available: {list(_STRATEGIES)}"
        )
    return index_class(tolerance=tolerance, logger=logger, **options)
