"""
Adjacency graph shared by every topology.

A node is an index 0..N-1 into the per-node arrays. The graph stores,
for each node, an ordered neighbour list (construction order, never
re-sorted) plus the geometry the forcing needs: a position, latitude
and longitude.

The step engine consumes the graph only through the CSR arrays
(`indptr`, `indices`), the degree array and the undirected edge list,
so no topology-specific branching exists past the builder.

The graph is built once and is read-only afterwards: every array is
frozen, so one instance can be shared between concurrent simulations.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple
import numpy as np
from scipy import sparse
from scipy.sparse import csgraph

from ..config import Topology
from ..errors import ShapeMismatchError, TopologyError


def _freeze(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


@dataclass
class Graph:
    """
    Symmetric, duplicate-free, self-loop-free neighbour graph.

    Attributes:
        topology: Topology family this graph was built for
        positions: (N, 3) node positions (unit vectors on the spheres)
        adjacency: Per-node neighbour index arrays, in construction order
        lats: Per-node latitude feeding the forcing band (radians on the
            spheres, fraction of the grid height on lattices)
        lons: Per-node longitude (radians)
        lat_period: Latitude period when the band wraps (torus), else None
        band_amplitude: Swing of the band centre in latitude units; None
            uses the sphere swing derived from sun_lat_bias
        grid_shape: (H, W) for lattices, None otherwise
        wrap: (wrap_x, wrap_y) for lattices
        faces: Optional (F, 3) triangles for external renderers
        cells: Optional angle-ordered polygons (dual sphere only)

    Example:
        graph = build(Topology.HEXSPHERE, 3)
        print(graph.summary())
        for j in graph.neighbors(0):
            ...
    """

    topology: Topology
    positions: np.ndarray
    adjacency: Sequence[np.ndarray]
    lats: np.ndarray
    lons: np.ndarray
    lat_period: Optional[float] = None
    band_amplitude: Optional[float] = None
    grid_shape: Optional[Tuple[int, int]] = None
    wrap: Tuple[bool, bool] = (False, False)
    faces: Optional[np.ndarray] = field(default=None, repr=False)
    cells: Optional[List[np.ndarray]] = field(default=None, repr=False)

    indptr: np.ndarray = field(default=None, init=False, repr=False)
    indices: np.ndarray = field(default=None, init=False, repr=False)
    degrees: np.ndarray = field(default=None, init=False, repr=False)
    edges: np.ndarray = field(default=None, init=False, repr=False)
    _matrix: Optional[sparse.csr_matrix] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.adjacency = tuple(
            _freeze(np.asarray(nb, dtype=np.int64).copy()) for nb in self.adjacency
        )
        n = len(self.adjacency)

        self.positions = _freeze(np.asarray(self.positions, dtype=np.float64).copy())
        self.lats = _freeze(np.asarray(self.lats, dtype=np.float64).copy())
        self.lons = _freeze(np.asarray(self.lons, dtype=np.float64).copy())
        for name in ("positions", "lats", "lons"):
            if len(getattr(self, name)) != n:
                raise ShapeMismatchError(
                    f"{name} has {len(getattr(self, name))} entries, adjacency has {n}"
                )
        if self.grid_shape is not None and self.grid_shape[0] * self.grid_shape[1] != n:
            raise ShapeMismatchError(
                f"grid_shape {self.grid_shape} does not match {n} nodes"
            )

        degrees = np.array([len(nb) for nb in self.adjacency], dtype=np.int64)
        indptr = np.zeros(n + 1, dtype=np.int64)
        np.cumsum(degrees, out=indptr[1:])
        if n:
            indices = np.concatenate(self.adjacency).astype(np.int64)
        else:
            indices = np.zeros(0, dtype=np.int64)

        if indices.size and (indices.min() < 0 or indices.max() >= n):
            raise TopologyError("neighbour index out of range")

        # Each undirected edge once, ordered by lower endpoint then
        # neighbour construction order.
        rows = np.repeat(np.arange(n, dtype=np.int64), degrees)
        upper = indices > rows
        self.edges = _freeze(np.stack([rows[upper], indices[upper]], axis=1))

        self.degrees = _freeze(degrees)
        self.indptr = _freeze(indptr)
        self.indices = _freeze(indices)
        if self.faces is not None:
            self.faces = _freeze(np.array(self.faces, dtype=np.int64))

    @property
    def N(self) -> int:
        """Number of nodes."""
        return len(self.adjacency)

    @property
    def n_edges(self) -> int:
        """Number of undirected edges."""
        return len(self.edges)

    @property
    def avg_degree(self) -> float:
        """Average node degree."""
        return float(self.degrees.mean()) if self.N else 0.0

    def neighbors(self, i: int) -> np.ndarray:
        """Get neighbours of node i, in construction order."""
        return self.adjacency[i]

    def degree(self, i: int) -> int:
        """Get degree of node i."""
        return int(self.degrees[i])

    @property
    def matrix(self) -> sparse.csr_matrix:
        """Sparse 0/1 adjacency matrix A with A[i, j] = 1 for j in neighbors(i)."""
        if self._matrix is None:
            data = np.ones(len(self.indices), dtype=np.float64)
            self._matrix = sparse.csr_matrix(
                (data, self.indices, self.indptr), shape=(self.N, self.N)
            )
        return self._matrix

    def has_self_loops(self) -> bool:
        rows = np.repeat(np.arange(self.N, dtype=np.int64), self.degrees)
        return bool(np.any(rows == self.indices))

    def has_duplicates(self) -> bool:
        return any(len(np.unique(nb)) != len(nb) for nb in self.adjacency)

    def is_symmetric(self) -> bool:
        """True iff j in neighbors(i) <=> i in neighbors(j)."""
        n = self.N
        rows = np.repeat(np.arange(n, dtype=np.int64), self.degrees)
        forward = np.unique(rows * n + self.indices)
        backward = np.unique(self.indices * n + rows)
        return bool(np.array_equal(forward, backward))

    def n_components(self) -> int:
        """Number of connected components."""
        if self.N == 0:
            return 0
        count, _ = csgraph.connected_components(self.matrix, directed=False)
        return int(count)

    def is_connected(self) -> bool:
        return self.n_components() == 1

    def validate(self) -> List[str]:
        """Structural checks, return list of issues."""
        issues = []
        if self.N == 0:
            issues.append("graph has no nodes")
            return issues
        if self.has_self_loops():
            issues.append("graph has self-loops")
        if self.has_duplicates():
            issues.append("graph has duplicate neighbour entries")
        if not self.is_symmetric():
            issues.append("graph is not symmetric")
        if not self.is_connected():
            issues.append(f"graph has {self.n_components()} components")
        return issues

    def check(self) -> "Graph":
        """Raise TopologyError if validate() reports anything."""
        issues = self.validate()
        if issues:
            raise TopologyError(f"{self.topology.value}: " + "; ".join(issues))
        return self

    def summary(self) -> str:
        """Return summary of graph structure."""
        return (f"Graph({self.topology.value}, N={self.N}, edges={self.n_edges}, "
                f"degree={self.degrees.min()}..{self.degrees.max()}, "
                f"avg_degree={self.avg_degree:.2f})")
