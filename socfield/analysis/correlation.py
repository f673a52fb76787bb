"""
Spatial correlation diagnostics for the structure field.

Provides:
- Radial autocorrelation and normalized correlation length (lattices)
- Regime label from the correlation length
- Moran's I and threshold clusters (any graph)
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple
import math
import numpy as np
from numba import jit
from scipy.sparse import csgraph

from ..core.graph import Graph
from ..errors import ShapeMismatchError, TopologyError

# Normalized correlation length above which a run counts as patterned
PATTERN_THRESHOLD = 0.2


def _radial_sums(field, max_r, wrap_x, wrap_y):
    """
    Sum of mean-centred products per integer radius, with pair counts.

    `field` is (H, W) and already mean-centred. Offsets with
    round(hypot(dx, dy)) == 0 or >= max_r are skipped.
    """
    height, width = field.shape
    corr = np.zeros(max_r)
    counts = np.zeros(max_r, dtype=np.int64)
    for y in range(height):
        for x in range(width):
            si = field[y, x]
            for dy in range(-max_r, max_r + 1):
                yy = y + dy
                if wrap_y:
                    yy = yy % height
                elif yy < 0 or yy >= height:
                    continue
                for dx in range(-max_r, max_r + 1):
                    r = int(math.floor(math.hypot(dx, dy) + 0.5))
                    if r == 0 or r >= max_r:
                        continue
                    xx = x + dx
                    if wrap_x:
                        xx = xx % width
                    elif xx < 0 or xx >= width:
                        continue
                    corr[r] += si * field[yy, xx]
                    counts[r] += 1
    return corr, counts


_radial_sums_numba = jit(nopython=True, cache=True)(_radial_sums)


def _shift_index(n: int, d: int, wrap: bool) -> Tuple[np.ndarray, np.ndarray]:
    """(source, target) index pairs along one axis for offset d."""
    src = np.arange(n)
    dst = src + d
    if wrap:
        return src, dst % n
    valid = (dst >= 0) & (dst < n)
    return src[valid], dst[valid]


def _radial_sums_numpy(
    field: np.ndarray, max_r: int, wrap_x: bool, wrap_y: bool
) -> Tuple[np.ndarray, np.ndarray]:
    height, width = field.shape
    corr = np.zeros(max_r)
    counts = np.zeros(max_r, dtype=np.int64)
    for dy in range(-max_r, max_r + 1):
        ys, yd = _shift_index(height, dy, wrap_y)
        for dx in range(-max_r, max_r + 1):
            r = int(math.floor(math.hypot(dx, dy) + 0.5))
            if r == 0 or r >= max_r:
                continue
            xs, xd = _shift_index(width, dx, wrap_x)
            prod = field[np.ix_(ys, xs)] * field[np.ix_(yd, xd)]
            corr[r] += prod.sum()
            counts[r] += prod.size
    return corr, counts


def radial_correlation(
    values: np.ndarray,
    graph: Graph,
    use_numba: bool = True,
) -> np.ndarray:
    """
    Radial autocorrelation C(r) of a per-node field on a lattice.

    C(r) = mean over pairs at rounded distance r of (v_i - <v>)(v_j - <v>)

    for r < max_r = floor(min(H, W) / 4); entry 0 is unused. Pairs
    wrap along the axes the lattice wraps.

    Raises:
        TopologyError: graph is not a lattice
    """
    if graph.grid_shape is None:
        raise TopologyError(
            f"radial correlation needs a lattice, got {graph.topology.value}"
        )
    values = np.asarray(values, dtype=np.float64)
    if len(values) != graph.N:
        raise ShapeMismatchError(f"{len(values)} values for {graph.N} nodes")

    height, width = graph.grid_shape
    max_r = min(height, width) // 4
    field = (values - values.mean()).reshape(height, width)
    wrap_x, wrap_y = graph.wrap

    if use_numba:
        corr, counts = _radial_sums_numba(field, max_r, wrap_x, wrap_y)
    else:
        corr, counts = _radial_sums_numpy(field, max_r, wrap_x, wrap_y)
    filled = counts > 0
    corr[filled] /= counts[filled]
    return corr


def correlation_length(
    values: np.ndarray,
    graph: Graph,
    use_numba: bool = True,
) -> float:
    """
    Normalized correlation length of a lattice field.

    xi = r* / min(H, W), where r* is the first r >= 2 with
    C(r) < C(1) / e, or max_r when C never falls that far.

    A constant field has no correlation structure and yields 0.0.
    """
    values = np.asarray(values, dtype=np.float64)
    if graph.grid_shape is None:
        raise TopologyError(
            f"correlation length needs a lattice, got {graph.topology.value}"
        )
    height, width = graph.grid_shape
    size = min(height, width)
    max_r = size // 4

    if len(values) and np.ptp(values) == 0.0:
        return 0.0
    if max_r < 2:
        return max_r / size

    corr = radial_correlation(values, graph, use_numba=use_numba)
    c0 = corr[1]
    for r in range(2, max_r):
        if corr[r] < c0 / math.e:
            return r / size
    return max_r / size


def regime_label(xi_norm: float, threshold: float = PATTERN_THRESHOLD) -> str:
    """"pattern" if xi_norm > threshold else "none"."""
    return "pattern" if xi_norm > threshold else "none"


def morans_i(values: np.ndarray, graph: Graph) -> float:
    """
    Moran's I with unit weights on graph edges.

    I = (n / W) * sum_ij A_ij z_i z_j / sum_i z_i^2,  z = v - <v>

    where W counts directed neighbour entries. Zero for a constant
    field or an edgeless graph.
    """
    values = np.asarray(values, dtype=np.float64)
    if len(values) != graph.N:
        raise ShapeMismatchError(f"{len(values)} values for {graph.N} nodes")
    n = len(values)
    if n == 0:
        return 0.0
    z = values - values.mean()
    denom = float(z @ z)
    total_weight = len(graph.indices)
    if denom <= 0 or total_weight == 0:
        return 0.0
    numer = float(z @ (graph.matrix @ z))
    return (n / total_weight) * (numer / denom)


@dataclass
class ClusterStats:
    """Connected groups of nodes at or above a threshold."""
    count: int
    mean_size: float
    max_size: int
    sizes: np.ndarray


def cluster_stats(
    values: np.ndarray,
    graph: Graph,
    threshold: float = 0.5,
) -> ClusterStats:
    """
    Connected components of the subgraph induced by values >= threshold.
    """
    values = np.asarray(values, dtype=np.float64)
    if len(values) != graph.N:
        raise ShapeMismatchError(f"{len(values)} values for {graph.N} nodes")
    members = np.flatnonzero(values >= threshold)
    if members.size == 0:
        return ClusterStats(count=0, mean_size=0.0, max_size=0, sizes=np.zeros(0, dtype=np.int64))

    sub = graph.matrix[members][:, members]
    count, labels = csgraph.connected_components(sub, directed=False)
    sizes = np.bincount(labels, minlength=count)
    return ClusterStats(
        count=int(count),
        mean_size=float(sizes.mean()),
        max_size=int(sizes.max()),
        sizes=sizes,
    )
