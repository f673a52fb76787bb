"""
Topology builder.

Pure functions producing, for a requested topology and resolution,
node positions and a symmetric neighbour graph:

- icosphere: 12-vertex icosahedron, each face split into 4 per
  subdivision with normalized, de-duplicated edge midpoints
- hexsphere: dual of the icosphere (one node per face, neighbours
  across shared edges); cells are the angle-ordered face rings around
  each original vertex
- fibonacci: golden-angle spiral point set with a binned k-nearest
  neighbour graph, symmetrized
- torus / cylinder / plane: H×W lattice with 4-neighbourhoods,
  wrapping in both / longitude only / neither axis

Every builder returns a `Graph` that passed `Graph.check()`, or
raises `TopologyError`.

Neighbour order is construction order (first insertion wins) and is
never re-sorted: the collapse phase consumes random draws in
per-neighbour order, so the order is part of the trajectory.
"""

from __future__ import annotations
import logging
from typing import Dict, List, Optional, Tuple
import numpy as np

from ..config import Topology, TopologyConfig
from ..errors import TopologyError
from .graph import Graph

logger = logging.getLogger(__name__)

MAX_SUBDIVISIONS = 7
MAX_POINTS = 2_000_000
# Band centre swing on lattices, as a fraction of the grid height
LATTICE_BAND_AMPLITUDE = 0.35

_T = (1.0 + np.sqrt(5.0)) / 2.0

_ICOSAHEDRON_VERTICES = np.array([
    [-1, _T, 0], [1, _T, 0], [-1, -_T, 0], [1, -_T, 0],
    [0, -1, _T], [0, 1, _T], [0, -1, -_T], [0, 1, -_T],
    [_T, 0, -1], [_T, 0, 1], [-_T, 0, -1], [-_T, 0, 1],
], dtype=np.float64)

_ICOSAHEDRON_FACES = [
    (0, 11, 5), (0, 5, 1), (0, 1, 7), (0, 7, 10), (0, 10, 11),
    (1, 5, 9), (5, 11, 4), (11, 10, 2), (10, 7, 6), (7, 1, 8),
    (3, 9, 4), (3, 4, 2), (3, 2, 6), (3, 6, 8), (3, 8, 9),
    (4, 9, 5), (2, 4, 11), (6, 2, 10), (8, 6, 7), (9, 8, 1),
]


def _normalize(v: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(v, axis=-1, keepdims=True)
    return v / np.where(norm > 0, norm, 1.0)


def to_lat_lon(positions: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Latitude asin(z) and longitude atan2(y, x) of unit vectors, radians."""
    lats = np.arcsin(np.clip(positions[:, 2], -1.0, 1.0))
    lons = np.arctan2(positions[:, 1], positions[:, 0])
    return lats, lons


def _ordered_neighbors(n: int, pairs) -> List[np.ndarray]:
    """
    Collect (u, v) pairs into per-node neighbour arrays.

    Dicts keep first-insertion order, which gives a stable
    construction order with duplicates dropped.
    """
    sets: List[Dict[int, None]] = [dict() for _ in range(n)]
    for u, v in pairs:
        if u != v:
            sets[u][v] = None
    return [np.fromiter(s, dtype=np.int64, count=len(s)) for s in sets]


def _face_pairs(faces):
    for a, b, c in faces:
        yield a, b
        yield a, c
        yield b, a
        yield b, c
        yield c, a
        yield c, b


def _check_subdivisions(subdivisions: int) -> int:
    subdivisions = int(subdivisions)
    if not 0 <= subdivisions <= MAX_SUBDIVISIONS:
        raise TopologyError(
            f"subdivisions must be in [0, {MAX_SUBDIVISIONS}], got {subdivisions}"
        )
    return subdivisions


def subdivided_icosahedron(subdivisions: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Vertices and triangular faces of a subdivided icosahedron.

    Each pass splits every face into 4, inserting normalized edge
    midpoints shared between the two faces on either side of an edge.

    Returns:
        (vertices (V, 3) unit vectors, faces (F, 3) int)
    """
    subdivisions = _check_subdivisions(subdivisions)
    vertices = [tuple(v) for v in _normalize(_ICOSAHEDRON_VERTICES)]
    faces = list(_ICOSAHEDRON_FACES)

    for _ in range(subdivisions):
        cache: Dict[Tuple[int, int], int] = {}

        def midpoint(a: int, b: int) -> int:
            key = (a, b) if a < b else (b, a)
            idx = cache.get(key)
            if idx is None:
                va, vb = vertices[a], vertices[b]
                m = np.array([va[0] + vb[0], va[1] + vb[1], va[2] + vb[2]]) * 0.5
                m /= np.linalg.norm(m)
                idx = len(vertices)
                vertices.append((m[0], m[1], m[2]))
                cache[key] = idx
            return idx

        new_faces = []
        for a, b, c in faces:
            ab = midpoint(a, b)
            bc = midpoint(b, c)
            ca = midpoint(c, a)
            new_faces.extend([(a, ab, ca), (b, bc, ab), (c, ca, bc), (ab, bc, ca)])
        faces = new_faces

    return np.array(vertices, dtype=np.float64), np.array(faces, dtype=np.int64)


def build_icosphere(subdivisions: int) -> Graph:
    """
    Graph over the vertices of a subdivided icosahedron.

    Neighbours of a vertex are the other two vertices of every face
    containing it. Degree is 5 at the 12 original vertices, 6 elsewhere.
    """
    vertices, faces = subdivided_icosahedron(subdivisions)
    lats, lons = to_lat_lon(vertices)
    graph = Graph(
        topology=Topology.ICOSPHERE,
        positions=vertices,
        adjacency=_ordered_neighbors(len(vertices), _face_pairs(faces)),
        lats=lats,
        lons=lons,
        faces=faces,
    )
    return _finish(graph)


def _dual_cells(
    vertices: np.ndarray,
    faces: np.ndarray,
    centers: np.ndarray,
) -> List[np.ndarray]:
    """
    Faces around each original vertex, ordered by signed angle.

    The angle is measured in a tangent frame built at the vertex from
    a reference axis that is never parallel to it.
    """
    incident: List[List[int]] = [[] for _ in range(len(vertices))]
    for f, (a, b, c) in enumerate(faces):
        incident[a].append(f)
        incident[b].append(f)
        incident[c].append(f)

    cells = []
    for v, ring in enumerate(incident):
        if len(ring) < 3:
            continue
        center = vertices[v]
        ref = np.array([0.0, 0.0, 1.0]) if abs(center[2]) < 0.9 else np.array([0.0, 1.0, 0.0])
        ux = _normalize(np.cross(ref, center))
        vx = np.cross(center, ux)

        ring = np.asarray(ring, dtype=np.int64)
        c = centers[ring]
        tangent = c - np.outer(c @ center, center)
        angles = np.arctan2(tangent @ vx, tangent @ ux)
        cells.append(ring[np.argsort(angles, kind="stable")])
    return cells


def build_hexsphere(subdivisions: int) -> Graph:
    """
    Dual of the subdivided icosahedron.

    One node per triangle at its normalized centroid; two nodes are
    neighbours iff their triangles share an edge. The result has 12
    pentagonal cells and hexagons elsewhere, but every node has
    degree 3 in the face-adjacency graph.
    """
    vertices, faces = subdivided_icosahedron(subdivisions)
    centers = _normalize(vertices[faces].mean(axis=1))

    pairs = []
    edge_to_face: Dict[Tuple[int, int], int] = {}
    for f, (a, b, c) in enumerate(faces):
        for u, v in ((a, b), (b, c), (c, a)):
            key = (u, v) if u < v else (v, u)
            other = edge_to_face.get(key)
            if other is None:
                edge_to_face[key] = f
            else:
                pairs.append((f, other))
                pairs.append((other, f))

    cells = _dual_cells(vertices, faces, centers)
    fan = [
        (cell[0], cell[k], cell[k + 1])
        for cell in cells
        for k in range(1, len(cell) - 1)
    ]

    lats, lons = to_lat_lon(centers)
    graph = Graph(
        topology=Topology.HEXSPHERE,
        positions=centers,
        adjacency=_ordered_neighbors(len(centers), pairs),
        lats=lats,
        lons=lons,
        faces=np.array(fan, dtype=np.int64).reshape(-1, 3),
        cells=cells,
    )
    return _finish(graph)


def fibonacci_points(count: int) -> np.ndarray:
    """
    Quasi-uniform points on the unit sphere from a golden-angle spiral.

    Deterministic: point i sits at z = 1 - 2 (i + 0.5) / n with
    azimuth i times the golden angle.
    """
    n = int(count)
    i = np.arange(n, dtype=np.float64)
    golden_angle = np.pi * (3.0 - np.sqrt(5.0))
    z = 1.0 - 2.0 * (i + 0.5) / n
    r = np.sqrt(np.maximum(0.0, 1.0 - z * z))
    phi = i * golden_angle
    return np.stack([np.cos(phi) * r, np.sin(phi) * r, z], axis=1)


def binned_knn_pairs(
    vertices: np.ndarray,
    lats: np.ndarray,
    lons: np.ndarray,
    k: int,
) -> List[Tuple[int, int]]:
    """
    Directed nearest-k relations found through a lat/lon bucket grid.

    Bins are sized about sqrt(n / 6) in latitude and twice that in
    longitude; longitude wraps, latitude clamps at the poles. Candidates
    come from the 3x3 block of bins around a point; when that block
    holds fewer than k other points the block grows by one ring at a
    time. Candidates are ranked by chordal distance (1 - dot product).

    Returns both directions of every relation, in construction order.
    """
    n = len(vertices)
    bins_lat = max(8, int(np.sqrt(n / 6)))
    bins_lon = bins_lat * 2
    lat_bin = np.clip(((lats + np.pi / 2) / np.pi * bins_lat).astype(np.int64), 0, bins_lat - 1)
    lon_bin = np.clip(((lons + np.pi) / (2 * np.pi) * bins_lon).astype(np.int64), 0, bins_lon - 1)

    bins: List[List[int]] = [[] for _ in range(bins_lat * bins_lon)]
    for i in range(n):
        bins[lat_bin[i] * bins_lon + lon_bin[i]].append(i)

    max_ring = max(bins_lat, bins_lon // 2)
    pairs = []
    for i in range(n):
        bi, bj = lat_bin[i], lon_bin[i]
        ring = 1
        while True:
            block = sorted({
                min(max(bi + di, 0), bins_lat - 1) * bins_lon + (bj + dj) % bins_lon
                for di in range(-ring, ring + 1)
                for dj in range(-ring, ring + 1)
            })
            candidates = [j for b in block for j in bins[b] if j != i]
            if len(candidates) >= k or ring >= max_ring:
                break
            ring += 1

        if not candidates:
            continue
        candidates = np.asarray(candidates, dtype=np.int64)
        dist = 1.0 - vertices[candidates] @ vertices[i]
        nearest = candidates[np.argsort(dist, kind="stable")[:k]]
        for j in nearest:
            pairs.append((i, int(j)))
            pairs.append((int(j), i))
    return pairs


def build_fibonacci(count: int, k: int = 6) -> Graph:
    """Golden-angle point sampling with a symmetrized binned kNN graph."""
    count = int(count)
    if count < 12:
        raise TopologyError(f"fibonacci sphere needs at least 12 points, got {count}")
    if count > MAX_POINTS:
        raise TopologyError(f"fibonacci sphere limited to {MAX_POINTS} points")
    if not 1 <= k < count:
        raise TopologyError(f"k must be in [1, {count - 1}], got {k}")

    vertices = fibonacci_points(count)
    lats, lons = to_lat_lon(vertices)
    graph = Graph(
        topology=Topology.FIBONACCI,
        positions=vertices,
        adjacency=_ordered_neighbors(count, binned_knn_pairs(vertices, lats, lons, k)),
        lats=lats,
        lons=lons,
    )
    return _finish(graph)


def build_lattice(
    height: int,
    width: int,
    wrap_x: bool = True,
    wrap_y: bool = True,
) -> Graph:
    """
    H×W lattice, node index y * W + x.

    Neighbours are listed left, right, up, down; a neighbour that falls
    off a non-wrapping edge is dropped (boundary nodes lose degree).

    Geometry:
        torus (both wrap): 3D torus embedding; the forcing latitude has
            period 1 so the band wraps vertically
        cylinder (x wraps): latitude/longitude grid on the sphere,
            rows run pole to pole
        plane (no wrap): flat (x, y, 0) coordinates

    Forcing latitude is measured in units of the grid height (-0.5 at
    the first row), so sun_width is a fraction of H and the band
    centre swings by LATTICE_BAND_AMPLITUDE * H about the middle row.
    """
    height, width = int(height), int(width)
    if height < 2 or width < 2:
        raise TopologyError(f"lattice needs at least 2x2 nodes, got {height}x{width}")
    if height * width > MAX_POINTS:
        raise TopologyError(f"lattice limited to {MAX_POINTS} nodes")

    def idx(x: int, y: int) -> int:
        return y * width + x

    pairs = []
    for y in range(height):
        for x in range(width):
            i = idx(x, y)
            if x > 0 or wrap_x:
                pairs.append((i, idx((x - 1) % width, y)))
            if x + 1 < width or wrap_x:
                pairs.append((i, idx((x + 1) % width, y)))
            if y > 0 or wrap_y:
                pairs.append((i, idx(x, (y - 1) % height)))
            if y + 1 < height or wrap_y:
                pairs.append((i, idx(x, (y + 1) % height)))

    ys, xs = np.divmod(np.arange(height * width), width)
    # Forcing latitude in units of H, centred on the middle row
    lat_period = None
    if wrap_x and wrap_y:
        topology = Topology.TORUS
        lats = ys / height - 0.5
        lat_period = 1.0
        lons = (xs / width) * 2 * np.pi - np.pi
        theta = (xs / width) * 2 * np.pi
        phi = (ys / height) * 2 * np.pi
        ring = 1.1 + 0.45 * np.cos(phi)
        positions = np.stack([ring * np.cos(theta), ring * np.sin(theta), 0.45 * np.sin(phi)], axis=1)
    elif wrap_x:
        topology = Topology.CYLINDER
        lats = ys / (height - 1) - 0.5
        lons = (xs / width) * 2 * np.pi - np.pi
        polar = lats * np.pi
        positions = np.stack([np.cos(polar) * np.cos(lons), np.cos(polar) * np.sin(lons), np.sin(polar)], axis=1)
    elif wrap_y:
        raise TopologyError("lattice wrapping only in y is not supported; transpose the grid")
    else:
        topology = Topology.PLANE
        lats = ys / (height - 1) - 0.5
        lons = (xs / (width - 1)) * 2 * np.pi - np.pi
        positions = np.stack([xs, ys, np.zeros_like(xs)], axis=1).astype(np.float64)

    graph = Graph(
        topology=topology,
        positions=positions,
        adjacency=_ordered_neighbors(height * width, pairs),
        lats=lats,
        lons=lons,
        lat_period=lat_period,
        band_amplitude=LATTICE_BAND_AMPLITUDE,
        grid_shape=(height, width),
        wrap=(wrap_x, wrap_y),
        faces=_lattice_faces(height, width, wrap_x, wrap_y),
    )
    return _finish(graph)


def _lattice_faces(height: int, width: int, wrap_x: bool, wrap_y: bool) -> np.ndarray:
    """Two triangles per lattice quad that exists under the wrap rules."""
    nx = width if wrap_x else width - 1
    ny = height if wrap_y else height - 1
    y, x = np.meshgrid(np.arange(ny), np.arange(nx), indexing="ij")
    x, y = x.ravel(), y.ravel()
    x1 = (x + 1) % width
    y1 = (y + 1) % height
    a = y * width + x
    b = y * width + x1
    c = y1 * width + x1
    d = y1 * width + x
    tris = np.stack([np.stack([a, b, d], axis=1), np.stack([b, c, d], axis=1)], axis=1)
    return tris.reshape(-1, 3)


def _finish(graph: Graph) -> Graph:
    graph.check()
    logger.debug("Built %s", graph.summary())
    return graph


def clamp_int(x: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(x)))


def resolution_to_size(topology: Topology, resolution: int) -> Dict[str, int]:
    """
    Concrete size for a single integer resolution.

    Returns:
        {"subdivisions": s} for the spheres, {"count": n} for Fibonacci
        sampling, {"height": H, "width": W} for lattices
    """
    resolution = int(resolution)
    if resolution < 0:
        raise TopologyError(f"resolution must be non-negative, got {resolution}")
    if topology in (Topology.ICOSPHERE, Topology.HEXSPHERE):
        return {"subdivisions": resolution}
    if topology is Topology.FIBONACCI:
        return {"count": clamp_int(800 + resolution * 1600, 600, 5000)}
    return {
        "height": clamp_int(48 + resolution * 16, 48, 192),
        "width": clamp_int(96 + resolution * 32, 96, 384),
    }


def build(
    topology: Topology | str,
    resolution: int = 2,
    *,
    height: Optional[int] = None,
    width: Optional[int] = None,
    count: Optional[int] = None,
    k: int = 6,
) -> Graph:
    """
    Single entry point: build(topology, resolution) -> Graph.

    Explicit sizes (height/width for lattices, count for Fibonacci)
    override the resolution mapping.

    Raises:
        TopologyError: unknown topology or invalid size
    """
    if not isinstance(topology, Topology):
        try:
            topology = Topology(str(topology).lower())
        except ValueError:
            raise TopologyError(f"Unknown topology: {topology}") from None

    size = resolution_to_size(topology, resolution)

    if topology is Topology.ICOSPHERE:
        return build_icosphere(size["subdivisions"])
    if topology is Topology.HEXSPHERE:
        return build_hexsphere(size["subdivisions"])
    if topology is Topology.FIBONACCI:
        return build_fibonacci(count if count is not None else size["count"], k=k)

    h = height if height is not None else size["height"]
    w = width if width is not None else size["width"]
    if topology is Topology.TORUS:
        return build_lattice(h, w, wrap_x=True, wrap_y=True)
    if topology is Topology.CYLINDER:
        return build_lattice(h, w, wrap_x=True, wrap_y=False)
    return build_lattice(h, w, wrap_x=False, wrap_y=False)


def build_from_config(config: TopologyConfig) -> Graph:
    """Build the graph a TopologyConfig describes."""
    return build(
        config.kind,
        config.resolution,
        height=config.height,
        width=config.width,
        count=config.count,
        k=config.k,
    )
