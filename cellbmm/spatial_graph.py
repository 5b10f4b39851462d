"""Molecule adjacency graph built from a Delaunay triangulation.

Convention: every node is its own neighbor. `AdjacencyList[i]` always contains `i`,
so consumers that need strict neighbors must exclude it themselves.
"""
import logging
from typing import Iterator, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.sparse.csgraph import connected_components as _cc
from scipy.spatial import Delaunay, QhullError
from scipy.stats import median_abs_deviation

from .errors import DegenerateInputError
from .io import position_data


logger = logging.getLogger("cellbmm")


class AdjacencyList:
    """Symmetric neighbor lists, one sorted duplicate-free int64 array per molecule, self included."""

    include_self = True

    def __init__(self, neighbors: List[np.ndarray]):
        self._neighbors = [np.asarray(v, dtype=np.int64) for v in neighbors]

    @classmethod
    def from_edges(cls, edges: np.ndarray, n_nodes: int) -> "AdjacencyList":
        """Build from an (E, 2) undirected edge array; adds self loops."""
        edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
        loops = np.arange(n_nodes, dtype=np.int64)
        rows = np.concatenate([edges[:, 0], edges[:, 1], loops])
        cols = np.concatenate([edges[:, 1], edges[:, 0], loops])
        mtx = sp.csr_matrix((np.ones(rows.size, dtype=np.int8), (rows, cols)), shape=(n_nodes, n_nodes))
        mtx.sum_duplicates()
        mtx.sort_indices()
        return cls([mtx.indices[mtx.indptr[i]:mtx.indptr[i + 1]].copy() for i in range(n_nodes)])

    def __len__(self) -> int:
        return len(self._neighbors)

    def __getitem__(self, i: int) -> np.ndarray:
        return self._neighbors[i]

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self._neighbors)

    def __repr__(self) -> str:
        return f"AdjacencyList(n_nodes={len(self)}, n_edges={self.n_edges})"

    @property
    def n_edges(self) -> int:
        """Number of undirected edges, self loops excluded."""
        return int((sum(v.size for v in self._neighbors) - len(self._neighbors)) // 2)

    def degrees(self) -> np.ndarray:
        return np.array([v.size - 1 for v in self._neighbors], dtype=np.int64)

    def to_csr(self) -> sp.csr_matrix:
        n = len(self._neighbors)
        indptr = np.zeros(n + 1, dtype=np.int64)
        indptr[1:] = np.cumsum([v.size for v in self._neighbors])
        indices = np.concatenate(self._neighbors) if n > 0 else np.empty(0, dtype=np.int64)
        return sp.csr_matrix((np.ones(indices.size, dtype=np.int8), indices, indptr), shape=(n, n))

    def is_symmetric(self) -> bool:
        m = self.to_csr()
        return (m != m.T).nnz == 0


def _rescale(points: np.ndarray) -> np.ndarray:
    points = points - points.min()
    scale = points.max()
    if scale > 0:
        points = points / (scale * 1.1)
    return points + 1.01


def _jitter_duplicates(points: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    """Jitter points that collide at 3-decimal resolution; repeat until no exact duplicates remain."""
    _, inv, counts = np.unique(np.round(points, 3), axis=0, return_inverse=True, return_counts=True)
    is_dup = counts[inv.ravel()] > 1
    if not is_dup.any():
        return points
    logger.debug("Jittering %d molecules with duplicated coordinates", int(is_dup.sum()))
    points = points.copy()
    points[is_dup] += rng.uniform(-1e-3, 1e-3, size=(int(is_dup.sum()), 2))
    while True:
        _, inv, counts = np.unique(points, axis=0, return_inverse=True, return_counts=True)
        exact_dup = counts[inv.ravel()] > 1
        if not exact_dup.any():
            return points
        points[exact_dup] += rng.uniform(-1e-3, 1e-3, size=(int(exact_dup.sum()), 2))


def _delaunay_edges(points: np.ndarray) -> np.ndarray:
    try:
        tri = Delaunay(points)
    except QhullError as e:
        logger.warning("Delaunay triangulation failed (%s). Retrying with joggled input", type(e).__name__)
        try:
            tri = Delaunay(points, qhull_options="QJ")
        except QhullError as e2:
            raise DegenerateInputError(f"Delaunay triangulation failed: {e2}") from e2

    simplices = tri.simplices
    edges = np.vstack([simplices[:, [0, 1]], simplices[:, [1, 2]], simplices[:, [0, 2]]])
    edges.sort(axis=1)
    return np.unique(edges, axis=0)


def filter_long_edges(points: np.ndarray, edges: np.ndarray, n_mads: float = 2.0) -> np.ndarray:
    """Drop edges whose log10 length exceeds median + n_mads * MAD (normal-consistent)."""
    if edges.shape[0] == 0:
        return edges
    lengths = np.linalg.norm(points[edges[:, 0]] - points[edges[:, 1]], axis=1)
    adj_dists = np.log10(lengths)
    d_threshold = np.median(adj_dists) + n_mads * median_abs_deviation(adj_dists, scale="normal")
    keep = adj_dists <= d_threshold
    logger.debug("Edge filtering: %d of %d edges kept (log10 threshold %.4f)", int(keep.sum()), keep.size, d_threshold)
    return edges[keep]


def adjacency_list(points: Union[np.ndarray, pd.DataFrame], filter: bool = True, n_mads: float = 2.0,
                   rng: Optional[np.random.Generator] = None) -> AdjacencyList:
    """Symmetric molecule adjacency from a Delaunay triangulation of 2D positions.

    Parameters
    ----------
    points:
        (N, 2) positions, or a molecule table with `x` and `y` columns.
    filter:
        Remove statistically long edges (convex hull boundary, sparse regions).
    n_mads:
        Threshold in normalized MADs above the median log10 edge length.
    rng:
        Random source for duplicate jitter. Defaults to a fixed-seed generator.
    """
    if isinstance(points, pd.DataFrame):
        points = position_data(points)
    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError(f"points must have shape (N, 2), got {points.shape}")
    n = points.shape[0]
    if n < 3:
        raise DegenerateInputError(f"At least 3 molecules are required to build a triangulation, got {n}")
    if rng is None:
        rng = np.random.default_rng(42)

    points = _jitter_duplicates(_rescale(points), rng)
    edges = _delaunay_edges(points)
    if filter:
        edges = filter_long_edges(points, edges, n_mads=n_mads)

    return AdjacencyList.from_edges(edges, n)


def connected_components(adjacent_points: AdjacencyList) -> List[np.ndarray]:
    n_comp, labels = _cc(adjacent_points.to_csr(), directed=False)
    order = np.argsort(labels, kind="stable")
    bounds = np.cumsum(np.bincount(labels, minlength=n_comp))[:-1]
    return np.split(order.astype(np.int64), bounds)


def filter_small_components(c_components: List[np.ndarray], adjacent_points: AdjacencyList, df_spatial: pd.DataFrame,
                            min_molecules_per_cell: int = 10) -> Tuple[List[np.ndarray], AdjacencyList, pd.DataFrame]:
    """Drop connected components with fewer than `min_molecules_per_cell` molecules and reindex the rest."""
    c_components = [c for c in c_components if len(c) >= min_molecules_per_cell]

    presented_ids = np.sort(np.concatenate(c_components)) if c_components else np.empty(0, dtype=np.int64)
    map_ids = np.full(len(adjacent_points), -1, dtype=np.int64)
    map_ids[presented_ids] = np.arange(presented_ids.size, dtype=np.int64)

    c_components = [map_ids[c] for c in c_components]
    neighbors = []
    for i in presented_ids:
        v = map_ids[adjacent_points[i]]
        neighbors.append(np.sort(v[v >= 0]))

    n_dropped = len(adjacent_points) - presented_ids.size
    if n_dropped > 0:
        logger.info("Removed %d molecules in connected components smaller than %d", n_dropped, min_molecules_per_cell)
    return c_components, AdjacencyList(neighbors), df_spatial.iloc[presented_ids].reset_index(drop=True)
