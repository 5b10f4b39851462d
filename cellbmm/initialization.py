import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.cluster import KMeans, MiniBatchKMeans
from sklearn.neighbors import KDTree

from .bmm_data import BmmData
from .component import Component
from .distributions import CategoricalSmoothed, CellCenter, MvNormal, ShapePrior
from .errors import DegenerateInputError
from .io import composition_data, confidence_data, position_data
from .logging_utils import LOGGER_NAME, frame_logger
from .spatial_graph import AdjacencyList, adjacency_list, connected_components, filter_small_components


logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class InitialParams:
    """Candidate cell centers, their covariances and the molecule -> center labels (-1 = unassigned)."""

    centers: np.ndarray
    covs: np.ndarray
    assignment: np.ndarray

    def __post_init__(self):
        centers = np.array(self.centers, dtype=np.float64).reshape(-1, 2)
        covs = np.array(self.covs, dtype=np.float64).reshape(-1, 2, 2)
        assignment = np.array(self.assignment, dtype=np.int64).ravel()
        if covs.shape[0] != centers.shape[0]:
            raise ValueError(f"Got {covs.shape[0]} covariances for {centers.shape[0]} centers")
        if assignment.size and (assignment.min() < -1 or assignment.max() >= centers.shape[0]):
            raise ValueError("assignment labels must be in [-1, n_comps)")
        for arr in (centers, covs, assignment):
            arr.flags.writeable = False
        object.__setattr__(self, "centers", centers)
        object.__setattr__(self, "covs", covs)
        object.__setattr__(self, "assignment", assignment)

    @property
    def n_comps(self) -> int:
        return self.centers.shape[0]


def _kdtree_query(points: np.ndarray, queries: np.ndarray, k: int = 1) -> Tuple[np.ndarray, np.ndarray]:
    """Query k nearest `points` for every row of `queries`; returns (indices, distances)."""
    n = points.shape[0]
    k = max(1, min(int(k), n))
    leaf = max(20, min(64, n // 10 if n >= 100 else 20))
    kdt = KDTree(points, leaf_size=leaf)
    dist, ind = kdt.query(queries, k=k, return_distance=True, breadth_first=True, sort_results=True)
    return np.asarray(ind, dtype=np.int64), dist


def assign_cells_to_centers(df_spatial: pd.DataFrame, centers: Union[pd.DataFrame, np.ndarray]) -> np.ndarray:
    center_pos = position_data(centers) if isinstance(centers, pd.DataFrame) else np.asarray(centers, dtype=np.float64)
    if center_pos.shape[0] == 0:
        raise DegenerateInputError("No centers to assign molecules to")
    ind, _ = _kdtree_query(center_pos, position_data(df_spatial), k=1)
    return ind[:, 0]


def _dense_rank(assignment: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Compact labels >= 0 to 0..K-1; returns (new labels, used old labels)."""
    assignment = np.asarray(assignment, dtype=np.int64)
    used = np.unique(assignment[assignment >= 0])
    res = np.full(assignment.shape, -1, dtype=np.int64)
    mask = assignment >= 0
    res[mask] = np.searchsorted(used, assignment[mask])
    return res, used


def covs_from_assignment(df_spatial: pd.DataFrame, assignment: np.ndarray, n_comps: Optional[int] = None,
                         default_cov: Optional[np.ndarray] = None) -> np.ndarray:
    """Empirical covariance per cluster; degenerate clusters get the mean covariance of the valid ones.

    If no cluster is valid, all clusters get `default_cov`, or `DegenerateInputError` is raised
    when it isn't given.
    """
    assignment = np.asarray(assignment, dtype=np.int64)
    if n_comps is None:
        n_comps = int(assignment.max()) + 1 if assignment.size else 0
    pos_data = position_data(df_spatial)

    covs = np.zeros((n_comps, 2, 2), dtype=np.float64)
    valid = np.zeros(n_comps, dtype=bool)
    for ci in range(n_comps):
        pts = pos_data[assignment == ci]
        if pts.shape[0] < 2:
            continue
        cov = np.cov(pts, rowvar=False)
        if np.all(np.diag(cov) > 0):
            covs[ci] = cov
            valid[ci] = True

    if n_comps > 0 and not valid.any():
        if default_cov is not None:
            logger.debug("No cluster has a valid covariance; using the default one for all %d clusters", n_comps)
            return np.tile(np.asarray(default_cov, dtype=np.float64).reshape(2, 2), (n_comps, 1, 1))
        raise DegenerateInputError("Can't estimate covariances: no cluster has at least 2 molecules with non-zero spread")
    if (~valid).any():
        mean_cov = covs[valid].mean(axis=0)
        covs[~valid] = mean_cov
        logger.debug("Replaced %d degenerate cluster covariances by the mean covariance", int((~valid).sum()))
    return covs


def _uniform_covs(std: float, n_comps: int) -> np.ndarray:
    return np.tile(np.diag([float(std) ** 2, float(std) ** 2]), (n_comps, 1, 1))


def _spread_cov(pos_data: np.ndarray, n_comps: int) -> np.ndarray:
    """Isotropic covariance of a cell that takes `1 / n_comps` of the data spread."""
    var = float(np.var(pos_data, axis=0).mean()) / max(int(n_comps), 1) if pos_data.shape[0] > 1 else 0.0
    if not np.isfinite(var) or var <= 0:
        var = 1.0
    return np.eye(2) * var


def initial_params_from_centers(df_spatial: pd.DataFrame, centers: Union[pd.DataFrame, np.ndarray],
                                default_std: Optional[float] = None) -> InitialParams:
    """Labels molecules by their nearest prior center. Every center is kept, including the ones without molecules."""
    center_pos = position_data(centers) if isinstance(centers, pd.DataFrame) else np.asarray(centers, dtype=np.float64)
    assignment = assign_cells_to_centers(df_spatial, center_pos)
    n_comps = center_pos.shape[0]
    n_empty = n_comps - np.unique(assignment).size
    if n_empty > 0:
        logger.info("%d of %d prior centers got no molecules", n_empty, n_comps)

    if default_std is None:
        covs = covs_from_assignment(df_spatial, assignment, n_comps=n_comps,
                                    default_cov=_spread_cov(position_data(df_spatial), n_comps))
    else:
        covs = _uniform_covs(default_std, n_comps)
    return InitialParams(center_pos, covs, assignment)


def _kmedoid_centers(pos_data: np.ndarray, n_clusters: int, rng: np.random.Generator) -> np.ndarray:
    seed = int(rng.integers(0, 2 ** 31 - 1))
    n = pos_data.shape[0]
    if n <= n_clusters:
        return np.arange(n, dtype=np.int64)
    if n > 50000:
        bs = int(max(1024, min(8192, n // 5)))
        km = MiniBatchKMeans(n_clusters=n_clusters, init="k-means++", n_init=1, random_state=seed,
                             batch_size=bs, max_iter=60, reassignment_ratio=0.01, verbose=0)
    else:
        km = KMeans(n_clusters=n_clusters, n_init=1, random_state=seed, max_iter=200)
    km.fit(pos_data)
    ind, _ = _kdtree_query(pos_data, km.cluster_centers_, k=1)
    return np.unique(ind[:, 0])


def cell_centers_with_clustering(df_spatial: pd.DataFrame, n_clusters: int, scale: Optional[float] = None,
                                 min_molecules_per_cell: Optional[int] = None,
                                 rng: Optional[np.random.Generator] = None) -> InitialParams:
    """Medoid clustering of molecule positions into at most `n_clusters` candidate cells.

    `n_clusters` is capped at `N // max(min_molecules_per_cell, 2)`, so that clusters can have
    a covariance. Over-requests are never an error: if still no cluster has a valid covariance,
    all of them get an isotropic one from the spread of the data.
    """
    if rng is None:
        rng = np.random.default_rng(42)
    n_mols = df_spatial.shape[0]
    if n_mols == 0:
        raise DegenerateInputError("Can't cluster an empty molecule table")
    n_clusters = max(1, min(int(n_clusters), n_mols // max(int(min_molecules_per_cell or 0), 2)))

    pos_data = position_data(df_spatial)
    medoid_ids = _kmedoid_centers(pos_data, n_clusters, rng)
    cluster_centers = pos_data[medoid_ids]
    ind, _ = _kdtree_query(cluster_centers, pos_data, k=1)
    cluster_labels, used = _dense_rank(ind[:, 0])
    cluster_centers = cluster_centers[used]

    if scale is None:
        covs = covs_from_assignment(df_spatial, cluster_labels, n_comps=used.size,
                                    default_cov=_spread_cov(pos_data, used.size))
    else:
        covs = _uniform_covs(scale, used.size)
    return InitialParams(cluster_centers, covs, cluster_labels)


def _maximize_assigned(components: List[Component], df_spatial: pd.DataFrame, assignment: np.ndarray) -> None:
    pos_data = position_data(df_spatial)
    genes = composition_data(df_spatial)
    confidences = confidence_data(df_spatial)
    for ci, comp in enumerate(components):
        ids = np.flatnonzero(assignment == ci)
        if ids.size > 0:
            comp.maximize(pos_data[ids], genes[ids], None if confidences is None else confidences[ids])


def _n_genes(df_spatial: pd.DataFrame, gene_num: Optional[int]) -> int:
    if gene_num is not None:
        return int(gene_num)
    genes = composition_data(df_spatial)
    return int(genes.max()) + 1 if genes.size and genes.max() >= 0 else 1


def _birth_sampler(gene_num: int, size_prior: Optional[ShapePrior], new_component_weight: float) -> Component:
    # position_params of the sampler are never used
    return Component(MvNormal(np.zeros(2)), CategoricalSmoothed.uniform(gene_num), shape_prior=size_prior,
                     prior_weight=new_component_weight, can_be_dropped=False)


def initial_distributions_from_centers(df_spatial: pd.DataFrame, prior_centers: pd.DataFrame, *,
                                       new_component_weight: float, prior_component_weight: float,
                                       n_degrees_of_freedom_center: int, shape_deg_freedom: int,
                                       size_prior: Optional[ShapePrior] = None, center_std: Optional[float] = None,
                                       default_std: Optional[float] = None, gene_smooth: float = 1.0,
                                       gene_num: Optional[int] = None,
                                       adjacent_points: Optional[AdjacencyList] = None,
                                       graph_kwargs: Optional[Dict[str, Any]] = None,
                                       rng: Optional[np.random.Generator] = None, **kwargs) -> BmmData:
    """Creates `BmmData` with components anchored at `prior_centers` (e.g. nuclei from DAPI).

    Parameters
    ----------
    df_spatial:
        Molecule table with columns `x`, `y`, `gene`.
    prior_centers:
        Center positions with columns `x` and `y`.
    new_component_weight:
        Prior weight of the birth sampler.
    prior_component_weight:
        Prior weight of the center-anchored components.
    n_degrees_of_freedom_center:
        Pseudo-count pulling each component's mean to its prior center.
    shape_deg_freedom:
        Degrees of freedom of the shape prior. Ignored if `size_prior` is given.
    size_prior:
        Shape prior for position covariances. Estimated from the initial covariances if None.
    center_std:
        Std of the center prior. Mean initial covariance if None.
    default_std:
        Initial std of all components. Estimated from the assignment if None.
    gene_smooth:
        Pseudo-count of the gene composition of every component.
    gene_num:
        Total number of genes. `max(gene) + 1` if None.
    adjacent_points:
        Precomputed adjacency. Built with `graph_kwargs` if None.
    kwargs:
        Passed to `BmmData`.
    """
    if rng is None:
        rng = np.random.default_rng(42)
    gene_num = _n_genes(df_spatial, gene_num)
    if adjacent_points is None:
        adjacent_points = adjacency_list(df_spatial, rng=rng, **(graph_kwargs or {}))

    init_params = initial_params_from_centers(df_spatial, prior_centers, default_std=default_std)
    covs = init_params.covs
    mean_cov = covs.mean(axis=0)

    center_cov = mean_cov if center_std is None else np.diag([center_std ** 2, center_std ** 2])
    if size_prior is None:
        size_prior = ShapePrior(shape_deg_freedom, np.diag(mean_cov))

    assignment = np.array(init_params.assignment)

    components = []
    for center, cov in zip(init_params.centers, covs):
        center_prior = CellCenter(center, center_cov, n_degrees_of_freedom_center)
        components.append(Component(MvNormal(center, cov), CategoricalSmoothed.uniform(gene_num, smooth=float(gene_smooth)),
                                    shape_prior=size_prior, center_prior=center_prior,
                                    prior_weight=prior_component_weight, can_be_dropped=False))

    _maximize_assigned(components, df_spatial, assignment)

    sampler = _birth_sampler(gene_num, size_prior, new_component_weight)
    return BmmData(components, df_spatial, adjacent_points, sampler, assignment, **kwargs)


def initial_distributions_from_params(df_spatial: pd.DataFrame, initial_params: InitialParams, *,
                                      size_prior: ShapePrior, new_component_weight: float,
                                      gene_smooth: float = 1.0, gene_num: Optional[int] = None,
                                      adjacent_points: Optional[AdjacencyList] = None,
                                      graph_kwargs: Optional[Dict[str, Any]] = None,
                                      rng: Optional[np.random.Generator] = None, **kwargs) -> BmmData:
    """Creates `BmmData` with droppable components seeded from clustering results."""
    if rng is None:
        rng = np.random.default_rng(42)
    gene_num = _n_genes(df_spatial, gene_num)
    if adjacent_points is None:
        adjacent_points = adjacency_list(df_spatial, rng=rng, **(graph_kwargs or {}))

    components = [
        Component(MvNormal(center, cov), CategoricalSmoothed.uniform(gene_num, smooth=float(gene_smooth)),
                  shape_prior=size_prior, prior_weight=new_component_weight, can_be_dropped=True)
        for center, cov in zip(initial_params.centers, initial_params.covs)
    ]
    assignment = np.array(initial_params.assignment)
    _maximize_assigned(components, df_spatial, assignment)

    sampler = _birth_sampler(gene_num, size_prior, new_component_weight)
    return BmmData(components, df_spatial, adjacent_points, sampler, assignment, **kwargs)


def initial_distributions(df_spatial: pd.DataFrame, init: Union[pd.DataFrame, InitialParams], **kwargs) -> BmmData:
    """Dispatch on the initialization source: prior centers table or `InitialParams`."""
    if isinstance(init, InitialParams):
        return initial_distributions_from_params(df_spatial, init, **kwargs)
    if isinstance(init, pd.DataFrame):
        return initial_distributions_from_centers(df_spatial, init, **kwargs)
    raise TypeError(f"Unsupported initialization source: {type(init).__name__}")


## Splitting

def _split_by_quantiles(df: pd.DataFrame, n: int, key: str) -> List[pd.DataFrame]:
    if n <= 1 or df.shape[0] == 0:
        return [df.reset_index(drop=True)]
    vals = df[key].to_numpy()
    edges = np.quantile(vals, np.linspace(0, 1, n + 1)[1:-1])
    factor = np.searchsorted(edges, vals, side="left")
    return [df[factor == i].reset_index(drop=True) for i in range(n) if (factor == i).any()]


def split_spatial_data(df: pd.DataFrame, n_frames: Optional[int] = None,
                       mean_mols_per_frame: Optional[int] = None) -> List[pd.DataFrame]:
    """Split molecules into a quantile grid of rectangular frames (about `n_frames` of them)."""
    if n_frames is None:
        if mean_mols_per_frame is None:
            raise ValueError("Either n_frames or mean_mols_per_frame must be provided")
        n_frames = int(round(df.shape[0] / float(mean_mols_per_frame)))
    n_frames = max(1, int(n_frames))

    n_hor = max(1, int(np.floor(np.sqrt(n_frames))))
    n_ver = int(np.ceil(n_frames / n_hor))
    frames = []
    for df_row in _split_by_quantiles(df, n_ver, "y"):
        frames.extend(_split_by_quantiles(df_row, n_hor, "x"))
    return frames


def subset_df_by_coords(subsetting_df: pd.DataFrame, coord_df: pd.DataFrame) -> pd.DataFrame:
    """Rows of `subsetting_df` inside the bounding box of `coord_df`."""
    pos_subs = position_data(subsetting_df)
    pos_coords = position_data(coord_df)
    if pos_coords.shape[0] == 0:
        return subsetting_df.iloc[0:0].reset_index(drop=True)
    ids = np.all((pos_subs >= pos_coords.min(axis=0)) & (pos_subs <= pos_coords.max(axis=0)), axis=1)
    return subsetting_df[ids].reset_index(drop=True)


def _preferred_n_jobs() -> int:
    """Worker count: CELLBMM_N_JOBS, else ~1/3 of the CPUs capped at 32."""
    v_raw = os.environ.get("CELLBMM_N_JOBS", "").strip()
    if v_raw:
        try:
            v = int(v_raw)
            if v > 0:
                return v
        except ValueError:
            logger.warning("Ignoring invalid CELLBMM_N_JOBS=%r", v_raw)
    cpu = max(1, os.cpu_count() or 4)
    return max(1, min(32, cpu // 3 if cpu >= 3 else 1))


def _joblib_backend() -> str:
    return os.environ.get("CELLBMM_JOBLIB_BACKEND", "loky")


def _run_frames(fn, frame_args: Sequence[tuple], n_jobs: Optional[int]) -> List[BmmData]:
    n_jobs = _preferred_n_jobs() if n_jobs is None else int(n_jobs)
    if n_jobs == 1 or len(frame_args) <= 1:
        return [fn(*args) for args in frame_args]
    return Parallel(n_jobs=min(n_jobs, len(frame_args)), backend=_joblib_backend(), verbose=0)(
        delayed(fn)(*args) for args in frame_args
    )


def _frame_rngs(seed: Optional[int], n: int) -> List[np.random.Generator]:
    return [np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(n)]


def frame_graph(df_frame: pd.DataFrame, rng: np.random.Generator, graph_kwargs: Optional[Dict[str, Any]] = None,
                min_molecules_per_cell: Optional[int] = None) -> Tuple[pd.DataFrame, AdjacencyList]:
    """Adjacency of one frame; molecules in connected components below `min_molecules_per_cell` are removed."""
    adjacent_points = adjacency_list(df_frame, rng=rng, **(graph_kwargs or {}))
    if min_molecules_per_cell:
        c_components = connected_components(adjacent_points)
        _, adjacent_points, df_frame = filter_small_components(c_components, adjacent_points, df_frame,
                                                               min_molecules_per_cell=int(min_molecules_per_cell))
    return df_frame, adjacent_points


@contextmanager
def _frame_errors(frame_id: int):
    """Tags `DegenerateInputError` raised while building a frame with `frame_id`."""
    try:
        yield
    except DegenerateInputError as e:
        if e.frame_id is not None:
            raise
        raise DegenerateInputError(e.message, frame_id=frame_id) from e


def _build_frame_with_centers(frame_id: int, df_frame: pd.DataFrame, df_centers: pd.DataFrame, rng: np.random.Generator,
                              graph_kwargs: Dict[str, Any], min_molecules_per_cell: Optional[int],
                              kwargs: Dict[str, Any]) -> BmmData:
    with _frame_errors(frame_id):
        df_frame, adjacent_points = frame_graph(df_frame, rng, graph_kwargs, min_molecules_per_cell)
        if df_frame.shape[0] == 0:
            raise DegenerateInputError("no molecules left after filtering small components")
        bm_data = initial_distributions_from_centers(df_frame, df_centers, adjacent_points=adjacent_points, rng=rng,
                                                     frame_id=frame_id, **kwargs)
    frame_logger(frame_id).info("%d molecules, %d prior centers", bm_data.n_molecules, len(bm_data.components))
    return bm_data


def _build_frame_with_clustering(frame_id: int, df_frame: pd.DataFrame, n_clusters: int, rng: np.random.Generator,
                                 scale: Optional[float], shape_deg_freedom: int, graph_kwargs: Dict[str, Any],
                                 min_molecules_per_cell: Optional[int], kwargs: Dict[str, Any]) -> BmmData:
    with _frame_errors(frame_id):
        df_frame, adjacent_points = frame_graph(df_frame, rng, graph_kwargs, min_molecules_per_cell)
        if df_frame.shape[0] == 0:
            raise DegenerateInputError("no molecules left after filtering small components")
        init_params = cell_centers_with_clustering(df_frame, n_clusters, scale=scale,
                                                   min_molecules_per_cell=min_molecules_per_cell, rng=rng)
        if scale is None:
            size_prior = ShapePrior(shape_deg_freedom, np.diag(init_params.covs.mean(axis=0)))
        else:
            size_prior = ShapePrior(shape_deg_freedom, [scale ** 2, scale ** 2])
        bm_data = initial_distributions_from_params(df_frame, init_params, size_prior=size_prior,
                                                    adjacent_points=adjacent_points, rng=rng, frame_id=frame_id, **kwargs)
    frame_logger(frame_id).info("%d molecules, %d clusters of %d requested", bm_data.n_molecules,
                                len(bm_data.components), n_clusters)
    return bm_data


def initial_distribution_arr(df_spatial: Union[pd.DataFrame, List[pd.DataFrame]], *, shape_deg_freedom: int,
                             scale: Optional[float] = None, new_component_weight: float = 0.2,
                             df_centers: Optional[pd.DataFrame] = None, center_std: Optional[float] = None,
                             center_component_weight: float = 1.0, n_degrees_of_freedom_center: int = 1000,
                             n_cells_init: int = 1000, min_molecules_per_cell: Optional[int] = None,
                             n_frames: Optional[int] = None, mean_mols_per_frame: Optional[int] = None,
                             graph_kwargs: Optional[Dict[str, Any]] = None, seed: Optional[int] = 42,
                             n_jobs: Optional[int] = 1, **kwargs) -> List[BmmData]:
    """Build one independent `BmmData` per spatial frame.

    With `df_centers`, components are anchored at the prior centers inside each frame's bounding
    box; a frame without centers raises `DegenerateInputError`. Without centers, `n_cells_init`
    candidate cells are spread over the frames by clustering. `min_molecules_per_cell` removes
    small connected components of the adjacency graph and caps the number of clusters.
    """
    if isinstance(df_spatial, pd.DataFrame):
        if n_frames is not None or mean_mols_per_frame is not None:
            dfs_spatial = split_spatial_data(df_spatial, n_frames=n_frames, mean_mols_per_frame=mean_mols_per_frame)
        else:
            dfs_spatial = [df_spatial]
    else:
        dfs_spatial = list(df_spatial)
    if len(dfs_spatial) == 0:
        raise DegenerateInputError("No molecules to build frames from")
    logger.info("Number of frames: %d; median number of molecules per frame: %d",
                len(dfs_spatial), int(np.median([d.shape[0] for d in dfs_spatial])))

    gene_num = kwargs.pop("gene_num", None)
    if gene_num is None:
        gene_num = max(_n_genes(d, None) for d in dfs_spatial)
    graph_kwargs = dict(graph_kwargs or {})
    rngs = _frame_rngs(seed, len(dfs_spatial))

    if df_centers is not None:
        size_prior = None if scale is None else ShapePrior(shape_deg_freedom, [scale ** 2, scale ** 2])
        dfs_centers = [subset_df_by_coords(df_centers, d) for d in dfs_spatial]
        for i, d in enumerate(dfs_centers):
            if d.shape[0] == 0:
                raise DegenerateInputError("frame doesn't contain cell centers. Try to reduce number of frames "
                                           "or provide better segmentation.", frame_id=i)
        frame_kwargs = dict(size_prior=size_prior, new_component_weight=new_component_weight,
                            prior_component_weight=center_component_weight, center_std=center_std,
                            default_std=scale, n_degrees_of_freedom_center=n_degrees_of_freedom_center,
                            shape_deg_freedom=shape_deg_freedom, gene_num=gene_num, **kwargs)
        args = [(i, d, c, r, graph_kwargs, min_molecules_per_cell, frame_kwargs)
                for i, (d, c, r) in enumerate(zip(dfs_spatial, dfs_centers, rngs))]
        return _run_frames(_build_frame_with_centers, args, n_jobs)

    n_clusters = max(n_cells_init // len(dfs_spatial), 2)
    frame_kwargs = dict(new_component_weight=new_component_weight, gene_num=gene_num, **kwargs)
    args = [(i, d, n_clusters, r, scale, shape_deg_freedom, graph_kwargs, min_molecules_per_cell, frame_kwargs)
            for i, (d, r) in enumerate(zip(dfs_spatial, rngs))]
    return _run_frames(_build_frame_with_clustering, args, n_jobs)
