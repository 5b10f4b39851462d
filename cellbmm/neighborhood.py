"""Gene composition of molecule neighborhoods and its color embedding.

Auxiliary to the fit: used to color molecules by local transcriptional composition.
"""
import logging
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp
from sklearn.decomposition import PCA, TruncatedSVD
from sklearn.neighbors import KDTree

from .errors import InvalidConfigurationError
from .io import composition_data, confidence_data, position_data


logger = logging.getLogger("cellbmm")


def _knn(pos_data: np.ndarray, k: int) -> Tuple[np.ndarray, np.ndarray]:
    n = pos_data.shape[0]
    leaf = max(20, min(64, n // 10 if n >= 100 else 20))
    kdt = KDTree(pos_data, leaf_size=leaf)
    dist, ind = kdt.query(pos_data, k=k, return_distance=True, breadth_first=True, sort_results=True)
    return np.asarray(ind, dtype=np.int64), dist


def neighborhood_count_matrix(pos_data: Union[np.ndarray, pd.DataFrame], genes: Optional[np.ndarray] = None, k: int = 10, *,
                              confidences: Optional[np.ndarray] = None, n_genes: Optional[int] = None,
                              normalize_by_dist: bool = True, normalize: bool = True) -> sp.csr_matrix:
    """Molecules x genes matrix of gene counts among the k nearest molecules (self included).

    With `normalize_by_dist`, neighbors are weighted by `1 / max(d, median closest distance)`.
    `normalize=False` returns raw counts (and disables distance weighting).
    """
    if isinstance(pos_data, pd.DataFrame):
        genes = composition_data(pos_data)
        pos_data = position_data(pos_data)
    pos_data = np.asarray(pos_data, dtype=np.float64)
    genes = np.asarray(genes, dtype=np.int64)
    n = pos_data.shape[0]
    if n == 0:
        raise ValueError("Can't build a neighborhood matrix for an empty molecule set")

    if k < 3:
        logger.warning("Too small value of k: %d. Setting it to 3.", k)
        k = 3

    if not normalize:
        normalize_by_dist = False

    if confidences is not None and normalize_by_dist:
        logger.warning("`confidences` are not supported with `normalize_by_dist=True`. Ignoring them.")
        confidences = None

    if n_genes is None:
        n_genes = int(genes.max()) + 1 if (genes >= 0).any() else 1
    k = min(k, n)

    neighbors, dists = _knn(pos_data, k)

    if normalize_by_dist:
        # duplicated coordinates give zero distances, so take the first non-zero one per row
        nonzero = dists > 1e-15
        has_nonzero = nonzero.any(axis=1)
        if has_nonzero.any():
            first = np.argmax(nonzero, axis=1)
            med_closest_dist = float(np.median(dists[np.arange(n), first][has_nonzero]))
        else:
            med_closest_dist = 1.0
        weights = 1.0 / np.maximum(dists, med_closest_dist)
    elif confidences is not None:
        weights = np.asarray(confidences, dtype=np.float64)[neighbors]
    else:
        weights = np.ones_like(dists)

    nn_genes = genes[neighbors]
    rows = np.repeat(np.arange(n, dtype=np.int64), k)
    mask = nn_genes.ravel() >= 0
    mtx = sp.csr_matrix((weights.ravel()[mask].astype(np.float32), (rows[mask], nn_genes.ravel()[mask])),
                        shape=(n, n_genes))
    mtx.sum_duplicates()

    if normalize:
        row_sums = np.asarray(mtx.sum(axis=1)).ravel()
        row_sums[row_sums == 0] = 1.0
        mtx = sp.diags((1.0 / row_sums).astype(np.float32)) @ mtx
    return sp.csr_matrix(mtx)


def gene_pca(count_matrix, n_pcs: int, method: str = "auto",
             rng: Optional[np.random.Generator] = None) -> Tuple[np.ndarray, np.ndarray]:
    """PCA of a molecules x genes matrix; returns (scores (N, n_pcs), loadings (n_pcs, G))."""
    if method == "auto":
        method = "dense" if np.prod(count_matrix.shape) < 1e9 else "sparse"
    seed = int((rng or np.random.default_rng(42)).integers(0, 2 ** 31 - 1))
    n_pcs = int(min(n_pcs, min(count_matrix.shape)))

    if method == "dense":
        X = count_matrix.toarray() if sp.issparse(count_matrix) else np.asarray(count_matrix)
        pca = PCA(n_components=n_pcs, random_state=seed)
        scores = pca.fit_transform(X)
        return scores, pca.components_

    if method == "sparse":
        # randomized SVD without centering, keeps the matrix sparse
        svd = TruncatedSVD(n_components=n_pcs, algorithm="randomized", random_state=seed)
        scores = svd.fit_transform(count_matrix)
        return scores, svd.components_

    raise InvalidConfigurationError(f"Unknown method: {method}. Only 'dense', 'sparse' or 'auto' are supported")


def generate_randomized_gene_vectors(neighb_cm: sp.spmatrix, gene_ids: np.ndarray, n_components: int = 50,
                                     rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Mean random projection of neighborhood compositions per gene; one row per gene present in `gene_ids`."""
    rng = rng or np.random.default_rng(42)
    gene_ids = np.asarray(gene_ids, dtype=np.int64)
    random_vectors_init = rng.standard_normal((neighb_cm.shape[1], n_components))

    row_sums = np.asarray(neighb_cm.sum(axis=1)).ravel()
    row_sums[row_sums == 0] = 1.0
    rnm_mat = np.asarray(neighb_cm @ random_vectors_init) / row_sums[:, None]

    present = np.unique(gene_ids[gene_ids >= 0])
    return np.vstack([rnm_mat[gene_ids == g].mean(axis=0) for g in present])


def normalize_embedding_to_lab_range(embedding: np.ndarray, lrange: Tuple[float, float] = (10, 90),
                                     log_colors: bool = False, trim_frac: float = 0.0125) -> np.ndarray:
    """Map an (N, 3) embedding to CIELAB ranges: L in `lrange`, a and b in [-100, 100]."""
    embedding = np.array(embedding, dtype=np.float64)
    if embedding.ndim != 2 or embedding.shape[1] != 3:
        raise InvalidConfigurationError(f"Color embedding must have exactly 3 columns, got shape {embedding.shape}")

    embedding -= np.quantile(embedding, trim_frac, axis=0)
    embedding = np.maximum(embedding, 0.0)
    max_val = np.quantile(embedding, 1.0 - trim_frac)
    if max_val > 0:
        embedding /= max_val
    embedding = np.minimum(embedding, 1.0)

    if log_colors:
        embedding = np.log10(embedding + max(np.quantile(embedding, 0.05), 1e-3))
        embedding -= embedding.min(axis=0)
        col_max = embedding.max(axis=0)
        col_max[col_max == 0] = 1.0
        embedding /= col_max

    embedding[:, 0] = embedding[:, 0] * (lrange[1] - lrange[0]) + lrange[0]
    embedding[:, 1:] = (embedding[:, 1:] - 0.5) * 200
    return embedding


def select_ids_uniformly(coords: np.ndarray, confidence: Optional[np.ndarray] = None, n: int = 10000,
                         rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Subsample spread over a 2D space: one draw per occupied grid bin, weighted by confidence."""
    rng = rng or np.random.default_rng(42)
    coords = np.asarray(coords, dtype=np.float64)
    n_total = coords.shape[0]
    if n >= n_total:
        return np.arange(n_total)
    conf = np.ones(n_total) if confidence is None else np.clip(np.asarray(confidence, dtype=np.float64), 1e-10, None)

    n_bins = max(1, int(np.sqrt(n)))
    span = np.ptp(coords, axis=0)
    span[span == 0] = 1.0
    bins = np.minimum(((coords - coords.min(axis=0)) / span * n_bins).astype(np.int64), n_bins - 1)
    bin_ids = bins[:, 0] * n_bins + bins[:, 1]

    # bins get weight proportional to sqrt of their occupancy, which flattens dense regions
    _, inv, counts = np.unique(bin_ids, return_inverse=True, return_counts=True)
    p = conf / np.sqrt(counts[inv.ravel()])
    return np.sort(rng.choice(n_total, size=n, replace=False, p=p / p.sum()))


def gene_composition_color_embedding(pca: np.ndarray, confidence: Optional[np.ndarray] = None, normalize: bool = True,
                                     sample_size: int = 10000, rng: Optional[np.random.Generator] = None,
                                     **umap_kwargs) -> np.ndarray:
    """3D UMAP of PCA scores (N, n_pcs) fitted on a subsample, returned as (N, 3)."""
    import umap  # lazy import

    pca = np.asarray(pca, dtype=np.float64)
    if pca.shape[1] < 3:
        raise InvalidConfigurationError("pca must have at least 3 components")
    rng = rng or np.random.default_rng(42)
    sample_size = min(sample_size, pca.shape[0])

    sample_ids = select_ids_uniformly(pca[:, :2], confidence, n=sample_size, rng=rng)
    umap_kwargs.setdefault("random_state", int(rng.integers(0, 2 ** 31 - 1)))
    reducer = umap.UMAP(n_components=3, **umap_kwargs)
    reducer.fit(pca[sample_ids])
    emb = reducer.transform(pca)

    if normalize:
        emb = normalize_embedding_to_lab_range(emb)
    return emb


def lab_to_rgb(lab: np.ndarray) -> np.ndarray:
    """CIELAB (D65) to sRGB in [0, 1], clipped to the gamut."""
    from skimage.color import lab2rgb  # lazy import

    lab = np.asarray(lab, dtype=np.float64).reshape(-1, 3)
    if lab.shape[0] == 0:
        return np.empty((0, 3), dtype=np.float64)
    return np.clip(lab2rgb(lab.reshape(-1, 1, 3)).reshape(-1, 3), 0.0, 1.0)


def embedding_to_hex(embedding: np.ndarray) -> np.ndarray:
    from matplotlib.colors import to_hex  # lazy import

    return np.array([to_hex(c) for c in lab_to_rgb(embedding)], dtype=object)


def gene_composition_colors(df_spatial: pd.DataFrame, k: int, method: str = "auto", n_pcs: int = 20,
                            rng: Optional[np.random.Generator] = None, **kwargs) -> np.ndarray:
    """Lab colors (N, 3) of molecules by neighborhood gene composition."""
    rng = rng or np.random.default_rng(42)
    neighb_cm = neighborhood_count_matrix(df_spatial, k=k)
    pca = gene_pca(neighb_cm, n_pcs, method=method, rng=rng)[0]
    confidence = confidence_data(df_spatial)
    return gene_composition_color_embedding(pca, confidence, rng=rng, **kwargs)
