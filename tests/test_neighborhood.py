import re

import numpy as np
import pandas as pd
import pytest

from cellbmm.errors import InvalidConfigurationError
from cellbmm.neighborhood import (
    embedding_to_hex,
    gene_pca,
    generate_randomized_gene_vectors,
    lab_to_rgb,
    neighborhood_count_matrix,
    normalize_embedding_to_lab_range,
    select_ids_uniformly,
)


def test_small_k_is_clamped(blobs_df, cellbmm_caplog):
    cm = neighborhood_count_matrix(blobs_df, k=1, normalize=False)
    assert "Setting it to 3" in cellbmm_caplog.text
    np.testing.assert_allclose(np.asarray(cm.sum(axis=1)).ravel(), 3.0)


def test_count_matrix_shape_and_rows(blobs_df):
    cm = neighborhood_count_matrix(blobs_df, k=10)
    assert cm.shape == (blobs_df.shape[0], 5)
    np.testing.assert_allclose(np.asarray(cm.sum(axis=1)).ravel(), 1.0, rtol=1e-5)


def test_raw_counts_use_confidences():
    pos = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [100.0, 0.0]])
    genes = np.array([0, 1, 1, 0])
    cm = neighborhood_count_matrix(pos, genes, k=3, confidences=np.array([1.0, 0.5, 0.5, 1.0]),
                                   normalize_by_dist=False, normalize=False).toarray()
    np.testing.assert_allclose(cm[0], [1.0, 1.0])
    np.testing.assert_allclose(cm[1], [1.0, 1.0])


def test_confidences_dropped_with_distance_weights(blobs_df, cellbmm_caplog):
    conf = np.full(blobs_df.shape[0], 0.5)
    neighborhood_count_matrix(blobs_df[["x", "y"]].to_numpy(), blobs_df["gene"].to_numpy(), k=5, confidences=conf)
    assert "Ignoring them" in cellbmm_caplog.text


def test_gene_pca_methods(blobs_df):
    cm = neighborhood_count_matrix(blobs_df, k=10)
    scores, loadings = gene_pca(cm, 3, method="dense")
    assert scores.shape == (blobs_df.shape[0], 3)
    assert loadings.shape == (3, 5)
    scores, _ = gene_pca(cm, 3, method="sparse")
    assert scores.shape == (blobs_df.shape[0], 3)
    with pytest.raises(InvalidConfigurationError):
        gene_pca(cm, 3, method="qr")


def test_randomized_gene_vectors(blobs_df, rng):
    cm = neighborhood_count_matrix(blobs_df, k=10)
    vecs = generate_randomized_gene_vectors(cm, blobs_df["gene"].to_numpy(), n_components=7, rng=rng)
    assert vecs.shape == (5, 7)


def test_normalize_embedding_to_lab_range(rng):
    emb = rng.normal(size=(1000, 3))
    lab = normalize_embedding_to_lab_range(emb)
    assert lab.shape == emb.shape
    assert lab[:, 0].min() >= 10 - 1e-9 and lab[:, 0].max() <= 90 + 1e-9
    assert np.abs(lab[:, 1:]).max() <= 100 + 1e-9
    assert not np.shares_memory(lab, emb)

    with pytest.raises(InvalidConfigurationError):
        normalize_embedding_to_lab_range(emb[:, :2])


def test_select_ids_uniformly(rng):
    coords = np.vstack([rng.normal(0, 0.1, size=(900, 2)), rng.uniform(5, 10, size=(100, 2))])
    ids = select_ids_uniformly(coords, n=100, rng=rng)
    assert ids.size == 100
    assert np.unique(ids).size == 100
    np.testing.assert_array_equal(select_ids_uniformly(coords[:50], n=100), np.arange(50))


def test_lab_colors_to_hex():
    lab = np.array([[100.0, 0.0, 0.0], [0.0, 0.0, 0.0], [50.0, 80.0, 60.0]])
    rgb = lab_to_rgb(lab)
    np.testing.assert_allclose(rgb[0], 1.0, atol=1e-3)
    np.testing.assert_allclose(rgb[1], 0.0, atol=1e-6)
    assert rgb[2, 0] > rgb[2, 1] and rgb[2, 0] > rgb[2, 2]
    assert lab_to_rgb(np.empty((0, 3))).shape == (0, 3)
    colors = embedding_to_hex(lab)
    assert colors[0] == "#ffffff"
    assert colors[1] == "#000000"
    assert all(re.fullmatch(r"#[0-9a-f]{6}", c) for c in colors)


def test_accepts_dataframe_input():
    df = pd.DataFrame({"x": [0.0, 1.0, 2.0, 3.0], "y": 0.0, "gene": [0, 1, -1, 1]})
    cm = neighborhood_count_matrix(df, k=3, normalize=False).toarray()
    assert cm.shape == (4, 2)
    # missing genes are not counted
    assert cm.sum() < 12
