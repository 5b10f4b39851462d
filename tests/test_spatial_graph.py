import numpy as np
import pandas as pd
import pytest

from cellbmm.errors import DegenerateInputError
from cellbmm.spatial_graph import (
    AdjacencyList,
    _jitter_duplicates,
    adjacency_list,
    connected_components,
    filter_long_edges,
    filter_small_components,
)


def test_adjacency_is_symmetric_with_self_loops(rng):
    points = rng.uniform(0, 100, size=(300, 2))
    adj = adjacency_list(points, rng=rng)

    assert len(adj) == 300
    assert adj.is_symmetric()
    for i, nbrs in enumerate(adj):
        assert i in nbrs
        assert np.all(np.diff(nbrs) > 0)
        for j in nbrs:
            assert i in adj[j]


def test_unfiltered_graph_is_connected(rng):
    points = rng.uniform(0, 10, size=(50, 2))
    adj = adjacency_list(points, filter=False, rng=rng)
    comps = connected_components(adj)
    assert len(comps) == 1
    assert comps[0].size == 50


def test_square_without_filtering():
    points = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
    adj = adjacency_list(points, filter=False)
    # 4 hull edges + 1 diagonal
    assert adj.n_edges == 5
    assert adj.degrees().sum() == 10


def test_accepts_molecule_table(rng):
    df = pd.DataFrame({"x": rng.uniform(size=30), "y": rng.uniform(size=30), "gene": 0})
    adj = adjacency_list(df, rng=rng)
    assert len(adj) == 30


def test_identical_points_are_jittered(rng):
    points = np.full((100, 2), 5.0)
    jittered = _jitter_duplicates(points, rng)
    assert np.unique(jittered, axis=0).shape[0] == 100
    np.testing.assert_array_equal(points, 5.0)

    adj = adjacency_list(points, rng=rng)
    assert len(adj) == 100
    assert adj.is_symmetric()


def test_distinct_points_are_not_jittered(rng):
    points = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
    assert _jitter_duplicates(points, rng) is points


@pytest.mark.parametrize("n", [0, 1, 2])
def test_too_few_points_raise(n):
    with pytest.raises(DegenerateInputError):
        adjacency_list(np.zeros((n, 2)))


def test_collinear_points_do_not_crash(rng):
    points = np.column_stack([np.arange(10.0), np.zeros(10)])
    adj = adjacency_list(points, filter=False, rng=rng)
    assert len(adj) == 10
    assert adj.is_symmetric()


def test_filter_long_edges_drops_outlier():
    points = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 0.0], [3.0, 0.0], [100.0, 0.0]])
    edges = np.array([[0, 1], [1, 2], [2, 3], [3, 4]])
    kept = filter_long_edges(points, edges, n_mads=2.0)
    # MAD is zero for the equal short edges; they must survive
    np.testing.assert_array_equal(kept, edges[:3])


def test_filtering_removes_bridge_between_clusters(rng):
    left = rng.normal([0, 0], 1.0, size=(200, 2))
    right = rng.normal([200, 0], 1.0, size=(200, 2))
    adj = adjacency_list(np.vstack([left, right]), rng=rng)
    comps = connected_components(adj)
    for comp in comps:
        assert np.all(comp < 200) or np.all(comp >= 200)


def test_connected_components_partition():
    adj = AdjacencyList.from_edges(np.array([[0, 1], [1, 2], [3, 4]]), 6)
    comps = connected_components(adj)
    assert sorted(c.tolist() for c in comps) == [[0, 1, 2], [3, 4], [5]]


def test_filter_small_components_reindexes():
    adj = AdjacencyList.from_edges(np.array([[0, 1], [1, 2], [3, 4], [5, 6], [6, 7], [7, 8]]), 10)
    df = pd.DataFrame({"x": np.arange(10.0), "y": np.zeros(10), "gene": np.arange(10)})
    comps = connected_components(adj)

    new_comps, new_adj, new_df = filter_small_components(comps, adj, df, min_molecules_per_cell=3)

    assert len(new_adj) == new_df.shape[0] == 7
    assert new_df["gene"].tolist() == [0, 1, 2, 5, 6, 7, 8]
    for nbrs in new_adj:
        assert nbrs.min() >= 0 and nbrs.max() < len(new_adj)
    for comp in new_comps:
        assert comp.min() >= 0 and comp.max() < len(new_adj)
    assert sorted(len(c) for c in new_comps) == [3, 4]
    assert new_adj.is_symmetric()
    assert new_adj.n_edges == 5


def test_filter_small_components_keeps_everything_when_large_enough():
    adj = AdjacencyList.from_edges(np.array([[0, 1], [1, 2]]), 3)
    df = pd.DataFrame({"x": [0.0, 1.0, 2.0], "y": 0.0, "gene": [0, 1, 2]})
    _, new_adj, new_df = filter_small_components(connected_components(adj), adj, df, min_molecules_per_cell=3)
    assert len(new_adj) == 3
    pd.testing.assert_frame_equal(new_df, df)
