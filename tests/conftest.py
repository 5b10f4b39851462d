import logging

import numpy as np
import pandas as pd
import pytest


BLOB_CENTERS = np.array([[x, y] for x in (0.0, 40.0, 80.0, 120.0, 160.0) for y in (0.0, 40.0)])


@pytest.fixture
def rng():
    return np.random.default_rng(0)


def make_blobs(rng, n_per_blob=(60, 80, 100, 120, 140, 60, 80, 100, 120, 140), std=2.0, n_genes=5):
    """Ten well separated Gaussian blobs; blob `i` mostly expresses gene `i % n_genes`."""
    frames = []
    for i, (center, n) in enumerate(zip(BLOB_CENTERS, n_per_blob)):
        pos = rng.normal(center, std, size=(n, 2))
        genes = np.where(rng.random(n) < 0.8, i % n_genes, rng.integers(0, n_genes, size=n))
        frames.append(pd.DataFrame({"x": pos[:, 0], "y": pos[:, 1], "gene": genes, "blob": i}))
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def blobs_df(rng):
    return make_blobs(rng)


@pytest.fixture
def cellbmm_caplog(caplog):
    """caplog that also sees records of the `cellbmm` logger when it doesn't propagate."""
    logger = logging.getLogger("cellbmm")
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger="cellbmm")
    yield caplog
    logger.removeHandler(caplog.handler)
