"""Distributions owned by a mixture component.

Two parameter types share the `Distribution.maximize` protocol: `MvNormal` for molecule
positions and `CategoricalSmoothed` for gene identities. `ShapePrior` and `CellCenter`
are conjugate hyperparameters consumed by `MvNormal.maximize`.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class ShapePrior:
    """Prior on a component's position covariance: degrees of freedom and per-axis prior variances."""

    n_degrees_of_freedom: int
    variances: np.ndarray

    def __post_init__(self):
        self.variances = np.array(self.variances, dtype=np.float64).reshape(2)
        if (self.variances <= 0).any():
            raise ValueError(f"prior variances must be positive, got {self.variances}")
        if self.n_degrees_of_freedom < 0:
            raise ValueError(f"n_degrees_of_freedom must be non-negative, got {self.n_degrees_of_freedom}")

    @property
    def std_values(self) -> np.ndarray:
        return np.sqrt(self.variances)

    def var_posterior(self, eigen_values: np.ndarray, n_samples: int, prior_weight: float = 1.0) -> np.ndarray:
        """Blend sorted sample eigenvalues with sorted prior variances, `prior_weight` acting as a pseudo-count."""
        w = float(prior_weight)
        return (w * np.sort(self.variances) + n_samples * np.sort(eigen_values)) / (w + n_samples)


@dataclass
class CellCenter:
    """Prior on a component's mean position, e.g. a nucleus centroid from DAPI segmentation."""

    mean: np.ndarray
    cov: np.ndarray
    n_degrees_of_freedom: int

    def __post_init__(self):
        self.mean = np.array(self.mean, dtype=np.float64).reshape(2)
        self.cov = np.array(self.cov, dtype=np.float64).reshape(2, 2)

    def posterior_mean(self, sample_mean: np.ndarray, n_samples: int) -> np.ndarray:
        nu = float(self.n_degrees_of_freedom)
        if nu + n_samples == 0:
            return self.mean.copy()
        return (nu * self.mean + n_samples * np.asarray(sample_mean)) / (nu + n_samples)


class Distribution(ABC):
    @abstractmethod
    def maximize(self, *args, **kwargs) -> "Distribution":
        """Point-estimate update from assigned observations; returns `self`."""

    @abstractmethod
    def pdf(self, *args) -> np.ndarray:
        ...

    def copy(self) -> "Distribution":
        return copy.deepcopy(self)


def _symmetrize(m: np.ndarray) -> np.ndarray:
    return (m + m.T) / 2


class MvNormal(Distribution):
    """2D normal over molecule positions."""

    def __init__(self, mean, cov=None):
        self.mean = np.array(mean, dtype=np.float64).reshape(2)
        self.cov = np.eye(2) if cov is None else _symmetrize(np.asarray(cov, dtype=np.float64).reshape(2, 2))

    def __repr__(self) -> str:
        return f"MvNormal(mean={self.mean.tolist()}, cov={self.cov.tolist()})"

    def maximize(self, x: np.ndarray, shape_prior: Optional[ShapePrior] = None, prior_weight: float = 1.0,
                 center_prior: Optional[CellCenter] = None) -> "MvNormal":
        x = np.asarray(x, dtype=np.float64).reshape(-1, 2)
        n = x.shape[0]
        if n == 0:
            return self

        sample_mean = x.mean(axis=0)
        self.mean = sample_mean if center_prior is None else center_prior.posterior_mean(sample_mean, n)

        diff = x - sample_mean
        scatter = diff.T @ diff / n
        if shape_prior is None or float(prior_weight) <= 0:
            if n > 1:
                self.cov = _symmetrize(scatter)
            return self

        eig_vals, eig_vecs = np.linalg.eigh(_symmetrize(scatter))
        eig_vals = np.clip(eig_vals, 0.0, None)
        post_vals = shape_prior.var_posterior(eig_vals, n_samples=n, prior_weight=prior_weight)
        # eigh returns ascending eigenvalues, matching the sorted posterior
        self.cov = _symmetrize(eig_vecs @ np.diag(post_vals) @ eig_vecs.T)
        return self

    def logpdf(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape(-1, 2)
        diff = x - self.mean
        inv = np.linalg.inv(self.cov)
        _, logdet = np.linalg.slogdet(self.cov)
        maha = np.einsum("ij,jk,ik->i", diff, inv, diff)
        return -0.5 * (maha + logdet + 2 * np.log(2 * np.pi))

    def pdf(self, x: np.ndarray) -> np.ndarray:
        return np.exp(self.logpdf(x))


class CategoricalSmoothed(Distribution):
    """Multinomial (single trial) over genes with additive smoothing.

    `counts` are the pseudo-counts of the last maximization; probabilities are
    `(counts + smooth) / (sum(counts) + n_genes * smooth)`.
    """

    def __init__(self, counts, smooth: float = 1.0):
        self.counts = np.asarray(counts, dtype=np.float64).ravel()
        if (self.counts < 0).any():
            raise ValueError("counts must be non-negative")
        if smooth < 0:
            raise ValueError(f"smooth must be non-negative, got {smooth}")
        self.smooth = float(smooth)
        self.n_samples = float(self.counts.sum())

    @classmethod
    def uniform(cls, n_genes: int, smooth: float = 1.0) -> "CategoricalSmoothed":
        return cls(np.ones(n_genes, dtype=np.float64), smooth=smooth)

    def __repr__(self) -> str:
        return f"CategoricalSmoothed(n_genes={self.n_genes}, n_samples={self.n_samples:g}, smooth={self.smooth:g})"

    @property
    def n_genes(self) -> int:
        return self.counts.size

    @property
    def probs(self) -> np.ndarray:
        denom = self.n_samples + self.n_genes * self.smooth
        if denom <= 0:
            return np.full(self.n_genes, 1.0 / self.n_genes)
        return (self.counts + self.smooth) / denom

    def maximize(self, genes: np.ndarray, confidences: Optional[np.ndarray] = None) -> "CategoricalSmoothed":
        genes = np.asarray(genes, dtype=np.int64).ravel()
        if genes.size == 0:
            return self
        weights = None
        if confidences is not None:
            weights = np.asarray(confidences, dtype=np.float64).ravel()
            if weights.shape != genes.shape:
                raise ValueError(f"confidences must match genes: {weights.shape} vs {genes.shape}")
            if (weights < 0).any():
                raise ValueError("confidences must be non-negative")
        mask = genes >= 0
        if (genes[mask] >= self.n_genes).any():
            raise ValueError(f"gene codes must be below n_genes={self.n_genes}")
        self.counts = np.bincount(genes[mask], weights=None if weights is None else weights[mask],
                                  minlength=self.n_genes).astype(np.float64)
        self.n_samples = float(self.counts.sum())
        return self

    def pdf(self, gene) -> np.ndarray:
        gene = np.asarray(gene, dtype=np.int64)
        probs = self.probs
        return np.where(gene >= 0, probs[np.clip(gene, 0, None)], 1.0)
