import copy
from typing import Optional

import numpy as np

from .distributions import CategoricalSmoothed, CellCenter, MvNormal, ShapePrior


class Component:
    """One mixture component (candidate cell): position normal + gene composition.

    Priors passed in are deep-copied so that components never share mutable prior state.
    `can_be_dropped=False` marks persistent components (prior-center cells, the birth sampler).
    """

    def __init__(self, position_params: MvNormal, composition_params: CategoricalSmoothed, *,
                 shape_prior: Optional[ShapePrior] = None, center_prior: Optional[CellCenter] = None,
                 n_samples: int = 0, prior_weight: float = 1.0, can_be_dropped: bool = True):
        if n_samples < 0:
            raise ValueError(f"n_samples must be non-negative, got {n_samples}")
        if prior_weight < 0:
            raise ValueError(f"prior_weight must be non-negative, got {prior_weight}")
        self.position_params = position_params
        self.composition_params = composition_params
        self.shape_prior = copy.deepcopy(shape_prior)
        self.center_prior = copy.deepcopy(center_prior)
        self.n_samples = int(n_samples)
        self.prior_weight = float(prior_weight)
        self.can_be_dropped = bool(can_be_dropped)
        self.removed = False

    def __repr__(self) -> str:
        return (f"Component(n_samples={self.n_samples}, mean={self.position_params.mean.round(3).tolist()}, "
                f"can_be_dropped={self.can_be_dropped}, removed={self.removed})")

    @property
    def is_fitted(self) -> bool:
        return self.n_samples > 0

    @property
    def can_be_removed(self) -> bool:
        return self.can_be_dropped and self.n_samples == 0 and not self.removed

    def maximize(self, positions: np.ndarray, genes: np.ndarray, confidences: Optional[np.ndarray] = None) -> "Component":
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        self.n_samples = positions.shape[0]
        if self.n_samples == 0:
            return self

        self.position_params.maximize(positions, shape_prior=self.shape_prior, prior_weight=self.prior_weight,
                                      center_prior=self.center_prior)
        self.composition_params.maximize(genes, confidences)
        return self

    def pdf(self, x: np.ndarray, y: np.ndarray, gene: np.ndarray) -> np.ndarray:
        pos = np.column_stack([np.atleast_1d(x), np.atleast_1d(y)])
        return self.position_params.pdf(pos) * self.composition_params.pdf(np.atleast_1d(gene))

    def mark_removed(self) -> None:
        if not self.can_be_dropped:
            raise ValueError("Component can't be dropped")
        self.removed = True
