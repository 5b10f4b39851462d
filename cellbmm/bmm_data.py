import logging
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp
from joblib import Parallel, delayed

from .component import Component
from .errors import InconsistencyError
from .io import composition_data, confidence_data, position_data
from .spatial_graph import AdjacencyList


logger = logging.getLogger("cellbmm")


class BmmData:
    """Full fit state of one spatial frame.

    Owns the components, the molecule table, the adjacency list, the birth `sampler`
    component and the molecule -> component `assignment` (-1 = unassigned). The external
    fitting loop mutates it only through `reassign`, `maximize_components` and
    `drop_unused_components`, which keep `n_samples` in sync with the assignment.
    """

    def __init__(self, components: Sequence[Component], df_spatial: pd.DataFrame, adjacent_points: AdjacencyList,
                 sampler: Component, assignment: np.ndarray, gene_names: Optional[Sequence[str]] = None,
                 frame_id: Optional[int] = None):
        self.components: List[Component] = list(components)
        self.df_spatial = df_spatial
        self.adjacent_points = adjacent_points
        self.sampler = sampler
        self.assignment = np.array(assignment, dtype=np.int64).ravel()
        self.gene_names = None if gene_names is None else np.asarray(gene_names, dtype=object)
        self.frame_id = frame_id

        self._position_data = position_data(df_spatial)
        self._composition_data = composition_data(df_spatial)
        self._confidence = confidence_data(df_spatial)

        if self.sampler.can_be_dropped:
            raise InconsistencyError("Birth sampler component must not be droppable")
        if len(self.adjacent_points) != self.n_molecules:
            raise InconsistencyError(f"Adjacency list has {len(self.adjacent_points)} nodes for {self.n_molecules} molecules")
        self.check_consistency()

    def __repr__(self) -> str:
        return (f"BmmData(frame_id={self.frame_id}, n_molecules={self.n_molecules}, "
                f"n_components={len(self.components)}, n_genes={self.n_genes})")

    @property
    def n_molecules(self) -> int:
        return self.df_spatial.shape[0]

    @property
    def n_genes(self) -> int:
        return self.sampler.composition_params.n_genes

    @property
    def position_data(self) -> np.ndarray:
        return self._position_data

    @property
    def composition_data(self) -> np.ndarray:
        return self._composition_data

    @property
    def confidence(self) -> Optional[np.ndarray]:
        return self._confidence

    def num_of_molecules_per_cell(self) -> np.ndarray:
        assigned = self.assignment[self.assignment >= 0]
        return np.bincount(assigned, minlength=len(self.components))

    def check_consistency(self) -> None:
        if self.assignment.size != self.n_molecules:
            raise InconsistencyError(f"Assignment has {self.assignment.size} entries for {self.n_molecules} molecules")
        n_comps = len(self.components)
        if self.assignment.size and (self.assignment.min() < -1 or self.assignment.max() >= n_comps):
            raise InconsistencyError(f"Assignment refers to components outside of [-1, {n_comps})")
        counts = self.num_of_molecules_per_cell()
        n_samples = np.array([c.n_samples for c in self.components], dtype=np.int64)
        bad = np.flatnonzero(counts != n_samples)
        if bad.size > 0:
            ci = int(bad[0])
            raise InconsistencyError(f"{bad.size} components have n_samples different from the assignment, e.g. "
                                     f"component {ci}: n_samples={n_samples[ci]}, assigned={counts[ci]}")

    def reassign(self, molecule: int, component: int) -> None:
        """Move one molecule to `component` (-1 to unassign) and update both sample counts."""
        if component < -1 or component >= len(self.components):
            raise IndexError(f"Component {component} is out of range [-1, {len(self.components)})")
        if component >= 0 and self.components[component].removed:
            raise ValueError(f"Component {component} was removed")
        old = int(self.assignment[molecule])
        if old == component:
            return
        if old >= 0:
            self.components[old].n_samples -= 1
        if component >= 0:
            self.components[component].n_samples += 1
        self.assignment[molecule] = component

    def _maximize_one(self, ci: int, ids: np.ndarray) -> Component:
        conf = None if self._confidence is None else self._confidence[ids]
        return self.components[ci].maximize(self._position_data[ids], self._composition_data[ids], conf)

    def maximize_components(self, n_jobs: int = 1) -> None:
        """Update every component from the molecules currently assigned to it.

        Each component reads only its own molecule subset, so the sweep runs in threads.
        """
        order = np.argsort(self.assignment, kind="stable")
        sorted_labels = self.assignment[order]
        ids_per_comp = []
        for ci in range(len(self.components)):
            lo, hi = np.searchsorted(sorted_labels, [ci, ci + 1])
            ids_per_comp.append(order[lo:hi])

        if n_jobs == 1:
            for ci, ids in enumerate(ids_per_comp):
                self._maximize_one(ci, ids)
        else:
            Parallel(n_jobs=n_jobs, backend="threading")(
                delayed(self._maximize_one)(ci, ids) for ci, ids in enumerate(ids_per_comp)
            )

    def drop_unused_components(self) -> int:
        """Remove droppable components without molecules; returns the number removed."""
        keep = np.array([not c.can_be_removed for c in self.components], dtype=bool)
        if keep.all():
            return 0
        for c, k in zip(self.components, keep):
            if not k:
                c.mark_removed()
        remap = np.full(len(self.components) + 1, -1, dtype=np.int64)
        remap[:-1][keep] = np.arange(int(keep.sum()), dtype=np.int64)
        # index -1 maps to the trailing -1 slot
        self.assignment = remap[self.assignment]
        self.components = [c for c, k in zip(self.components, keep) if k]
        n_removed = int((~keep).sum())
        logger.debug("Dropped %d empty components", n_removed)
        return n_removed

    def assignment_df(self) -> pd.DataFrame:
        df = self.df_spatial[["x", "y", "gene"]].copy()
        if self.gene_names is not None:
            genes = self._composition_data
            df["gene"] = np.where(genes >= 0, self.gene_names[np.clip(genes, 0, None)], None)
        df["cell"] = self.assignment
        if self.frame_id is not None:
            df.insert(0, "frame", self.frame_id)
        return df

    def cell_stats_df(self) -> pd.DataFrame:
        rows = []
        for ci, c in enumerate(self.components):
            cov = c.position_params.cov
            rows.append({
                "cell": ci,
                "x": c.position_params.mean[0],
                "y": c.position_params.mean[1],
                "var_x": cov[0, 0],
                "var_y": cov[1, 1],
                "cov_xy": cov[0, 1],
                "n_molecules": c.n_samples,
                "can_be_dropped": c.can_be_dropped,
            })
        df = pd.DataFrame(rows, columns=["cell", "x", "y", "var_x", "var_y", "cov_xy", "n_molecules", "can_be_dropped"])
        if self.frame_id is not None:
            df.insert(0, "frame", self.frame_id)
        return df

    def count_matrix(self) -> sp.csr_matrix:
        """Cells x genes molecule counts for assigned molecules with a known gene."""
        mask = (self.assignment >= 0) & (self._composition_data >= 0)
        data = np.ones(int(mask.sum()), dtype=np.float32)
        return sp.csr_matrix((data, (self.assignment[mask], self._composition_data[mask])),
                             shape=(len(self.components), self.n_genes))

    def to_anndata(self):
        import anndata as ad  # lazy import

        obs = self.cell_stats_df()
        prefix = "" if self.frame_id is None else f"{self.frame_id}_"
        obs.index = [f"{prefix}{ci}" for ci in obs["cell"]]
        if self.gene_names is not None and len(self.gene_names) == self.n_genes:
            var_names = [str(g) for g in self.gene_names]
        else:
            var_names = [f"gene_{i}" for i in range(self.n_genes)]
        adata = ad.AnnData(X=self.count_matrix(), obs=obs, var=pd.DataFrame(index=var_names))
        adata.obsm["spatial"] = obs[["x", "y"]].to_numpy()
        return adata
