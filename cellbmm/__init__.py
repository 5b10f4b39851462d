__version__ = "0.1.0"

from .errors import CellBmmError, DegenerateInputError, InconsistencyError, InvalidConfigurationError
from .spatial_graph import AdjacencyList, adjacency_list, connected_components, filter_small_components
from .distributions import ShapePrior, CellCenter, MvNormal, CategoricalSmoothed
from .component import Component
from .initialization import (
    InitialParams,
    assign_cells_to_centers,
    covs_from_assignment,
    cell_centers_with_clustering,
    initial_params_from_centers,
    initial_distributions,
    initial_distribution_arr,
    split_spatial_data,
    subset_df_by_coords,
)
from .bmm_data import BmmData

__all__ = [
    "__version__",
    "CellBmmError",
    "DegenerateInputError",
    "InconsistencyError",
    "InvalidConfigurationError",
    "AdjacencyList",
    "adjacency_list",
    "connected_components",
    "filter_small_components",
    "ShapePrior",
    "CellCenter",
    "MvNormal",
    "CategoricalSmoothed",
    "Component",
    "InitialParams",
    "assign_cells_to_centers",
    "covs_from_assignment",
    "cell_centers_with_clustering",
    "initial_params_from_centers",
    "initial_distributions",
    "initial_distribution_arr",
    "split_spatial_data",
    "subset_df_by_coords",
    "BmmData",
]
