import os
import copy
import yaml
import json
import hashlib
from typing import Any, Dict, Optional, Tuple

from .errors import InvalidConfigurationError


def _workspace_root() -> str:
    return os.path.dirname(os.path.dirname(__file__))


def _params_path() -> str:
    root = _workspace_root()
    return os.path.join(root, 'config', 'params.yaml')


DEFAULT_PARAMS: Dict[str, Any] = {
    'data': {
        'x_col': 'x',
        'y_col': 'y',
        'gene_col': 'gene',
        'min_molecules_per_gene': 0,
    },
    'graph': {
        'filter': True,
        'n_mads': 2.0,
    },
    'init': {
        'n_cells_init': 1000,
        # also drops connected components of the adjacency graph below this size
        'min_molecules_per_cell': 3,
        'scale': None,
        'center_std': None,
        'new_component_weight': 0.2,
        'prior_component_weight': 1.0,
        'shape_deg_freedom': 10,
        'n_degrees_of_freedom_center': 1000,
        'gene_smooth': 1.0,
    },
    'frames': {
        'n_frames': 1,
        'mean_mols_per_frame': None,
        'n_jobs': None,
    },
    'io': {
        'final_format': 'csv',
        'write_h5ad': True,
        'h5ad_compression': 'lzf',
    },
    'seed': 42,
}


# Keys that change the fitted model; everything under `io` only changes how results are written.
MODEL_PARAM_KEYS: Tuple[str, ...] = (
    'data.min_molecules_per_gene',
    'graph.filter', 'graph.n_mads',
    'init.n_cells_init', 'init.min_molecules_per_cell', 'init.scale', 'init.center_std',
    'init.new_component_weight', 'init.prior_component_weight', 'init.shape_deg_freedom',
    'init.n_degrees_of_freedom_center', 'init.gene_smooth',
    'frames.n_frames', 'frames.mean_mols_per_frame',
    'seed',
)


def _deep_update(base: Dict[str, Any], upd: Dict[str, Any]) -> Dict[str, Any]:
    for k, v in upd.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_update(base[k], v)
        else:
            base[k] = v
    return base


def load_params_yaml(path: Optional[str] = None) -> Dict[str, Any]:
    """Load params YAML (default `config/params.yaml`) merged over `DEFAULT_PARAMS`."""
    cfg = copy.deepcopy(DEFAULT_PARAMS)
    p = path or _params_path()
    if path is not None and not os.path.isfile(p):
        raise FileNotFoundError(f"Config file not found: {p}")
    if os.path.isfile(p):
        with open(p, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise InvalidConfigurationError(f"Config {p} must contain a mapping, got {type(loaded).__name__}")
        _deep_update(cfg, loaded)
    return cfg


def get_param(cfg: Dict[str, Any], dotted: str, default: Any = None) -> Any:
    cur: Any = cfg
    for part in dotted.split('.'):
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        else:
            return default
    return cur


def set_param(cfg: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split('.')
    cur = cfg
    for part in parts[:-1]:
        cur = cur.setdefault(part, {})
    cur[parts[-1]] = value


def validate_params(cfg: Dict[str, Any]) -> Dict[str, Any]:
    def _positive(key: str, allow_none: bool = False, allow_zero: bool = False):
        v = get_param(cfg, key)
        if v is None and allow_none:
            return
        try:
            ok = float(v) >= 0 if allow_zero else float(v) > 0
        except (TypeError, ValueError):
            ok = False
        if not ok:
            raise InvalidConfigurationError(f"'{key}' must be a {'non-negative' if allow_zero else 'positive'} number, got {v!r}")

    _positive('graph.n_mads')
    _positive('init.n_cells_init')
    _positive('init.min_molecules_per_cell', allow_zero=True)
    _positive('init.scale', allow_none=True)
    _positive('init.center_std', allow_none=True)
    _positive('init.new_component_weight', allow_zero=True)
    _positive('init.prior_component_weight', allow_zero=True)
    _positive('init.shape_deg_freedom', allow_zero=True)
    _positive('init.n_degrees_of_freedom_center', allow_zero=True)
    _positive('init.gene_smooth', allow_zero=True)
    _positive('frames.n_frames')
    _positive('frames.mean_mols_per_frame', allow_none=True)
    fmt = str(get_param(cfg, 'io.final_format', 'csv')).lower()
    if fmt not in ('csv', 'parquet'):
        raise InvalidConfigurationError(f"Unknown io.final_format: {fmt!r}. Only 'csv' or 'parquet' are supported")
    return cfg


def params_subset(cfg: Dict[str, Any], keys: Tuple[str, ...] = MODEL_PARAM_KEYS) -> Dict[str, Any]:
    return {k: get_param(cfg, k) for k in keys}


def fingerprint_params(cfg: Dict[str, Any]) -> str:
    sub = params_subset(cfg)
    try:
        payload = json.dumps(sub, ensure_ascii=False, sort_keys=True, separators=(',', ':'))
    except TypeError:
        payload = str(sub)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
