import json
import os
import time
from typing import Any, Callable, Dict, List, Optional

import numpy as np
import pandas as pd

from .bmm_data import BmmData
from .config import fingerprint_params, get_param, load_params_yaml, validate_params
from .errors import DegenerateInputError
from .initialization import initial_distribution_arr
from .io import concat_frames, ensure_dir, load_df, read_prior_centers, write_table
from .logging_utils import frame_logger, setup_logger


def _progress_iter(iterator, desc: str = "", total: Optional[int] = None, show: bool = False, console=None):
    """Rich progress bar over `iterator` on a terminal; plain iteration otherwise."""
    if not show:
        return iterator
    from rich.console import Console
    from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

    if console is None:
        console = Console(stderr=True)
    if not console.is_terminal:
        return iterator
    if total is None:
        try:
            total = len(iterator)
        except TypeError:
            total = None

    def _gen():
        columns = [SpinnerColumn(), TextColumn(" {task.description}"), BarColumn(), MofNCompleteColumn(), TimeElapsedColumn()]
        with Progress(*columns, transient=True, console=console) as prog:
            task = prog.add_task(desc or "Working", total=total)
            for item in iterator:
                yield item
                prog.advance(task, 1)

    return _gen()


def _state_path(out_dir: str) -> str:
    return os.path.join(out_dir, "pipeline_state.json")


def _load_state(out_dir: str) -> Optional[dict]:
    p = _state_path(out_dir)
    if not os.path.exists(p):
        return None
    with open(p, "r", encoding="utf-8") as f:
        return json.load(f)


def _save_state(out_dir: str, state: Dict[str, Any]) -> None:
    state = dict(state, ts=time.time())
    with open(_state_path(out_dir), "w", encoding="utf-8") as f:
        json.dump(state, f, ensure_ascii=False, indent=2)


def build_frames(df_spatial: pd.DataFrame, cfg: Dict[str, Any], df_centers: Optional[pd.DataFrame] = None,
                 gene_names: Optional[np.ndarray] = None) -> List[BmmData]:
    """Initial `BmmData` per frame with the model parameters of `cfg`."""
    init = cfg.get("init", {})
    frames = cfg.get("frames", {})
    graph_kwargs = {"filter": bool(get_param(cfg, "graph.filter", True)),
                    "n_mads": float(get_param(cfg, "graph.n_mads", 2.0))}
    kwargs = dict(
        shape_deg_freedom=int(init.get("shape_deg_freedom", 10)),
        scale=init.get("scale"),
        new_component_weight=float(init.get("new_component_weight", 0.2)),
        min_molecules_per_cell=init.get("min_molecules_per_cell"),
        n_frames=None if frames.get("mean_mols_per_frame") else frames.get("n_frames"),
        mean_mols_per_frame=frames.get("mean_mols_per_frame"),
        graph_kwargs=graph_kwargs,
        seed=cfg.get("seed", 42),
        n_jobs=frames.get("n_jobs"),
        gene_smooth=float(init.get("gene_smooth", 1.0)),
        gene_names=gene_names,
    )
    if gene_names is not None:
        kwargs["gene_num"] = len(gene_names)
    if df_centers is not None:
        kwargs.update(df_centers=df_centers, center_std=init.get("center_std"),
                      center_component_weight=float(init.get("prior_component_weight", 1.0)),
                      n_degrees_of_freedom_center=int(init.get("n_degrees_of_freedom_center", 1000)))
    else:
        kwargs.update(n_cells_init=int(init.get("n_cells_init", 1000)))
    return initial_distribution_arr(df_spatial, **kwargs)


def _write_h5ad(bm_data_arr: List[BmmData], path: str, compression: Optional[str]) -> str:
    import anndata as ad  # lazy import

    adatas = [bd.to_anndata() for bd in bm_data_arr]
    adata = adatas[0] if len(adatas) == 1 else ad.concat(adatas, join="outer", merge="same")
    adata.write_h5ad(path, compression=compression)
    return path


def run_pipeline(
    spatial_path: str,
    out_dir: str,
    centers_path: Optional[str] = None,
    cfg: Optional[Dict[str, Any]] = None,
    show_internal_progress: bool = False,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> Dict[str, Optional[str]]:
    """
    Load molecules (and optional prior centers), build the initial per-frame mixture
    state and write it out.

    Returns dict with output file paths.
    """
    ensure_dir(out_dir)
    cfg = validate_params(cfg if cfg is not None else load_params_yaml())
    logger = setup_logger(out_dir, level=str(cfg.get("log_level", "INFO")))
    logger.info("CellBMM pipeline start")

    def _step(desc: str) -> None:
        logger.info(desc)
        if progress_callback:
            progress_callback(desc)

    fingerprint = fingerprint_params(cfg)
    prev = _load_state(out_dir) or {}
    if prev.get("fingerprint") and prev.get("fingerprint") != fingerprint:
        logger.info("Model parameters changed since the previous run in %s; outputs will be overwritten", out_dir)

    data_cfg = cfg.get("data", {})
    _step("Loading molecules")
    try:
        df_spatial, gene_names = load_df(spatial_path, x_col=data_cfg.get("x_col", "x"), y_col=data_cfg.get("y_col", "y"),
                                         gene_col=data_cfg.get("gene_col", "gene"),
                                         min_molecules_per_gene=int(data_cfg.get("min_molecules_per_gene", 0)))
        df_centers = None
        if centers_path:
            df_centers = read_prior_centers(centers_path, x_col=data_cfg.get("x_col", "x"),
                                            y_col=data_cfg.get("y_col", "y"))
    except Exception:
        logger.exception("Loading inputs failed")
        raise
    logger.info("Loaded %d molecules of %d genes%s", df_spatial.shape[0], len(gene_names),
                "" if df_centers is None else f" and {df_centers.shape[0]} prior centers")

    _step("Building initial components")
    try:
        bm_data_arr = build_frames(df_spatial, cfg, df_centers=df_centers, gene_names=gene_names)
    except DegenerateInputError as e:
        frame_logger(e.frame_id).error("Initialization failed: %s", e.message)
        raise
    logger.info("Built %d frames with %d components in total", len(bm_data_arr),
                sum(len(bd.components) for bd in bm_data_arr))

    _step("Writing outputs")
    fmt = str(get_param(cfg, "io.final_format", "csv")).lower()
    assignment_dfs, stats_dfs = [], []
    for bd in _progress_iter(bm_data_arr, desc="Collecting frames", show=show_internal_progress):
        assignment_dfs.append(bd.assignment_df())
        stats_dfs.append(bd.cell_stats_df())

    outputs: Dict[str, Optional[str]] = {"h5ad": None}
    try:
        outputs["assignment"] = write_table(concat_frames(assignment_dfs), out_dir, "molecule_assignment", fmt)
        outputs["cell_stats"] = write_table(concat_frames(stats_dfs), out_dir, "cell_stats", fmt)
        if bool(get_param(cfg, "io.write_h5ad", True)):
            outputs["h5ad"] = _write_h5ad(bm_data_arr, os.path.join(out_dir, "cells.h5ad"),
                                          get_param(cfg, "io.h5ad_compression", "lzf"))
            logger.info("Saved %s", outputs["h5ad"])
        _save_state(out_dir, {"fingerprint": fingerprint, "n_frames": len(bm_data_arr),
                              "outputs": {k: v for k, v in outputs.items() if v}})
    except Exception:
        logger.exception("Writing outputs failed")
        raise

    logger.info("Pipeline finished successfully")
    return outputs
