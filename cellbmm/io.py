import os
import logging
import numpy as np
import pandas as pd
from typing import List, Optional, Tuple


logger = logging.getLogger("cellbmm")


def position_data(df: pd.DataFrame) -> np.ndarray:
    return df[["x", "y"]].to_numpy(dtype=np.float64)


def composition_data(df: pd.DataFrame) -> np.ndarray:
    return df["gene"].to_numpy(dtype=np.int64)


def confidence_data(df: pd.DataFrame) -> Optional[np.ndarray]:
    if "confidence" not in df.columns:
        return None
    return df["confidence"].to_numpy(dtype=np.float64)


def read_spatial_df(path: str, x_col: str = "x", y_col: str = "y", gene_col: str = "gene") -> pd.DataFrame:
    df = pd.read_csv(path)
    required = {x_col, y_col, gene_col}
    missing = required - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns in spatial file {path}: {sorted(missing)}")
    df = df.rename(columns={x_col: "x", y_col: "y", gene_col: "gene"})
    keep = ["x", "y", "gene"] + (["confidence"] if "confidence" in df.columns else [])
    return df[keep]


def encode_genes(gene_list) -> Tuple[np.ndarray, np.ndarray]:
    """Dense integer codes in order of first appearance; missing labels get -1."""
    codes, gene_names = pd.factorize(pd.Series(gene_list), sort=False)
    return codes.astype(np.int64), np.asarray(gene_names, dtype=object)


def load_df(path: str, x_col: str = "x", y_col: str = "y", gene_col: str = "gene",
            min_molecules_per_gene: int = 0) -> Tuple[pd.DataFrame, np.ndarray]:
    df = read_spatial_df(path, x_col=x_col, y_col=y_col, gene_col=gene_col)

    gene_counts = df["gene"].value_counts()
    large_genes = gene_counts.index[gene_counts > min_molecules_per_gene]
    keep = df["gene"].isin(large_genes) | df["gene"].isna()
    if (~keep).any():
        logger.info("Dropped %d molecules of %d genes with <= %d molecules",
                    int((~keep).sum()), int((gene_counts <= min_molecules_per_gene).sum()), min_molecules_per_gene)
    df = df[keep].reset_index(drop=True)

    df["x"] = df["x"].astype(np.float64)
    df["y"] = df["y"].astype(np.float64)
    if "confidence" in df.columns:
        df["confidence"] = df["confidence"].astype(np.float64)
    df["gene"], gene_names = encode_genes(df["gene"])
    return df, gene_names


def read_prior_centers(path: str, x_col: str = "x", y_col: str = "y") -> pd.DataFrame:
    df = pd.read_csv(path)
    missing = {x_col, y_col} - set(df.columns)
    if missing:
        raise ValueError(f"Missing columns in centers file {path}: {sorted(missing)}")
    df = df.rename(columns={x_col: "x", y_col: "y"})
    keep = ["x", "y"] + (["confidence"] if "confidence" in df.columns else [])
    return df[keep].astype(np.float64).reset_index(drop=True)


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_table(df: pd.DataFrame, out_dir: str, name: str, fmt: str = "csv") -> str:
    ensure_dir(out_dir)
    if str(fmt).lower() == "parquet":
        path = os.path.join(out_dir, f"{name}.parquet")
        df.to_parquet(path, index=False)
    else:
        path = os.path.join(out_dir, f"{name}.csv")
        df.to_csv(path, index=False)
    logger.info("Saved %s", path)
    return path


def concat_frames(dfs: List[pd.DataFrame]) -> pd.DataFrame:
    if len(dfs) == 0:
        return pd.DataFrame()
    return pd.concat(dfs, ignore_index=True)
