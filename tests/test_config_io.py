import numpy as np
import pandas as pd
import pytest

from cellbmm.config import (
    DEFAULT_PARAMS,
    fingerprint_params,
    get_param,
    load_params_yaml,
    set_param,
    validate_params,
)
from cellbmm.errors import InvalidConfigurationError
from cellbmm.io import encode_genes, load_df, read_prior_centers, write_table


def test_yaml_overrides_defaults(tmp_path):
    p = tmp_path / "params.yaml"
    p.write_text("init:\n  scale: 5.0\nframes:\n  n_frames: 4\n", encoding="utf-8")
    cfg = load_params_yaml(str(p))
    assert get_param(cfg, "init.scale") == 5.0
    assert get_param(cfg, "frames.n_frames") == 4
    assert get_param(cfg, "init.shape_deg_freedom") == DEFAULT_PARAMS["init"]["shape_deg_freedom"]
    assert get_param(cfg, "init.missing", "fallback") == "fallback"


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_params_yaml(str(tmp_path / "nope.yaml"))


def test_non_mapping_config_raises(tmp_path):
    p = tmp_path / "params.yaml"
    p.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(InvalidConfigurationError):
        load_params_yaml(str(p))


@pytest.mark.parametrize("key,value", [
    ("graph.n_mads", 0),
    ("init.scale", -1.0),
    ("init.n_cells_init", "many"),
    ("io.final_format", "xlsx"),
])
def test_validate_params_rejects(key, value):
    cfg = load_params_yaml()
    set_param(cfg, key, value)
    with pytest.raises(InvalidConfigurationError):
        validate_params(cfg)


def test_fingerprint_ignores_io_settings():
    cfg = load_params_yaml()
    fp = fingerprint_params(cfg)
    set_param(cfg, "io.final_format", "parquet")
    assert fingerprint_params(cfg) == fp
    set_param(cfg, "init.scale", 3.0)
    assert fingerprint_params(cfg) != fp


def test_encode_genes_marks_missing():
    codes, names = encode_genes(["b", "a", None, "b"])
    np.testing.assert_array_equal(codes, [0, 1, -1, 0])
    assert list(names) == ["b", "a"]


def test_load_df(tmp_path):
    p = tmp_path / "molecules.csv"
    pd.DataFrame({
        "px": [0.0, 1.0, 2.0, 3.0, 4.0],
        "py": [0.0, 1.0, 2.0, 3.0, 4.0],
        "target": ["A", "B", "A", "A", "C"],
        "confidence": [1.0, 0.5, 1.0, 1.0, 0.2],
    }).to_csv(p, index=False)

    df, genes = load_df(str(p), x_col="px", y_col="py", gene_col="target", min_molecules_per_gene=1)
    assert list(df.columns) == ["x", "y", "gene", "confidence"]
    assert list(genes) == ["A"]
    assert df.shape[0] == 3
    assert (df["gene"] == 0).all()


def test_load_df_missing_columns(tmp_path):
    p = tmp_path / "molecules.csv"
    pd.DataFrame({"x": [0.0], "y": [0.0]}).to_csv(p, index=False)
    with pytest.raises(ValueError, match="gene"):
        load_df(str(p))


def test_read_prior_centers(tmp_path):
    p = tmp_path / "centers.csv"
    pd.DataFrame({"x": [1, 2], "y": [3, 4], "cell": ["c1", "c2"]}).to_csv(p, index=False)
    centers = read_prior_centers(str(p))
    assert list(centers.columns) == ["x", "y"]
    assert centers["x"].dtype == np.float64


@pytest.mark.parametrize("fmt,ext", [("csv", ".csv"), ("parquet", ".parquet")])
def test_write_table(tmp_path, fmt, ext):
    df = pd.DataFrame({"a": [1, 2], "b": ["x", "y"]})
    path = write_table(df, str(tmp_path / "out"), "table", fmt)
    assert path.endswith(ext)
    back = pd.read_csv(path) if fmt == "csv" else pd.read_parquet(path)
    pd.testing.assert_frame_equal(back, df, check_dtype=False)
