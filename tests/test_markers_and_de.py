# tests/test_markers_and_de.py
import numpy as np
import pandas as pd
import pytest

from scdelegate import find_de, find_all_markers
from scdelegate.markers_and_de import filter_markers, run_find_de, run_find_all_markers
from scdelegate.config import FindDEConfig, FindAllMarkersConfig
from scdelegate.de_utils import RESULT_COLUMNS, adjust_fdr
from scdelegate.errors import ConfigurationError

from conftest import synthetic_adata, N_MARKERS


# ----------------------------------------------------------------------
# find_de
# ----------------------------------------------------------------------
def test_find_de_each_vs_rest(fake_engine):
    adata = synthetic_adata()
    res = find_de(adata, replicate_column="donor", verbosity=0)

    assert list(res.columns) == RESULT_COLUMNS
    assert res.shape[0] == 3 * adata.n_vars
    assert list(res["group1"].unique()) == ["A", "B", "C"]
    assert set(res["group2"]) == {"rest"}


def test_find_de_reference_mode(fake_engine):
    adata = synthetic_adata()
    res = find_de(adata, group_column="leiden", replicate_column="donor", compare="C", compare_is_ref=True, verbosity=0)
    pairs = res[["group1", "group2"]].drop_duplicates().apply(tuple, axis=1).tolist()
    assert pairs == [("A", "C"), ("B", "C")]


def test_find_de_unordered(fake_engine):
    adata = synthetic_adata()
    res = find_de(adata, replicate_column="donor", compare=("A", "B"), order_results=False, verbosity=0)
    assert list(res["feature"]) == list(adata.var_names)


def test_find_de_log_fc_direction(fake_engine):
    adata = synthetic_adata()
    res = find_de(adata, replicate_column="donor", compare=("B", "A"), verbosity=0).set_index("feature")
    assert (res.loc[[f"g{i}" for i in range(N_MARKERS)], "log_fc"] < -1).all()


def test_find_de_matrix_input(fake_engine):
    adata = synthetic_adata()
    counts = pd.DataFrame(adata.X.toarray().T, index=adata.var_names, columns=adata.obs_names)
    meta = adata.obs[["leiden", "donor"]].copy()
    res = find_de(counts, meta_data=meta, group_column="leiden", replicate_column="donor", verbosity=0)
    assert res.shape[0] == 3 * adata.n_vars


def test_find_de_unknown_method():
    with pytest.raises(ConfigurationError):
        find_de(synthetic_adata(), method="mast", verbosity=0)


def test_find_de_unknown_level(fake_engine):
    with pytest.raises(ConfigurationError):
        find_de(synthetic_adata(), compare=("A", "Q"), verbosity=0)
    assert fake_engine.calls == []


# ----------------------------------------------------------------------
# find_all_markers
# ----------------------------------------------------------------------
def _de_table():
    return pd.DataFrame(
        {
            "feature": ["g1", "g2", "g3", "g4", "g1", "g2"],
            "ave_expr": 1.0,
            "log_fc": [3.0, 0.5, 2.0, 1.5, 1.2, -2.0],
            "stat": 1.0,
            "pvalue": [0.001, 0.01, 0.02, 0.03, 0.04, 0.05],
            "padj": 0.1,
            "rate1": [0.9, 0.9, 0.01, 0.5, 0.3, 0.3],
            "rate2": [0.1, 0.1, 0.02, 0.0, 0.3, 0.3],
            "group1": ["A", "A", "A", "A", "B", "B"],
            "group2": "rest",
        }
    )


def test_filter_markers():
    out = filter_markers(_de_table(), min_rate=0.05, min_fc=1.0)

    assert "group2" not in out.columns
    assert list(out["feature"]) == ["g1", "g4", "g1"]
    assert list(out["group1"]) == ["A", "A", "B"]
    assert list(out["feature_rank"]) == [1, 2, 1]
    np.testing.assert_allclose(out["padj"], [0.002, 0.03, 0.04])
    assert list(out.index) == [0, 1, 2]


def test_filter_markers_min_fc_zero_keeps_positive():
    out = filter_markers(_de_table(), min_rate=0.0, min_fc=0.0)
    assert (out["log_fc"] >= 0).all()
    assert out.shape[0] == 5


def test_find_all_markers(fake_engine):
    adata = synthetic_adata()
    res = find_all_markers(adata, replicate_column="donor", min_fc=1.0, verbosity=0)

    assert "group2" not in res.columns
    assert "feature_rank" in res.columns
    a = res[res["group1"] == "A"]
    assert set(a["feature"]) == {f"g{i}" for i in range(N_MARKERS)}
    assert list(a["feature_rank"]) == list(range(1, N_MARKERS + 1))
    np.testing.assert_allclose(a["padj"], adjust_fdr(a["pvalue"]))
    assert (res["log_fc"] >= 1.0).all()


def test_find_all_markers_bad_min_rate():
    with pytest.raises(ConfigurationError):
        find_all_markers(synthetic_adata(), min_rate=1.5, verbosity=0)


# ----------------------------------------------------------------------
# File-based orchestrators
# ----------------------------------------------------------------------
@pytest.fixture
def h5ad_path(tmp_path):
    p = tmp_path / "cells.h5ad"
    synthetic_adata().write_h5ad(p)
    return p


def test_run_find_de_writes_table(fake_engine, h5ad_path, tmp_path):
    out = tmp_path / "res" / "de.tsv"
    cfg = FindDEConfig(
        input_path=h5ad_path,
        output_path=out,
        replicate_column="donor",
        compare=["A", "B"],
        verbosity=0,
    )
    res = run_find_de(cfg)

    written = pd.read_csv(out, sep="\t")
    assert list(written.columns) == RESULT_COLUMNS
    assert written.shape[0] == res.shape[0]
    assert cfg.settings_path.exists()
    assert "method: edger" in cfg.settings_path.read_text()


def test_run_find_all_markers_count_table(fake_engine, tmp_path):
    adata = synthetic_adata()
    counts = pd.DataFrame(adata.X.toarray().T, index=adata.var_names, columns=adata.obs_names)
    counts_path = tmp_path / "counts.csv"
    meta_path = tmp_path / "meta.tsv"
    counts.to_csv(counts_path)
    adata.obs.to_csv(meta_path, sep="\t")

    cfg = FindAllMarkersConfig(
        input_path=counts_path,
        metadata_tsv=meta_path,
        output_path=tmp_path / "markers.csv",
        group_column="leiden",
        replicate_column="donor",
        verbosity=0,
    )
    res = run_find_all_markers(cfg)
    written = pd.read_csv(tmp_path / "markers.csv")
    assert written.shape[0] == res.shape[0]
    assert "feature_rank" in written.columns


# ----------------------------------------------------------------------
# Real PyDESeq2 runs
# ----------------------------------------------------------------------
def test_find_de_deseq_parallel_matches_serial():
    pytest.importorskip("pydeseq2")
    adata = synthetic_adata()
    serial = find_de(adata, replicate_column="donor", method="deseq", verbosity=0, n_jobs=1)
    parallel = find_de(adata, replicate_column="donor", method="deseq", verbosity=0, n_jobs=3)

    assert list(parallel["group1"].unique()) == ["A", "B", "C"]
    pd.testing.assert_frame_equal(parallel, serial)


def test_find_de_deseq_apeglm_is_repeatable():
    pytest.importorskip("pydeseq2")
    adata = synthetic_adata()
    kwargs = dict(replicate_column="donor", method="deseq", lfc_shrinkage="apeglm", compare=("A", "B"), verbosity=0)
    first = find_de(adata, **kwargs)
    second = find_de(adata, **kwargs)

    pd.testing.assert_frame_equal(first, second)
    assert (first.set_index("feature").loc[[f"g{i}" for i in range(N_MARKERS)], "log_fc"] > 1).all()
