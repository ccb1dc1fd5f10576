# tests/test_data_utils.py
import numpy as np
import pandas as pd
import scipy.sparse as sp
import pytest

from scdelegate.data_utils import get_data, resolve_column
from scdelegate.errors import ConfigurationError, DataError

from conftest import synthetic_adata


def counts_frame(n_genes=5, n_cells=6, seed=0):
    rng = np.random.default_rng(seed)
    return pd.DataFrame(
        rng.poisson(3, size=(n_genes, n_cells)),
        index=[f"g{i}" for i in range(n_genes)],
        columns=[f"c{j}" for j in range(n_cells)],
    )


def cell_meta(cells, groups=("x", "x", "y", "y", "z", "z")):
    return pd.DataFrame({"cluster": list(groups), "rep": ["a", "b"] * (len(cells) // 2)}, index=cells)


# ---------------------------------------------------------
# AnnData input
# ---------------------------------------------------------
def test_anndata_default_identity():
    adata = synthetic_adata()
    data = get_data(adata)
    assert data.grouping.name == "leiden"
    assert data.group_levels == ["A", "B", "C"]
    assert data.counts.shape == (adata.n_obs, adata.n_vars)
    assert sp.isspmatrix_csr(data.counts)


def test_anndata_idents_key_wins():
    adata = synthetic_adata()
    adata.obs["my_clusters"] = np.where(np.arange(adata.n_obs) % 2 == 0, "even", "odd")
    adata.uns["idents_key"] = "my_clusters"
    data = get_data(adata)
    assert data.group_levels == ["even", "odd"]


def test_anndata_without_default_identity():
    adata = synthetic_adata()
    del adata.obs["leiden"]
    with pytest.raises(ConfigurationError):
        get_data(adata)


def test_anndata_counts_layer_preferred():
    adata = synthetic_adata()
    adata.layers["counts"] = adata.X.copy()
    adata.X = adata.X * 0
    data = get_data(adata, group_column="leiden")
    assert data.counts.sum() > 0


def test_anndata_missing_layer():
    adata = synthetic_adata()
    with pytest.raises(ConfigurationError):
        get_data(adata, group_column="leiden", layer="raw")


def test_categorical_level_order_kept():
    adata = synthetic_adata()
    adata.obs["leiden"] = adata.obs["leiden"].cat.reorder_categories(["C", "A", "B"])
    data = get_data(adata, group_column="leiden")
    assert data.group_levels == ["C", "A", "B"]


def test_replicate_labels():
    adata = synthetic_adata(n_reps=3)
    data = get_data(adata, group_column="leiden", replicate_column="donor")
    assert list(data.replicate_label.cat.categories) == ["r1", "r2", "r3"]


def test_replicate_equal_to_group():
    adata = synthetic_adata()
    with pytest.raises(ConfigurationError):
        get_data(adata, group_column="leiden", replicate_column="leiden")


# ---------------------------------------------------------
# Matrix / DataFrame input (genes x cells)
# ---------------------------------------------------------
def test_dataframe_is_transposed_and_meta_aligned_by_name():
    df = counts_frame()
    meta = cell_meta(df.columns).iloc[::-1]
    data = get_data(df, meta_data=meta, group_column="cluster")

    assert data.counts.shape == (6, 5)
    assert list(data.genes) == list(df.index)
    assert list(data.cells) == list(df.columns)
    np.testing.assert_array_equal(data.counts.toarray(), df.to_numpy().T)
    assert data.group_levels == ["x", "y", "z"]
    assert data.grouping.loc["c0"] == "x"


def test_numpy_input_gets_default_gene_names():
    df = counts_frame()
    meta = cell_meta(df.columns)
    data = get_data(df.to_numpy(), meta_data=meta, group_column="cluster")
    assert list(data.genes) == [f"gene_{i}" for i in range(1, 6)]
    assert list(data.cells) == list(df.columns)


def test_sparse_input_with_gene_names():
    df = counts_frame()
    meta = cell_meta(df.columns)
    data = get_data(sp.csr_matrix(df.to_numpy()), meta_data=meta, group_column=0, gene_names=list(df.index))
    assert list(data.genes) == list(df.index)
    assert data.grouping.name == "cluster"


def test_gene_names_length_mismatch():
    df = counts_frame()
    with pytest.raises(DataError):
        get_data(df.to_numpy(), meta_data=cell_meta(df.columns), group_column="cluster", gene_names=["a"])


def test_matrix_requires_group_column():
    df = counts_frame()
    with pytest.raises(ConfigurationError):
        get_data(df, meta_data=cell_meta(df.columns))


def test_meta_row_count_mismatch():
    df = counts_frame()
    with pytest.raises(DataError):
        get_data(df, meta_data=cell_meta(df.columns).iloc[:4], group_column="cluster")


# ---------------------------------------------------------
# Validation
# ---------------------------------------------------------
def test_negative_counts_rejected():
    df = counts_frame()
    df.iloc[0, 0] = -1
    with pytest.raises(DataError):
        get_data(df, meta_data=cell_meta(df.columns), group_column="cluster")


def test_non_finite_counts_rejected():
    df = counts_frame().astype(float)
    df.iloc[1, 2] = np.nan
    with pytest.raises(DataError):
        get_data(df, meta_data=cell_meta(df.columns), group_column="cluster")


def test_missing_group_labels_rejected():
    df = counts_frame()
    meta = cell_meta(df.columns)
    meta.loc["c3", "cluster"] = np.nan
    with pytest.raises(DataError):
        get_data(df, meta_data=meta, group_column="cluster")


def test_duplicate_genes_rejected():
    df = counts_frame()
    df.index = ["g0", "g0", "g2", "g3", "g4"]
    with pytest.raises(DataError):
        get_data(df, meta_data=cell_meta(df.columns), group_column="cluster")


def test_resolve_column_by_name_and_position():
    meta = cell_meta(["a", "b", "c", "d", "e", "f"])
    assert resolve_column(meta, "rep", argname="x") == "rep"
    assert resolve_column(meta, 1, argname="x") == "rep"
    with pytest.raises(ConfigurationError):
        resolve_column(meta, 5, argname="x")
    with pytest.raises(ConfigurationError):
        resolve_column(meta, "nope", argname="x")
