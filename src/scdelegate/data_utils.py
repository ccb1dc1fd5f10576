# src/scdelegate/data_utils.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import ConfigurationError, DataError
from .logging_utils import log_verbose

LOGGER = logging.getLogger(__name__)

ColumnRef = Union[str, int]

# obs columns tried (in order) when no grouping is given for an AnnData input
DEFAULT_IDENT_KEYS = ("idents", "leiden", "louvain")
# layers tried (in order) when no layer is given for an AnnData input
DEFAULT_COUNTS_LAYERS = ("counts", "counts_raw")


@dataclass(frozen=True)
class DEData:
    """
    Canonical DE input.

    counts is cells x genes CSR (AnnData orientation). grouping and
    replicate_label are Series indexed by cell; grouping is categorical and its
    category order is the authoritative level order.
    """
    counts: sp.csr_matrix
    genes: pd.Index
    cells: pd.Index
    grouping: pd.Series
    replicate_label: Optional[pd.Series] = None
    meta_data: Optional[pd.DataFrame] = None

    @property
    def group_levels(self) -> List[str]:
        return [str(x) for x in self.grouping.cat.categories]

    @property
    def n_cells(self) -> int:
        return int(self.counts.shape[0])

    @property
    def n_genes(self) -> int:
        return int(self.counts.shape[1])


# -----------------------------------------------------------------------------
# Metadata helpers
# -----------------------------------------------------------------------------
def resolve_column(meta_data: Optional[pd.DataFrame], column: ColumnRef, *, argname: str) -> str:
    """
    Resolve a column reference given by name or 0-based position.
    """
    if meta_data is None:
        raise ConfigurationError(f"{argname}={column!r} given but no meta data is available.")

    if isinstance(column, (int, np.integer)) and not isinstance(column, bool):
        n_cols = int(meta_data.shape[1])
        if not 0 <= int(column) < n_cols:
            raise ConfigurationError(
                f"{argname}={column!r} is out of range; meta data has {n_cols} column(s)."
            )
        return str(meta_data.columns[int(column)])

    if str(column) not in meta_data.columns:
        raise ConfigurationError(
            f"{argname}={column!r} not found in meta data. "
            f"Available: {list(map(str, meta_data.columns))}"
        )
    return str(column)


def _align_meta_data(meta_data: pd.DataFrame, cells: pd.Index) -> pd.DataFrame:
    """
    Line up meta data rows with the cells of the count matrix.

    Rows are matched by cell name when the index covers every cell, otherwise
    positionally if the row count matches.
    """
    if not isinstance(meta_data, pd.DataFrame):
        raise DataError(f"meta_data must be a pandas DataFrame, got {type(meta_data).__name__}.")

    idx = meta_data.index.astype(str)
    if idx.is_unique and len(idx) == len(cells) and set(idx) == set(cells):
        out = meta_data.copy()
        out.index = idx
        return out.loc[cells]

    if meta_data.shape[0] != len(cells):
        raise DataError(
            f"meta_data has {meta_data.shape[0]} rows but the count matrix has {len(cells)} cells."
        )
    out = meta_data.copy()
    out.index = cells
    return out


def _as_ordered_categorical(values: pd.Series, *, what: str) -> pd.Series:
    """
    Categorical with string levels in a deterministic order: an existing
    categorical keeps its category order, anything else uses first-seen order.
    """
    if values.isna().any():
        n_na = int(values.isna().sum())
        raise DataError(f"{what} has {n_na} missing value(s).")

    if isinstance(values.dtype, pd.CategoricalDtype):
        cats = values.cat.remove_unused_categories().cat.categories
        levels = [str(c) for c in cats]
    else:
        levels = [str(c) for c in pd.unique(values.to_numpy())]

    levels = list(dict.fromkeys(levels))
    return pd.Series(
        pd.Categorical(values.astype(str).to_numpy(), categories=levels),
        index=values.index,
        name=values.name,
    )


def _resolve_default_ident(adata: ad.AnnData) -> str:
    """
    Default identity column of an AnnData.

    Rules:
      1) adata.uns['idents_key'] if set and present in obs.
      2) Else the first of DEFAULT_IDENT_KEYS present in obs.
    """
    key = adata.uns.get("idents_key", None)
    if key and str(key) in adata.obs:
        return str(key)

    for k in DEFAULT_IDENT_KEYS:
        if k in adata.obs:
            return k

    raise ConfigurationError(
        "Could not resolve group labels. Provide group_column=... or set "
        "adata.uns['idents_key'] / an obs column named one of "
        f"{list(DEFAULT_IDENT_KEYS)}."
    )


# -----------------------------------------------------------------------------
# Counts access helpers
# -----------------------------------------------------------------------------
def _pick_counts_layer(adata: ad.AnnData, requested_layer: Optional[str]) -> Optional[str]:
    """
    Policy:
      - If requested_layer is explicitly provided: use it (must exist).
      - Else: prefer 'counts', then 'counts_raw', else None -> adata.X
    """
    if requested_layer is not None:
        if requested_layer not in adata.layers:
            raise ConfigurationError(
                f"layer={requested_layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        return requested_layer

    for k in DEFAULT_COUNTS_LAYERS:
        if k in adata.layers:
            return k
    return None


def _to_csr(X: Any) -> sp.csr_matrix:
    if sp.issparse(X):
        return sp.csr_matrix(X)
    arr = np.asarray(X)
    if arr.ndim != 2:
        raise DataError(f"Count matrix must be 2-dimensional, got shape {arr.shape}.")
    if not (np.issubdtype(arr.dtype, np.number) or arr.dtype == np.bool_):
        raise DataError(f"Count matrix must be numeric, got dtype {arr.dtype}.")
    return sp.csr_matrix(arr)


def _validate_counts(X: sp.csr_matrix) -> sp.csr_matrix:
    """Counts must be numeric, finite and non-negative."""
    if X.dtype == object or not (np.issubdtype(X.dtype, np.number) or X.dtype == np.bool_):
        raise DataError(f"Count matrix must be numeric, got dtype {X.dtype}.")

    data = X.data
    if data.size:
        if not np.all(np.isfinite(data)):
            raise DataError("Count matrix contains non-finite values (NaN or inf).")
        if np.any(data < 0):
            raise DataError("Count matrix contains negative values; raw counts are required.")

    if X.dtype == np.bool_:
        X = X.astype(np.int64)
    return X


def _counts_from_anndata(adata: ad.AnnData, layer: Optional[str]) -> sp.csr_matrix:
    layer_used = _pick_counts_layer(adata, layer)
    X = adata.layers[layer_used] if layer_used is not None else adata.X
    if X is None:
        raise DataError("Counts matrix is None (no .X and no counts layer).")
    if not sp.issparse(X):
        LOGGER.debug("Counts matrix is dense; converting to CSR.")
    return _to_csr(X)


def _counts_from_matrix(
    obj: Any,
    meta_data: Optional[pd.DataFrame],
    gene_names: Optional[Sequence[str]],
) -> tuple[sp.csr_matrix, pd.Index, pd.Index]:
    """genes x cells input -> (cells x genes CSR, genes, cells)."""
    if isinstance(obj, pd.DataFrame):
        non_numeric = [str(c) for c, dt in obj.dtypes.items() if not pd.api.types.is_numeric_dtype(dt)]
        if non_numeric:
            raise DataError(
                f"Count table has non-numeric column(s): {non_numeric[:5]}"
                + (" ..." if len(non_numeric) > 5 else "")
            )
        genes = pd.Index(obj.index.astype(str), name="feature")
        cells = pd.Index(obj.columns.astype(str), name="cell")
        if obj.dtypes.apply(lambda dt: isinstance(dt, pd.SparseDtype)).all() and obj.shape[1] > 0:
            X = sp.csr_matrix(obj.sparse.to_coo().T)
        else:
            X = sp.csr_matrix(obj.to_numpy().T)
        return X, genes, cells

    if not (sp.issparse(obj) or isinstance(obj, np.ndarray)):
        raise DataError(
            "Unsupported input type "
            f"{type(obj).__name__}; expected AnnData, pandas DataFrame, numpy array or scipy sparse matrix."
        )

    X = _to_csr(obj).T.tocsr()
    n_cells, n_genes = X.shape

    if gene_names is None:
        genes = pd.Index([f"gene_{i + 1}" for i in range(n_genes)], name="feature")
    else:
        genes = pd.Index([str(g) for g in gene_names], name="feature")
        if len(genes) != n_genes:
            raise DataError(f"gene_names has {len(genes)} entries but the matrix has {n_genes} genes (rows).")

    if meta_data is not None and isinstance(meta_data, pd.DataFrame) and meta_data.shape[0] == n_cells:
        cells = pd.Index(meta_data.index.astype(str), name="cell")
        if not cells.is_unique:
            cells = pd.Index([f"cell_{i + 1}" for i in range(n_cells)], name="cell")
    else:
        cells = pd.Index([f"cell_{i + 1}" for i in range(n_cells)], name="cell")
    return X, genes, cells


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def get_data(
    obj: Any,
    meta_data: Optional[pd.DataFrame] = None,
    group_column: Optional[ColumnRef] = None,
    replicate_column: Optional[ColumnRef] = None,
    *,
    layer: Optional[str] = None,
    gene_names: Optional[Sequence[str]] = None,
    verbosity: int = 1,
) -> DEData:
    """
    Extract counts, grouping and replicate labels from the input object.

    obj may be
      - an AnnData (cells x genes; meta data defaults to adata.obs),
      - a pandas DataFrame of counts, genes x cells,
      - a numpy array or scipy sparse matrix, genes x cells.

    group_column / replicate_column are column names or 0-based positions in
    the meta data. If group_column is None the default identity of an AnnData
    is used (see _resolve_default_ident); matrix inputs have none.
    """
    if isinstance(obj, ad.AnnData):
        X = _counts_from_anndata(obj, layer)
        genes = pd.Index(obj.var_names.astype(str), name="feature")
        cells = pd.Index(obj.obs_names.astype(str), name="cell")
        meta = _align_meta_data(meta_data, cells) if meta_data is not None else obj.obs.copy()
        meta.index = cells
        if group_column is None:
            group_column = _resolve_default_ident(obj)
            if group_column not in meta.columns:
                meta[group_column] = obj.obs[group_column].values
            log_verbose(LOGGER, verbosity, 2, "Using default identity column %r as grouping.", group_column)
    else:
        X, genes, cells = _counts_from_matrix(obj, meta_data, gene_names)
        meta = _align_meta_data(meta_data, cells) if meta_data is not None else None
        if group_column is None:
            raise ConfigurationError(
                "group_column is required when the input is a matrix or data frame "
                "(there is no default identity to fall back on)."
            )

    X = _validate_counts(X)

    if not genes.is_unique:
        dups = genes[genes.duplicated()].unique().tolist()
        raise DataError(f"Gene identifiers must be unique; duplicated: {dups[:5]}")
    if not cells.is_unique:
        raise DataError("Cell identifiers must be unique.")

    group_key = resolve_column(meta, group_column, argname="group_column")
    grouping = _as_ordered_categorical(meta[group_key], what=f"Group column {group_key!r}")
    grouping.name = group_key

    replicate_label = None
    if replicate_column is not None:
        rep_key = resolve_column(meta, replicate_column, argname="replicate_column")
        if rep_key == group_key:
            raise ConfigurationError("replicate_column must differ from group_column.")
        replicate_label = _as_ordered_categorical(meta[rep_key], what=f"Replicate column {rep_key!r}")
        replicate_label.name = rep_key

    data = DEData(
        counts=X,
        genes=genes,
        cells=cells,
        grouping=grouping,
        replicate_label=replicate_label,
        meta_data=meta,
    )

    log_verbose(
        LOGGER, verbosity, 1,
        "Input: %d cells x %d genes; grouping %r with %d level(s)%s.",
        data.n_cells, data.n_genes, group_key, len(data.group_levels),
        f"; replicates {replicate_label.name!r} ({replicate_label.cat.categories.size})"
        if replicate_label is not None else "",
    )
    if verbosity >= 2:
        sizes = grouping.value_counts(sort=False)
        for lev in data.group_levels:
            LOGGER.info("  group %s: %d cells", lev, int(sizes.get(lev, 0)))

    return data
