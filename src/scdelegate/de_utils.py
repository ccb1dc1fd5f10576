# src/scdelegate/de_utils.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp
from statsmodels.stats.multitest import multipletests

from .comparisons import Comparison
from .data_utils import DEData, resolve_column
from .engines import (
    GROUP_FACTOR,
    REF_LEVEL,
    TEST_LEVEL,
    DEEngine,
    DesignSpec,
    EngineOptions,
    get_engine,
)
from .errors import ConfigurationError, EngineError
from .logging_utils import log_verbose

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "feature",
    "ave_expr",
    "log_fc",
    "stat",
    "pvalue",
    "padj",
    "rate1",
    "rate2",
    "group1",
    "group2",
]

CovariateSpec = Union[None, pd.DataFrame, pd.Series, str, int, Sequence[Union[str, int]]]
# covariate columns are namespaced inside sample meta data
COVARIATE_PREFIX = "covariate:"


# -----------------------------------------------------------------------------
# Small numeric helpers
# -----------------------------------------------------------------------------
def adjust_fdr(pvalues: Any) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values. Missing p-values stay missing and
    do not count towards the number of tests.
    """
    p = np.asarray(pd.to_numeric(pd.Series(pvalues), errors="coerce"), dtype=float)
    out = np.full(p.shape, np.nan, dtype=float)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return out


def detection_rate(X: sp.csr_matrix, mask: np.ndarray) -> np.ndarray:
    """Fraction of cells in mask with a non-zero count, per gene."""
    mask = np.asarray(mask, dtype=bool)
    n = int(mask.sum())
    if n == 0:
        return np.full(X.shape[1], np.nan)
    sub = X[np.where(mask)[0], :]
    nnz = np.asarray((sub > 0).sum(axis=0)).ravel()
    return nnz.astype(float) / float(n)


def side_masks(grouping: pd.Series, comparison: Comparison) -> Tuple[np.ndarray, np.ndarray]:
    labels = grouping.astype(str).to_numpy()
    mask1 = np.isin(labels, list(comparison.group1))
    mask2 = np.isin(labels, list(comparison.group2))
    return mask1, mask2


def _compute_parallelism(
    *,
    n_comparisons: int,
    total_cpus: int,
) -> tuple[int, int]:
    """
    Decide (n_jobs, n_cpus_per_job) for comparison-wise DE.

    Rules:
      - If total_cpus <= n_comparisons:
          n_jobs = total_cpus
          n_cpus = 1
      - Else:
          n_jobs = n_comparisons
          n_cpus = 1 + floor((total_cpus - n_comparisons) / n_comparisons)
    """
    total_cpus = int(max(1, total_cpus))
    n_comparisons = int(max(1, n_comparisons))

    if total_cpus <= n_comparisons:
        return total_cpus, 1

    extra = total_cpus - n_comparisons
    n_cpus = 1 + (extra // n_comparisons)
    return n_comparisons, n_cpus


# -----------------------------------------------------------------------------
# Pseudobulk aggregation
# -----------------------------------------------------------------------------
def pseudobulk_aggregate(
    X: sp.csr_matrix,
    sample_labels: np.ndarray,
) -> Tuple[sp.csr_matrix, pd.Index, np.ndarray]:
    """
    Sum cell counts into one profile per distinct sample label.

    Returns (PB, sample_ids, n_cells): PB is samples x genes, sample_ids in
    first-seen order. Uses a sparse indicator matrix, PB = G.T @ X, so the
    cell matrix is never densified.
    """
    sample_labels = np.asarray(sample_labels).astype(str)
    if sample_labels.shape[0] != X.shape[0]:
        raise ValueError("sample_labels must have one entry per cell")

    codes, uniques = pd.factorize(sample_labels, sort=False)
    n_libs = int(len(uniques))

    rows = np.arange(sample_labels.shape[0], dtype=np.int64)
    cols = codes.astype(np.int64, copy=False)
    data = np.ones(rows.shape[0], dtype=np.int8)
    G = sp.csr_matrix((data, (rows, cols)), shape=(sample_labels.shape[0], n_libs))

    # float32 sums lose integer precision above 2**24
    PB = (G.T @ sp.csr_matrix(X).astype(np.float64)).tocsr()
    n_cells = np.asarray(G.sum(axis=0)).ravel().astype(int)
    return PB, pd.Index(uniques.astype(str), name="sample"), n_cells


# -----------------------------------------------------------------------------
# Covariates + design
# -----------------------------------------------------------------------------
def resolve_covariates(data: DEData, covariates: CovariateSpec) -> Optional[pd.DataFrame]:
    """
    Per-cell covariate table aligned to data.cells, or None.

    covariates may be a DataFrame/Series with one row per cell (matched by
    index when it covers the cells, else by position), or column name(s) /
    position(s) in the meta data.
    """
    if covariates is None:
        return None

    if isinstance(covariates, pd.Series):
        covariates = covariates.to_frame(name=str(covariates.name) if covariates.name is not None else "covariate")

    if isinstance(covariates, pd.DataFrame):
        cov = covariates.copy()
        idx = cov.index.astype(str)
        if idx.is_unique and set(data.cells).issubset(set(idx)):
            cov.index = idx
            cov = cov.loc[data.cells]
        elif cov.shape[0] == data.n_cells:
            cov.index = data.cells
        else:
            raise ConfigurationError(
                f"covariates has {cov.shape[0]} rows, which does not match the {data.n_cells} cells."
            )
    else:
        refs = [covariates] if isinstance(covariates, (str, int, np.integer)) else list(covariates)
        cols = [resolve_column(data.meta_data, r, argname="covariates") for r in refs]
        cov = data.meta_data.loc[:, cols].copy()

    if cov.shape[1] == 0:
        return None

    group_key = data.grouping.name
    if group_key is not None and str(group_key) in map(str, cov.columns):
        raise ConfigurationError(f"covariates must not include the group column {group_key!r}.")

    if cov.isna().any().any():
        bad = [str(c) for c in cov.columns if cov[c].isna().any()]
        raise ConfigurationError(f"covariates contain missing values in column(s) {bad}.")

    return cov


def _sample_layout(
    data: DEData,
    comparison: Comparison,
    covariates: Optional[pd.DataFrame] = None,
) -> Tuple[np.ndarray, Optional[np.ndarray], pd.DataFrame]:
    """
    (cell positions, per-cell sample labels or None, sample meta data) for one
    comparison, without touching the counts.
    """
    mask1, mask2 = side_masks(data.grouping, comparison)
    keep = mask1 | mask2
    idx = np.where(keep)[0]
    side = np.where(mask1[idx], TEST_LEVEL, REF_LEVEL)
    cov = covariates.iloc[idx] if covariates is not None else None

    if data.replicate_label is None:
        sample_meta = pd.DataFrame({GROUP_FACTOR: side, "n_cells": 1}, index=data.cells[idx])
        if cov is not None:
            sample_cov = cov.set_axis(sample_meta.index).add_prefix(COVARIATE_PREFIX)
            sample_meta = pd.concat([sample_meta, sample_cov], axis=1)
        sample_meta.index.name = "sample"
        return idx, None, sample_meta

    reps = data.replicate_label.astype(str).to_numpy()[idx]
    sample_labels = np.char.add(np.char.add(reps.astype(str), "|"), side.astype(str))
    codes, uniques = pd.factorize(sample_labels, sort=False)
    sample_ids = pd.Index(uniques.astype(str), name="sample")

    first = pd.Series(np.arange(len(sample_labels))).groupby(sample_labels, sort=False).first()
    sample_side = side[first.loc[sample_ids].to_numpy()]
    sample_meta = pd.DataFrame(
        {GROUP_FACTOR: sample_side, "n_cells": np.bincount(codes, minlength=len(sample_ids))},
        index=sample_ids,
    )

    if cov is not None:
        grouped = cov.reset_index(drop=True).groupby(sample_labels, sort=False)
        n_unique = grouped.nunique(dropna=False)
        varying = [str(c) for c in n_unique.columns if (n_unique[c] > 1).any()]
        if varying:
            raise ConfigurationError(
                f"covariate(s) {varying} vary within replicate samples; with replicate labels "
                "covariates must be constant per replicate."
            )
        sample_cov = grouped.first().loc[sample_ids].add_prefix(COVARIATE_PREFIX)
        sample_meta = pd.concat([sample_meta, sample_cov], axis=1)

    sample_meta.index.name = "sample"
    return idx, sample_labels, sample_meta


def _sample_matrix(data: DEData, idx: np.ndarray, sample_labels: Optional[np.ndarray]) -> sp.csr_matrix:
    """Sparse counts (samples x genes), rows in the order _sample_layout lists samples."""
    X = data.counts[idx, :]
    if sample_labels is None:
        return sp.csr_matrix(X)
    PB, _, _ = pseudobulk_aggregate(X, sample_labels)
    return PB


def counts_frame(M: sp.spmatrix, samples: pd.Index, genes: pd.Index) -> pd.DataFrame:
    counts = pd.DataFrame(M.toarray(), index=samples, columns=genes)
    counts.index.name = "sample"
    return counts


def build_samples(
    data: DEData,
    comparison: Comparison,
    covariates: Optional[pd.DataFrame] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Counts (samples x genes) and sample meta data for one comparison.

    Only cells on either side of the comparison are used. With replicate
    labels each (replicate, side) becomes one pseudobulk sample; without,
    every cell is its own sample.
    """
    idx, sample_labels, sample_meta = _sample_layout(data, comparison, covariates)
    counts = counts_frame(_sample_matrix(data, idx, sample_labels), sample_meta.index, data.genes)
    return counts, sample_meta


def build_design(sample_meta: pd.DataFrame, covariate_columns: Sequence[str] = ()) -> DesignSpec:
    """
    Model: intercept + group indicator (test vs ref) + covariates as fixed effects.

    Covariates are renamed cov1, cov2, ... so they are safe inside a formula.
    Numeric covariates enter as-is, others are one-hot coded with the first
    level dropped.
    """
    meta = pd.DataFrame(index=sample_meta.index)
    meta[GROUP_FACTOR] = pd.Categorical(sample_meta[GROUP_FACTOR].astype(str), categories=[REF_LEVEL, TEST_LEVEL])

    mm = pd.DataFrame(index=sample_meta.index)
    mm["Intercept"] = 1.0
    mm[f"{GROUP_FACTOR}{TEST_LEVEL}"] = (meta[GROUP_FACTOR] == TEST_LEVEL).astype(float)

    terms: List[str] = []
    for i, col in enumerate(covariate_columns, start=1):
        name = f"cov{i}"
        v = sample_meta[col]
        if pd.api.types.is_numeric_dtype(v) and not pd.api.types.is_bool_dtype(v):
            meta[name] = v.astype(float)
            mm[name] = v.astype(float)
        else:
            v = v.astype(str)
            meta[name] = pd.Categorical(v, categories=list(dict.fromkeys(v)))
            dummies = pd.get_dummies(meta[name], prefix=name, drop_first=True, dtype=float)
            mm = pd.concat([mm, dummies], axis=1)
        terms.append(name)

    formula = "~" + " + ".join(terms + [GROUP_FACTOR])
    return DesignSpec(sample_meta=meta, matrix=mm, formula=formula)


def check_design(design: DesignSpec, comparison: Comparison) -> None:
    """Fail before calling an engine on a design it cannot fit."""
    groups = design.sample_meta[GROUP_FACTOR].astype(str)
    n_test = int((groups == TEST_LEVEL).sum())
    n_ref = int((groups == REF_LEVEL).sum())
    if n_test == 0 or n_ref == 0:
        raise EngineError(
            f"Comparison {comparison}: no samples on side "
            f"{comparison.label1 if n_test == 0 else comparison.label2}."
        )

    n_samples, n_coef = design.matrix.shape
    if n_samples <= n_coef:
        raise EngineError(
            f"Comparison {comparison}: {n_samples} sample(s) for {n_coef} model coefficient(s); "
            "no residual degrees of freedom."
        )

    rank = int(np.linalg.matrix_rank(design.matrix.to_numpy(dtype=float)))
    if rank < n_coef:
        raise EngineError(
            f"Comparison {comparison}: design matrix is rank deficient (rank {rank} < {n_coef} columns); "
            "covariates are confounded with the groups being compared."
        )


# -----------------------------------------------------------------------------
# Per-comparison run
# -----------------------------------------------------------------------------
# Raised as-is; anything else from an engine becomes an EngineError.
_PASSTHROUGH_ERRORS = (ImportError, ConfigurationError)


def _prepare_design(
    data: DEData,
    comparison: Comparison,
    covariates: Optional[pd.DataFrame],
) -> Tuple[np.ndarray, Optional[np.ndarray], DesignSpec]:
    idx, sample_labels, sample_meta = _sample_layout(data, comparison, covariates)
    cov_cols = [f"{COVARIATE_PREFIX}{c}" for c in covariates.columns] if covariates is not None else []
    design = build_design(sample_meta, cov_cols)
    check_design(design, comparison)
    return idx, sample_labels, design


def _side_rates(data: DEData, comparison: Comparison) -> Tuple[np.ndarray, np.ndarray]:
    mask1, mask2 = side_masks(data.grouping, comparison)
    return detection_rate(data.counts, mask1), detection_rate(data.counts, mask2)


def _engine_worker(payload: dict) -> tuple[int, pd.DataFrame]:
    """
    Worker: densify one comparison's sparse counts and run the engine fit.
    Returns (comparison position, engine-native result frame).
    """
    counts = counts_frame(payload["counts"], payload["samples"], payload["genes"])
    engine = get_engine(payload["method"])
    raw = engine.run(counts, payload["design"], payload["options"])
    return int(payload["position"]), raw


def _finalize(
    engine: DEEngine,
    raw: pd.DataFrame,
    comparison: Comparison,
    genes: pd.Index,
    rate1: np.ndarray,
    rate2: np.ndarray,
) -> pd.DataFrame:
    common = engine.to_common(raw).reindex(genes)
    out = pd.DataFrame(
        {
            "feature": genes.astype(str).to_numpy(),
            "ave_expr": common["ave_expr"].to_numpy(),
            "log_fc": common["log_fc"].to_numpy(),
            "stat": common["stat"].to_numpy(),
            "pvalue": common["pvalue"].to_numpy(),
            "padj": adjust_fdr(common["pvalue"].to_numpy()),
            "rate1": rate1,
            "rate2": rate2,
            "group1": comparison.label1,
            "group2": comparison.label2,
        }
    )
    return out[RESULT_COLUMNS]


def _engine_failure(method: str, comparison: Comparison, e: Exception) -> EngineError:
    return EngineError(f"Method {method!r} failed on comparison {comparison}: {e}")


def _fit_one(
    engine: DEEngine,
    data: DEData,
    comparison: Comparison,
    covariates: Optional[pd.DataFrame],
    options: EngineOptions,
) -> Tuple[pd.DataFrame, Tuple[int, int]]:
    """
    Build, fit and finalize one comparison in this process.
    Returns (result table, (n_samples, n_genes) of the fitted counts).
    """
    idx, sample_labels, design = _prepare_design(data, comparison, covariates)
    counts = counts_frame(_sample_matrix(data, idx, sample_labels), design.sample_meta.index, data.genes)
    try:
        raw = engine.run(counts, design, options)
    except _PASSTHROUGH_ERRORS:
        raise
    except Exception as e:
        raise _engine_failure(engine.name, comparison, e) from e
    rate1, rate2 = _side_rates(data, comparison)
    return _finalize(engine, raw, comparison, data.genes, rate1, rate2), counts.shape


def _warn_if_unreplicated(data: DEData, method: str) -> None:
    if data.replicate_label is None:
        LOGGER.warning(
            "No replicate labels given; method %r runs on individual cells, treating every cell "
            "as an independent replicate. P-values may be overly optimistic.",
            method,
        )


def run_comparison(
    data: DEData,
    comparison: Comparison,
    method: str = "edger",
    covariates: CovariateSpec = None,
    lfc_shrinkage: Optional[str] = None,
    verbosity: int = 1,
    n_cpus: int = 1,
) -> pd.DataFrame:
    """
    Run one comparison with one engine and return it in the common result schema.
    """
    engine = get_engine(method)
    shrink = engine.check_shrinkage(lfc_shrinkage)
    cov = resolve_covariates(data, covariates)
    _warn_if_unreplicated(data, engine.name)

    options = EngineOptions(lfc_shrinkage=shrink, n_cpus=int(n_cpus))
    table, (n_samples, n_genes) = _fit_one(engine, data, comparison, cov, options)
    log_verbose(
        LOGGER, verbosity, 2,
        "DE %s: %s (%d samples, %d genes)",
        engine.name, str(comparison), n_samples, n_genes,
    )
    return table


def run_de_comparisons(
    data: DEData,
    comparisons: Sequence[Comparison],
    method: str = "edger",
    covariates: CovariateSpec = None,
    order_results: bool = True,
    lfc_shrinkage: Optional[str] = None,
    verbosity: int = 1,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """
    Run every comparison and assemble one result table.

    A failure in any comparison aborts the whole call (EngineError); there
    are no partial results. With n_jobs > 1 comparisons run in a process
    pool, and results are put back in planner order.
    """
    engine = get_engine(method)
    shrink = engine.check_shrinkage(lfc_shrinkage)
    cov = resolve_covariates(data, covariates)
    _warn_if_unreplicated(data, engine.name)

    n_jobs_eff, n_cpus_eff = _compute_parallelism(n_comparisons=len(comparisons), total_cpus=int(n_jobs))
    options = EngineOptions(lfc_shrinkage=shrink, n_cpus=n_cpus_eff)

    log_verbose(
        LOGGER, verbosity, 1,
        "Running %d comparison(s) with method %r (%s).",
        len(comparisons), engine.name,
        "pseudobulk by replicate" if data.replicate_label is not None else "cell level",
    )

    tables: List[Optional[pd.DataFrame]] = [None] * len(comparisons)
    t0 = time.perf_counter()
    total = len(comparisons)

    if int(n_jobs) <= 1 or total <= 1:
        for i, cmp in enumerate(comparisons):
            t_c0 = time.perf_counter()
            tables[i], (n_samples, n_genes) = _fit_one(engine, data, cmp, cov, options)
            log_verbose(
                LOGGER, verbosity, 2,
                "DE [%d/%d] done %s (samples=%d, genes=%d) time=%.1fs",
                i + 1, total, str(cmp), n_samples, n_genes, time.perf_counter() - t_c0,
            )
        return assemble_results(tables, order_results=order_results)

    # Design problems surface here, before any fit. Counts are built per
    # submission and travel sparse; at most n_jobs_eff payloads exist at once.
    rates = []
    for cmp in comparisons:
        _prepare_design(data, cmp, cov)
        rates.append(_side_rates(data, cmp))

    log_verbose(
        LOGGER, verbosity, 1,
        "Running in parallel (comparisons=%d, max_workers=%d, n_cpus_per_fit=%d).",
        total, n_jobs_eff, n_cpus_eff,
    )
    ctx = mp.get_context("spawn")
    with ProcessPoolExecutor(max_workers=n_jobs_eff, mp_context=ctx) as ex:
        running: Dict[Any, int] = {}
        next_pos = 0
        done = 0
        while next_pos < total or running:
            while next_pos < total and len(running) < n_jobs_eff:
                cmp = comparisons[next_pos]
                idx, sample_labels, design = _prepare_design(data, cmp, cov)
                payload = {
                    "position": next_pos,
                    "method": engine.name,
                    "counts": _sample_matrix(data, idx, sample_labels),
                    "samples": design.sample_meta.index,
                    "genes": data.genes,
                    "design": design,
                    "options": options,
                }
                running[ex.submit(_engine_worker, payload)] = next_pos
                next_pos += 1

            finished, _ = wait(running, return_when=FIRST_COMPLETED)
            for fut in finished:
                i = running.pop(fut)
                try:
                    pos, raw = fut.result()
                except Exception as e:
                    for f in running:
                        f.cancel()
                    if isinstance(e, _PASSTHROUGH_ERRORS):
                        raise
                    raise _engine_failure(engine.name, comparisons[i], e) from e
                rate1, rate2 = rates[pos]
                tables[pos] = _finalize(engine, raw, comparisons[pos], data.genes, rate1, rate2)
                done += 1
                log_verbose(
                    LOGGER, verbosity, 2,
                    "DE [%d/%d] done %s elapsed=%.1fs",
                    done, total, str(comparisons[pos]), time.perf_counter() - t0,
                )

    return assemble_results(tables, order_results=order_results)


# -----------------------------------------------------------------------------
# Assembly
# -----------------------------------------------------------------------------
def assemble_results(tables: Sequence[pd.DataFrame], order_results: bool = True) -> pd.DataFrame:
    """
    Concatenate per-comparison tables in the given (planner) order.

    order_results=True sorts within each comparison by ascending p-value, then
    descending |stat|; comparisons keep their order. padj is not touched.
    """
    if not tables:
        return pd.DataFrame(columns=RESULT_COLUMNS)

    parts = []
    for i, t in enumerate(tables):
        parts.append(t.assign(_cmp=i))
    res = pd.concat(parts, axis=0, ignore_index=True)

    if order_results:
        res["_neg_abs_stat"] = -res["stat"].abs()
        res = res.sort_values(
            by=["_cmp", "pvalue", "_neg_abs_stat"],
            ascending=[True, True, True],
            kind="mergesort",
            na_position="last",
        )
        res = res.drop(columns=["_neg_abs_stat"])

    res = res.drop(columns=["_cmp"]).reset_index(drop=True)
    return res[RESULT_COLUMNS]
