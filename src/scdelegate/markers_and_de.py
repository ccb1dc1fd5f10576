# src/scdelegate/markers_and_de.py
from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Sequence

import pandas as pd

from scdelegate import __version__
from . import io_utils
from .comparisons import EACH_VS_REST, print_comparisons, set_up_comparisons
from .data_utils import ColumnRef, get_data
from .de_utils import CovariateSpec, adjust_fdr, run_de_comparisons
from .engines import get_engine
from .errors import ConfigurationError
from .logging_utils import init_logging, verbosity_to_level

LOGGER = logging.getLogger(__name__)


def find_de(
    obj: Any,
    meta_data: Optional[pd.DataFrame] = None,
    group_column: Optional[ColumnRef] = None,
    replicate_column: Optional[ColumnRef] = None,
    covariates: CovariateSpec = None,
    compare: Any = EACH_VS_REST,
    compare_is_ref: bool = False,
    method: str = "edger",
    order_results: bool = True,
    lfc_shrinkage: Optional[str] = None,
    verbosity: int = 1,
    *,
    n_jobs: int = 1,
    layer: Optional[str] = None,
    gene_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Differential expression tests for single-cell RNA-seq data.

    Compares groups of cells with edgeR (quasi-likelihood F-test), PyDESeq2
    (Wald test) or limma-trend, and returns one row per gene and comparison:

      feature   gene name
      ave_expr  average expression (edger: logCPM, deseq: baseMean, limma: AveExpr)
      log_fc    log2(group1 / group2) (edger: logFC, deseq: log2FoldChange, limma: logFC)
      stat      test statistic (edger: F, deseq: stat, limma: B)
      pvalue    p-value
      padj      Benjamini-Hochberg FDR within the comparison
      rate1     fraction of group1 cells with non-zero counts
      rate2     fraction of group2 cells with non-zero counts
      group1    comparison group one
      group2    comparison group two

    compare:
      'each_vs_rest' (default) one comparison per group against all other cells;
      'all_vs_all' every pair of groups; a pair such as ('T-cells', 'B-cells');
      a pair of lists such as (['cluster1', 'cluster5'], ['cluster3']); or, with
      compare_is_ref=True, a single reference level that every other level is
      compared to.

    With replicate_column set, cells are summed to pseudobulk samples per
    replicate and side; without it every cell is treated as a sample and a
    warning is logged.

    order_results=True orders rows by comparison, then p-value, then
    descending |stat|. With False genes keep the input order within each
    comparison.

    lfc_shrinkage is only used with method='deseq' ('apeglm').
    verbosity: 0 silent, 1 some messages, 2 more messages.
    """
    engine = get_engine(method)

    data = get_data(
        obj,
        meta_data=meta_data,
        group_column=group_column,
        replicate_column=replicate_column,
        layer=layer,
        gene_names=gene_names,
        verbosity=verbosity,
    )

    comparisons = set_up_comparisons(
        group_levels=data.group_levels,
        compare=compare,
        compare_is_ref=compare_is_ref,
        verbosity=verbosity,
    )
    print_comparisons(comparisons, verbosity)

    return run_de_comparisons(
        data,
        comparisons,
        method=engine.name,
        covariates=covariates,
        order_results=order_results,
        lfc_shrinkage=lfc_shrinkage,
        verbosity=verbosity,
        n_jobs=n_jobs,
    )


def filter_markers(res: pd.DataFrame, min_rate: float = 0.05, min_fc: float = 1.0) -> pd.DataFrame:
    """
    Keep genes with (rate1 >= min_rate or rate2 >= min_rate) and log_fc >= min_fc,
    then per group1: recompute padj over the surviving genes, add feature_rank
    (1..n in the current row order) and drop group2.
    """
    keep = ((res["rate1"] >= min_rate) | (res["rate2"] >= min_rate)) & (res["log_fc"] >= min_fc)
    out = res.loc[keep].copy()

    by_group = out.groupby("group1", sort=False)
    out["padj"] = by_group["pvalue"].transform(lambda p: adjust_fdr(p.to_numpy()))
    out["feature_rank"] = by_group.cumcount() + 1

    out = out.drop(columns=["group2"]).reset_index(drop=True)
    return out


def find_all_markers(
    obj: Any,
    meta_data: Optional[pd.DataFrame] = None,
    group_column: Optional[ColumnRef] = None,
    replicate_column: Optional[ColumnRef] = None,
    covariates: CovariateSpec = None,
    method: str = "edger",
    min_rate: float = 0.05,
    min_fc: float = 1.0,
    lfc_shrinkage: Optional[str] = None,
    verbosity: int = 1,
    *,
    n_jobs: int = 1,
    layer: Optional[str] = None,
    gene_names: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Find markers for all groups.

    Runs find_de with compare='each_vs_rest', removes genes with a detection
    rate below min_rate in both groups or a log fold-change below min_fc, and
    recalculates the FDR per group. Returns the find_de columns without
    group2, plus feature_rank.
    """
    if not 0.0 <= float(min_rate) <= 1.0:
        raise ConfigurationError(f"min_rate must be within [0, 1], got {min_rate!r}.")

    res = find_de(
        obj,
        meta_data=meta_data,
        group_column=group_column,
        replicate_column=replicate_column,
        covariates=covariates,
        compare=EACH_VS_REST,
        method=method,
        order_results=True,
        lfc_shrinkage=lfc_shrinkage,
        verbosity=verbosity,
        n_jobs=n_jobs,
        layer=layer,
        gene_names=gene_names,
    )
    return filter_markers(res, min_rate=float(min_rate), min_fc=float(min_fc))


# -----------------------------------------------------------------------------
# File-based orchestrators (CLI)
# -----------------------------------------------------------------------------
def _write_settings(out_path: Path, lines: list[str]) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


def _settings_lines(cfg, n_rows: int) -> list[str]:
    lines = [
        f"scdelegate {__version__}",
        f"run at {datetime.now().isoformat(timespec='seconds')}",
        f"rows written: {n_rows}",
    ]
    for k, v in cfg.model_dump().items():
        lines.append(f"{k}: {v}")
    return lines


def _load(cfg):
    obj = io_utils.load_input(cfg.input_path)
    meta = io_utils.load_metadata(cfg.metadata_tsv) if cfg.metadata_tsv is not None else None
    return obj, meta


def run_find_de(cfg) -> pd.DataFrame:
    """
    find-de orchestrator: load input, run find_de, write the result table and
    a settings file next to it.
    """
    init_logging(getattr(cfg, "logfile", None), level=verbosity_to_level(cfg.verbosity))
    LOGGER.info("Starting find-de (method=%s)...", cfg.method)

    obj, meta = _load(cfg)
    res = find_de(
        obj,
        meta_data=meta,
        group_column=cfg.group_column,
        replicate_column=cfg.replicate_column,
        covariates=cfg.covariates or None,
        compare=cfg.compare,
        compare_is_ref=cfg.compare_is_ref,
        method=cfg.method,
        order_results=cfg.order_results,
        lfc_shrinkage=cfg.lfc_shrinkage,
        verbosity=cfg.verbosity,
        n_jobs=cfg.n_jobs,
        layer=cfg.layer,
    )

    io_utils.save_results(res, cfg.output_path)
    _write_settings(cfg.settings_path, _settings_lines(cfg, res.shape[0]))
    LOGGER.info("Finished find-de: %d rows.", res.shape[0])
    return res


def run_find_all_markers(cfg) -> pd.DataFrame:
    """
    find-all-markers orchestrator: load input, run find_all_markers, write the
    marker table and a settings file next to it.
    """
    init_logging(getattr(cfg, "logfile", None), level=verbosity_to_level(cfg.verbosity))
    LOGGER.info("Starting find-all-markers (method=%s)...", cfg.method)

    obj, meta = _load(cfg)
    res = find_all_markers(
        obj,
        meta_data=meta,
        group_column=cfg.group_column,
        replicate_column=cfg.replicate_column,
        covariates=cfg.covariates or None,
        method=cfg.method,
        min_rate=cfg.min_rate,
        min_fc=cfg.min_fc,
        lfc_shrinkage=cfg.lfc_shrinkage,
        verbosity=cfg.verbosity,
        n_jobs=cfg.n_jobs,
        layer=cfg.layer,
    )

    io_utils.save_results(res, cfg.output_path)
    _write_settings(cfg.settings_path, _settings_lines(cfg, res.shape[0]))
    LOGGER.info("Finished find-all-markers: %d markers.", res.shape[0])
    return res
