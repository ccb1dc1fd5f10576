# src/scdelegate/engines.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Design contract shared by all engines
# -----------------------------------------------------------------------------
# The side indicator factor. REF_LEVEL is side 2 (group2), TEST_LEVEL side 1,
# so every engine reports log2(group1 / group2). "ref" sorts before "test",
# which keeps formula-based engines on the same reference level.
GROUP_FACTOR = "group"
REF_LEVEL = "ref"
TEST_LEVEL = "test"

LFC_SHRINKAGE_TYPES = ("apeglm", "ashr", "normal")


@dataclass(frozen=True)
class DesignSpec:
    """
    Per-sample design for one comparison.

    sample_meta: samples x factors (GROUP_FACTOR categorical + covariates)
    matrix:      numeric model matrix, intercept first, group coefficient second
    formula:     the same model as a formula string (for formula-based engines)
    """
    sample_meta: pd.DataFrame
    matrix: pd.DataFrame
    formula: str

    @property
    def coef_name(self) -> str:
        return str(self.matrix.columns[1])


@dataclass(frozen=True)
class EngineOptions:
    lfc_shrinkage: Optional[str] = None
    n_cpus: int = 1


class DEEngine:
    """
    One statistical back-end.

    run() takes counts (samples x genes, gene names as columns) and the design
    and returns one row per gene, indexed by gene, with engine-native column
    names. column_map translates those names into the common schema.
    """
    name: str = ""
    column_map: Dict[str, str] = {}
    supports_shrinkage: bool = False

    def run(self, counts: pd.DataFrame, design: DesignSpec, options: EngineOptions) -> pd.DataFrame:
        raise NotImplementedError

    def check_shrinkage(self, lfc_shrinkage: Optional[str]) -> Optional[str]:
        """Return the shrinkage type to use, or None. Warns when it does not apply."""
        if lfc_shrinkage is None:
            return None
        LOGGER.warning(
            "lfc_shrinkage=%r is only used with method 'deseq'; ignoring it for method %r.",
            lfc_shrinkage, self.name,
        )
        return None

    def to_common(self, raw: pd.DataFrame) -> pd.DataFrame:
        missing = [c for c in self.column_map if c not in raw.columns]
        if missing:
            raise KeyError(f"{self.name} output lacks expected column(s) {missing}; got {list(raw.columns)}")
        out = raw.loc[:, list(self.column_map)].rename(columns=self.column_map)
        return out.apply(pd.to_numeric, errors="coerce")


# -----------------------------------------------------------------------------
# R-backed engines (edgeR / limma through rpy2)
# -----------------------------------------------------------------------------
_R_EDGER_QLF = """
function(counts, design) {
  y <- edgeR::DGEList(counts = counts)
  y <- edgeR::calcNormFactors(y)
  y <- edgeR::estimateDisp(y, design)
  fit <- edgeR::glmQLFit(y, design)
  qlf <- edgeR::glmQLFTest(fit, coef = 2)
  res <- edgeR::topTags(qlf, n = Inf, sort.by = 'none')$table
  data.frame(logFC = res$logFC, logCPM = res$logCPM, F = res$F, PValue = res$PValue)
}
"""

_R_LIMMA_TREND = """
function(counts, design) {
  y <- edgeR::DGEList(counts = counts)
  y <- edgeR::calcNormFactors(y)
  logcpm <- edgeR::cpm(y, log = TRUE, prior.count = 3)
  fit <- limma::lmFit(logcpm, design)
  fit <- limma::eBayes(fit, trend = TRUE, robust = TRUE)
  res <- limma::topTable(fit, coef = 2, number = Inf, sort.by = 'none')
  data.frame(logFC = res$logFC, AveExpr = res$AveExpr, t = res$t,
             P.Value = res$P.Value, B = res$B, check.names = FALSE)
}
"""


def _require_rpy2(r_packages: Tuple[str, ...]):
    try:
        import rpy2.robjects  # noqa: F401
        from rpy2.robjects.packages import isinstalled
    except Exception as e:
        raise ImportError(
            "rpy2 (and a working R installation) is required for the edgeR and limma "
            "methods. Install it with `pip install scdelegate[r]`."
        ) from e

    missing = [p for p in r_packages if not isinstalled(p)]
    if missing:
        raise ImportError(
            f"R package(s) {missing} not installed. Install them from Bioconductor, "
            "e.g. BiocManager::install(c('edgeR', 'limma'))."
        )


@lru_cache(maxsize=None)
def _r_function(code: str):
    import rpy2.robjects as ro
    return ro.r(code)


def _call_r(code: str, counts: pd.DataFrame, design: DesignSpec) -> pd.DataFrame:
    """Call an R function(counts, design) with genes x samples counts; rows come back in gene order."""
    import rpy2.robjects as ro
    from rpy2.robjects import numpy2ri, pandas2ri
    from rpy2.robjects.conversion import localconverter

    fn = _r_function(code)
    counts_gs = np.ascontiguousarray(counts.to_numpy(dtype=np.float64).T)
    design_np = np.ascontiguousarray(design.matrix.to_numpy(dtype=np.float64))

    with localconverter(ro.default_converter + numpy2ri.converter + pandas2ri.converter):
        res = fn(counts_gs, design_np)

    out = pd.DataFrame(res)
    if out.shape[0] != counts.shape[1]:
        raise RuntimeError(f"R returned {out.shape[0]} rows for {counts.shape[1]} genes.")
    out.index = counts.columns
    return out


class EdgeREngine(DEEngine):
    """edgeR quasi-likelihood F-test (glmQLFit / glmQLFTest) on the group coefficient."""
    name = "edger"
    column_map = {"logCPM": "ave_expr", "logFC": "log_fc", "F": "stat", "PValue": "pvalue"}

    def run(self, counts: pd.DataFrame, design: DesignSpec, options: EngineOptions) -> pd.DataFrame:
        _require_rpy2(("edgeR",))
        return _call_r(_R_EDGER_QLF, counts, design)


class LimmaEngine(DEEngine):
    """limma-trend on log-CPM; stat is the B statistic (log-odds of differential expression)."""
    name = "limma"
    column_map = {"AveExpr": "ave_expr", "logFC": "log_fc", "B": "stat", "P.Value": "pvalue"}

    def run(self, counts: pd.DataFrame, design: DesignSpec, options: EngineOptions) -> pd.DataFrame:
        _require_rpy2(("edgeR", "limma"))
        return _call_r(_R_LIMMA_TREND, counts, design)


# -----------------------------------------------------------------------------
# PyDESeq2 engine
# -----------------------------------------------------------------------------
def _require_pydeseq2():
    try:
        import pydeseq2  # noqa: F401
    except Exception as e:
        raise ImportError(
            "PyDESeq2 is required for method 'deseq'. "
            "Install it (and its deps) in your environment."
        ) from e


def _shrinkage_coeff(lfc_columns) -> str:
    """Name of the group coefficient in dds.varm['LFC'] (naming differs between PyDESeq2 releases)."""
    cols = [str(c) for c in lfc_columns]
    for cand in (
        f"{GROUP_FACTOR}[T.{TEST_LEVEL}]",
        f"{GROUP_FACTOR}_{TEST_LEVEL}_vs_{REF_LEVEL}",
        f"{GROUP_FACTOR}-{TEST_LEVEL}-{REF_LEVEL}",
    ):
        if cand in cols:
            return cand
    hits = [c for c in cols if c.startswith(GROUP_FACTOR) and TEST_LEVEL in c]
    if len(hits) == 1:
        return hits[0]
    raise KeyError(f"Could not find the group coefficient among LFC columns {cols}")


class DESeqEngine(DEEngine):
    """PyDESeq2 Wald test on the group contrast, with optional apeGLM LFC shrinkage."""
    name = "deseq"
    column_map = {"baseMean": "ave_expr", "log2FoldChange": "log_fc", "stat": "stat", "pvalue": "pvalue"}
    supports_shrinkage = True

    def check_shrinkage(self, lfc_shrinkage: Optional[str]) -> Optional[str]:
        if lfc_shrinkage is None:
            return None
        shrink = str(lfc_shrinkage).lower().strip()
        if shrink not in LFC_SHRINKAGE_TYPES:
            raise ConfigurationError(
                f"lfc_shrinkage={lfc_shrinkage!r} is not a known shrinkage type; "
                f"use one of {list(LFC_SHRINKAGE_TYPES)} or None."
            )
        if shrink != "apeglm":
            raise ConfigurationError(
                f"lfc_shrinkage={shrink!r} is not available in PyDESeq2, which implements "
                "apeGLM shrinkage only; use lfc_shrinkage='apeglm' or None."
            )
        return shrink

    def run(self, counts: pd.DataFrame, design: DesignSpec, options: EngineOptions) -> pd.DataFrame:
        _require_pydeseq2()
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        metadata = design.sample_meta.copy()
        counts_i = counts.loc[metadata.index].round().astype(np.int64)

        inference = DefaultInference(n_cpus=int(options.n_cpus))
        dds = DeseqDataSet(
            counts=counts_i,
            metadata=metadata,
            design=design.formula,
            size_factors_fit_type="poscounts",
            refit_cooks=True,
            inference=inference,
            quiet=True,
        )
        dds.deseq2()

        stat = DeseqStats(
            dds,
            contrast=[GROUP_FACTOR, TEST_LEVEL, REF_LEVEL],
            inference=inference,
            quiet=True,
        )
        stat.summary()

        if options.lfc_shrinkage == "apeglm":
            stat.lfc_shrink(coeff=_shrinkage_coeff(dds.varm["LFC"].columns))

        res = stat.results_df.copy()
        return res.reindex(counts.columns)


ENGINES: Dict[str, DEEngine] = {
    "edger": EdgeREngine(),
    "deseq": DESeqEngine(),
    "limma": LimmaEngine(),
}
METHODS = tuple(ENGINES)


def get_engine(method: str) -> DEEngine:
    key = str(method).lower().strip() if method is not None else ""
    if key not in ENGINES:
        raise ConfigurationError(f"Unsupported method {method!r}; use one of {list(METHODS)}.")
    return ENGINES[key]
