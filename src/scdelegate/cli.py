from __future__ import annotations
from typing import Optional, List, Union
import typer
from pathlib import Path
import warnings

from .markers_and_de import run_find_de, run_find_all_markers
from .config import FindDEConfig, FindAllMarkersConfig
from .engines import METHODS
from .comparisons import EACH_VS_REST, ALL_VS_ALL


app = typer.Typer(help="scdelegate CLI: differential expression for single-cell RNA-seq via edgeR, DESeq2 and limma.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*is_categorical_dtype is deprecated.*", category=FutureWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _parse_compare(compare: str, compare_is_ref: bool = False) -> Union[str, List[Union[str, List[str]]]]:
    """
    Turn the --compare string into the form find_de expects.

      each_vs_rest | all_vs_all -> keyword
      A,B                       -> ["A", "B"]
      A+B,C                     -> [["A", "B"], "C"]
      A (with --compare-is-ref) -> "A"
    """
    compare = compare.strip()
    if compare in (EACH_VS_REST, ALL_VS_ALL):
        return compare
    if compare_is_ref:
        return compare

    sides: List[Union[str, List[str]]] = []
    for side in compare.split(","):
        levels = [x.strip() for x in side.split("+") if x.strip()]
        if not levels:
            raise typer.BadParameter(f"Empty side in --compare {compare!r}")
        sides.append(levels[0] if len(levels) == 1 else levels)

    if len(sides) != 2:
        raise typer.BadParameter(
            f"--compare needs two sides separated by ',', e.g. 'A,B' or 'A+B,C'; got {compare!r}"
        )
    return sides


def _covariates(covariates: Optional[List[str]]) -> List[str]:
    """Supports e.g. --covariate age,sex --covariate batch."""
    if not covariates:
        return []
    expanded = []
    for c in covariates:
        expanded.extend([x.strip() for x in c.split(",") if x.strip()])
    return expanded


def _methods_completion(ctx: typer.Context, args: List[str], incomplete: str) -> List[str]:
    prefix = incomplete.lower()
    return [m for m in METHODS if m.startswith(prefix)]


# ---------------------------------------------------------------------
# find-de
# ---------------------------------------------------------------------
@app.command("find-de", help="Differential expression between groups of cells.")
def find_de(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] .h5ad / .zarr AnnData, or a genes x cells count table (.csv / .tsv).",
    ),
    metadata_tsv: Optional[Path] = typer.Option(
        None, "--metadata-tsv", "-m", exists=True,
        help="[I/O] Cell metadata table, first column = cell names (required for count tables).",
    ),
    output_path: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Result table (.csv or .tsv).",
    ),
    layer: Optional[str] = typer.Option(
        None, "--layer",
        help="[I/O] AnnData layer with raw counts (default: 'counts' if present, else X).",
    ),

    # -------------------------------------------------------------
    # Grouping
    # -------------------------------------------------------------
    group_column: Optional[str] = typer.Option(
        None, "--group-column", "-g",
        help="Metadata column with the cell groups (default for AnnData: idents/leiden/louvain).",
    ),
    replicate_column: Optional[str] = typer.Option(
        None, "--replicate-column", "-r",
        help="Metadata column with biological replicates; enables pseudobulk testing.",
    ),
    covariate: Optional[List[str]] = typer.Option(
        None, "--covariate", "-c",
        help="Metadata column(s) to add to the design. Repeat or comma-separate.",
    ),

    # -------------------------------------------------------------
    # Comparisons
    # -------------------------------------------------------------
    compare: str = typer.Option(
        EACH_VS_REST, "--compare",
        help="each_vs_rest | all_vs_all | A,B | A+B,C | a reference level with --compare-is-ref.",
    ),
    compare_is_ref: bool = typer.Option(
        False, "--compare-is-ref/--no-compare-is-ref",
        help="Treat --compare as a reference level; compare every other level to it.",
    ),

    # -------------------------------------------------------------
    # Method
    # -------------------------------------------------------------
    method: str = typer.Option(
        "edger", "--method", "-M",
        autocompletion=_methods_completion,
        help="edger | deseq | limma",
    ),
    order_results: bool = typer.Option(
        True, "--order-results/--no-order-results",
        help="Order genes by p-value within each comparison.",
    ),
    lfc_shrinkage: Optional[str] = typer.Option(
        None, "--lfc-shrinkage",
        help="Log fold-change shrinkage for deseq (apeglm).",
    ),
    n_jobs: int = typer.Option(1, "--n-jobs", help="Number of CPU cores to use."),

    # -------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------
    verbosity: int = typer.Option(1, "--verbosity", "-v", help="0 quiet, 1 some messages, 2 more messages."),
    logfile: Optional[Path] = typer.Option(None, "--logfile", help="Also write the log to this file."),
):
    cfg = FindDEConfig(
        input_path=input_path,
        metadata_tsv=metadata_tsv,
        output_path=output_path,
        layer=layer,
        group_column=group_column,
        replicate_column=replicate_column,
        covariates=_covariates(covariate),
        compare=_parse_compare(compare, compare_is_ref),
        compare_is_ref=compare_is_ref,
        method=method,
        order_results=order_results,
        lfc_shrinkage=lfc_shrinkage,
        n_jobs=n_jobs,
        verbosity=verbosity,
        logfile=logfile,
    )
    run_find_de(cfg)


# ---------------------------------------------------------------------
# find-all-markers
# ---------------------------------------------------------------------
@app.command("find-all-markers", help="Marker genes for every group (each group vs the rest).")
def find_all_markers(
    input_path: Path = typer.Option(
        ..., "--input", "-i", exists=True,
        help="[I/O] .h5ad / .zarr AnnData, or a genes x cells count table (.csv / .tsv).",
    ),
    metadata_tsv: Optional[Path] = typer.Option(
        None, "--metadata-tsv", "-m", exists=True,
        help="[I/O] Cell metadata table, first column = cell names (required for count tables).",
    ),
    output_path: Path = typer.Option(..., "--out", "-o", help="[I/O] Marker table (.csv or .tsv)."),
    layer: Optional[str] = typer.Option(None, "--layer", help="[I/O] AnnData layer with raw counts."),

    group_column: Optional[str] = typer.Option(None, "--group-column", "-g", help="Metadata column with the cell groups."),
    replicate_column: Optional[str] = typer.Option(
        None, "--replicate-column", "-r",
        help="Metadata column with biological replicates; enables pseudobulk testing.",
    ),
    covariate: Optional[List[str]] = typer.Option(None, "--covariate", "-c", help="Design covariate column(s)."),

    method: str = typer.Option("edger", "--method", "-M", autocompletion=_methods_completion, help="edger | deseq | limma"),
    min_rate: float = typer.Option(0.05, "--min-rate", help="[Filter] Minimum detection rate in either group."),
    min_fc: float = typer.Option(1.0, "--min-fc", help="[Filter] Minimum log2 fold-change."),
    lfc_shrinkage: Optional[str] = typer.Option(None, "--lfc-shrinkage", help="Log fold-change shrinkage for deseq (apeglm)."),
    n_jobs: int = typer.Option(1, "--n-jobs", help="Number of CPU cores to use."),

    verbosity: int = typer.Option(1, "--verbosity", "-v", help="0 quiet, 1 some messages, 2 more messages."),
    logfile: Optional[Path] = typer.Option(None, "--logfile", help="Also write the log to this file."),
):
    cfg = FindAllMarkersConfig(
        input_path=input_path,
        metadata_tsv=metadata_tsv,
        output_path=output_path,
        layer=layer,
        group_column=group_column,
        replicate_column=replicate_column,
        covariates=_covariates(covariate),
        method=method,
        min_rate=min_rate,
        min_fc=min_fc,
        lfc_shrinkage=lfc_shrinkage,
        n_jobs=n_jobs,
        verbosity=verbosity,
        logfile=logfile,
    )
    run_find_all_markers(cfg)


if __name__ == "__main__":
    app()
