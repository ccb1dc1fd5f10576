# src/scdelegate/io_utils.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import anndata as ad
import pandas as pd

from .errors import DataError

LOGGER = logging.getLogger(__name__)

TABLE_SUFFIXES = {".csv": ",", ".tsv": "\t", ".txt": "\t"}


def _sep_for(path: Path) -> str:
    suffixes = [s.lower() for s in path.suffixes]
    if suffixes and suffixes[-1] == ".gz":
        suffixes = suffixes[:-1]
    if not suffixes or suffixes[-1] not in TABLE_SUFFIXES:
        raise DataError(
            f"Unsupported table format for {path}; use one of {sorted(TABLE_SUFFIXES)} (optionally .gz)."
        )
    return TABLE_SUFFIXES[suffixes[-1]]


# =====================================================================
# INPUT
# =====================================================================

def load_zarr(path: Path) -> ad.AnnData:
    """Load an AnnData Zarr store fully into memory."""
    path = Path(path)
    LOGGER.info("Loading Zarr store → %s", path)
    return ad.read_zarr(str(path))


def load_input(path: Path) -> Union[ad.AnnData, pd.DataFrame]:
    """
    Load a count matrix for DE testing.

    .h5ad / .zarr give an AnnData (cells x genes). Delimited tables
    (.csv / .tsv, optionally gzipped) are read as genes x cells with gene
    names in the first column and cell names in the header.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input not found: {path}")

    name = path.name.lower()
    if name.endswith(".h5ad"):
        LOGGER.info("Loading h5ad → %s", path)
        return ad.read_h5ad(str(path))
    if name.endswith(".zarr") or (path.is_dir() and (path / ".zattrs").exists()):
        return load_zarr(path)

    sep = _sep_for(path)
    LOGGER.info("Loading count table → %s", path)
    df = pd.read_csv(path, sep=sep, index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    return df


def load_metadata(path: Path) -> pd.DataFrame:
    """Cell metadata table; the first column holds the cell names."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Metadata table not found: {path}")
    sep = _sep_for(path)
    meta = pd.read_csv(path, sep=sep, index_col=0)
    meta.index = meta.index.astype(str)
    LOGGER.info("Loaded metadata for %d cells (%d columns) from %s", meta.shape[0], meta.shape[1], path)
    return meta


# =====================================================================
# OUTPUT
# =====================================================================

def save_results(df: pd.DataFrame, out_path: Path) -> None:
    out_path = Path(out_path)
    sep = _sep_for(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_path, sep=sep, index=False)
    LOGGER.info("Wrote %s", out_path)
