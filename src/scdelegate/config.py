from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, Field, validator, model_validator

from .engines import LFC_SHRINKAGE_TYPES, METHODS


class FindDEConfig(BaseModel):

    # ---- Input ----
    input_path: Path
    metadata_tsv: Optional[Path] = None
    layer: Optional[str] = None

    # ---- Output ----
    output_path: Path

    # ---- Grouping ----
    group_column: Optional[str] = None
    replicate_column: Optional[str] = None
    covariates: List[str] = Field(default_factory=list)

    # ---- Comparisons ----
    compare: Union[str, List[Union[str, List[str]]]] = "each_vs_rest"
    compare_is_ref: bool = False

    # ---- Method ----
    method: str = "edger"
    order_results: bool = True
    lfc_shrinkage: Optional[str] = None

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1)

    # ---- Logging ----
    verbosity: int = 1
    logfile: Optional[Path] = None

    @property
    def settings_path(self) -> Path:
        return self.output_path.parent / f"{self.output_path.stem}.settings.txt"

    # ---- Validators ----
    @validator("method")
    def normalize_method(cls, v):
        v = str(v).lower().strip()
        if v not in METHODS:
            raise ValueError(f"method must be one of {list(METHODS)}, got {v!r}")
        return v

    @validator("lfc_shrinkage")
    def normalize_shrinkage(cls, v):
        if v is None:
            return None
        v = str(v).lower().strip()
        if v in ("", "none"):
            return None
        if v not in LFC_SHRINKAGE_TYPES:
            raise ValueError(f"lfc_shrinkage must be one of {list(LFC_SHRINKAGE_TYPES)} or None")
        return v

    @validator("verbosity")
    def check_verbosity(cls, v):
        if v not in (0, 1, 2):
            raise ValueError("verbosity must be 0, 1 or 2")
        return v

    @model_validator(mode="after")
    def check_inputs(self):
        name = self.input_path.name.lower()
        is_anndata = name.endswith(".h5ad") or name.endswith(".zarr")
        if not is_anndata:
            if self.metadata_tsv is None:
                raise ValueError("metadata_tsv is required for count-table input (anything but .h5ad / .zarr)")
            if self.group_column is None:
                raise ValueError("group_column is required for count-table input")
        if self.replicate_column is not None and self.replicate_column == self.group_column:
            raise ValueError("replicate_column must differ from group_column")
        return self


class FindAllMarkersConfig(FindDEConfig):

    # ---- Marker filters ----
    min_rate: float = Field(0.05, ge=0.0, le=1.0)
    min_fc: float = 1.0

    @model_validator(mode="after")
    def check_marker_mode(self):
        if self.compare != "each_vs_rest" or self.compare_is_ref:
            raise ValueError("find-all-markers always compares each group against the rest")
        return self
