# tests/conftest.py
import numpy as np
import pandas as pd
import anndata as ad
import scipy.sparse as sp
import pytest

from scdelegate import engines
from scdelegate.engines import DEEngine, GROUP_FACTOR, TEST_LEVEL, REF_LEVEL


# ----------------------------------------------------------------------
# Synthetic data generator
# ----------------------------------------------------------------------
N_MARKERS = 4


def synthetic_adata(n_cells_per_group=30, n_genes=20, groups=("A", "B", "C"), n_reps=4, seed=0):
    """
    Poisson counts, cells x genes. The first N_MARKERS genes are strongly up in
    the first group. Replicates r1..rN are spread over every group.
    """
    rng = np.random.default_rng(seed)
    n_cells = n_cells_per_group * len(groups)

    lam = np.full((n_cells, n_genes), 5.0)
    lam[:n_cells_per_group, :N_MARKERS] = 40.0
    X = rng.poisson(lam).astype(np.float32)

    group = np.repeat(list(groups), n_cells_per_group)
    reps = np.tile([f"r{i + 1}" for i in range(n_reps)], n_cells // n_reps + 1)[:n_cells]

    adata = ad.AnnData(X=sp.csr_matrix(X))
    adata.obs_names = [f"cell{i}" for i in range(n_cells)]
    adata.var_names = [f"g{i}" for i in range(n_genes)]
    adata.obs["leiden"] = pd.Categorical(group, categories=list(groups))
    adata.obs["donor"] = reps
    adata.obs["age"] = pd.Series(reps).map({f"r{i + 1}": 20.0 + 5 * i for i in range(n_reps)}).to_numpy()
    adata.obs["noise"] = rng.normal(size=n_cells)
    return adata


# ----------------------------------------------------------------------
# Fake engine: fast, deterministic, no R / PyDESeq2 needed
# ----------------------------------------------------------------------
class FakeEngine(DEEngine):
    name = "edger"
    column_map = {"logCPM": "ave_expr", "logFC": "log_fc", "F": "stat", "PValue": "pvalue"}

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def run(self, counts, design, options):
        if self.fail:
            raise RuntimeError("fit did not converge")
        self.calls.append({"counts": counts, "design": design, "options": options})

        side = design.sample_meta[GROUP_FACTOR].astype(str).to_numpy()
        lib = counts.sum(axis=1).replace(0, 1)
        cpm = counts.div(lib, axis=0) * 1e6
        m1 = cpm.loc[side == TEST_LEVEL].mean(axis=0)
        m2 = cpm.loc[side == REF_LEVEL].mean(axis=0)

        log_fc = np.log2((m1 + 1.0) / (m2 + 1.0))
        f = log_fc ** 2
        return pd.DataFrame(
            {
                "logFC": log_fc,
                "logCPM": np.log2(cpm.mean(axis=0) + 1.0),
                "F": f,
                "PValue": np.exp(-f),
            },
            index=counts.columns,
        )


@pytest.fixture
def fake_engine(monkeypatch):
    eng = FakeEngine()
    monkeypatch.setitem(engines.ENGINES, "edger", eng)
    return eng


@pytest.fixture
def failing_engine(monkeypatch):
    eng = FakeEngine(fail=True)
    monkeypatch.setitem(engines.ENGINES, "edger", eng)
    return eng
