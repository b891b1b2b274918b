"""AnnData conversion, logging and JSON output helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from scsynth.core.types import SimulationResult
from scsynth.errors import InputShapeError


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)


def write_json(path: str | Path, payload: dict[str, Any]) -> None:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def setup_logger(log_path: Path, logger_name: str = "scsynth") -> logging.Logger:
    ensure_dir(log_path.parent)
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    fh = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)
    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


def counts_from_anndata(adata, assay: str | None = "counts") -> tuple[Any, pd.DataFrame, list[str]]:
    """Return ``(counts, covariates, gene_names)`` from an AnnData object.

    ``assay`` names a layer; ``None`` or ``"X"`` selects ``adata.X``.
    """
    if assay in (None, "X"):
        mat = adata.X
    elif assay in adata.layers:
        mat = adata.layers[assay]
    else:
        raise InputShapeError(
            f"Layer '{assay}' not found in adata.layers (available: {list(adata.layers)})."
        )
    if mat is None:
        raise InputShapeError("Selected assay is empty.")
    if sp.issparse(mat):
        mat = sp.csr_matrix(mat)
    else:
        mat = np.asarray(mat)
    covariates = adata.obs.copy()
    covariates.index = covariates.index.astype(str)
    return mat, covariates, [str(g) for g in adata.var_names]


def result_to_anndata(result: SimulationResult, layer: str | None = "counts") -> ad.AnnData:
    """Synthetic counts as AnnData; ``diagnostics`` goes to ``uns``."""
    counts = result.new_count
    obs = result.new_covariate.copy()
    obs.index = obs.index.astype(str)
    var = pd.DataFrame(index=pd.Index([str(g) for g in counts.columns]))
    X = sp.csr_matrix(counts.to_numpy())
    adata = ad.AnnData(X=X, obs=obs, var=var)
    if layer not in (None, "X"):
        adata.layers[layer] = X.copy()
    adata.uns["scsynth_diagnostics"] = json.loads(json.dumps(result.diagnostics.to_dict()))
    return adata
