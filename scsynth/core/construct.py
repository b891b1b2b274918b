"""Dataset Builder: modeling table, correlation groups and gene filtering."""

from __future__ import annotations

import logging
import warnings
from typing import Any, Sequence

import numpy as np
import pandas as pd
import scipy.sparse as sp

from scsynth.core.formula import DesignSpec, formula_variables, normalize_formula, require_columns
from scsynth.core.types import GROUP_COL, ConstructedData
from scsynth.errors import DegenerateGeneWarning, InputShapeError

logger = logging.getLogger(__name__)

SINGLE_GROUP = "1"


def _dense_counts(counts: Any) -> np.ndarray:
    if isinstance(counts, pd.DataFrame):
        arr = counts.to_numpy()
    elif sp.issparse(counts):
        arr = counts.toarray()
    else:
        arr = np.asarray(counts)
    if arr.ndim != 2:
        raise InputShapeError(f"counts must be a 2D cells x genes matrix, got shape {arr.shape}.")
    return arr.astype(float, copy=False)


def _gene_names(counts: Any, gene_names: Sequence[str] | None, n_genes: int) -> list[str]:
    if gene_names is not None:
        names = [str(g) for g in gene_names]
    elif isinstance(counts, pd.DataFrame):
        names = [str(g) for g in counts.columns]
    else:
        names = [f"gene_{j}" for j in range(n_genes)]
    if len(names) != n_genes:
        raise InputShapeError(f"Got {len(names)} gene names for {n_genes} count columns.")
    if len(set(names)) != len(names):
        raise InputShapeError("Gene names must be unique.")
    return names


def _align_covariates(counts: Any, covariates: pd.DataFrame) -> pd.DataFrame:
    """Covariates ordered like the count rows, indexed by string cell id.

    A default ``RangeIndex`` is aligned by position; any other index must
    carry exactly the count matrix's cell identifiers.
    """
    cov = covariates.copy()
    cov.index = cov.index.astype(str)
    if cov.index.has_duplicates:
        raise InputShapeError("Cell identifiers must be unique.")
    if not isinstance(counts, pd.DataFrame):
        return cov
    cells = counts.index.astype(str)
    if cells.has_duplicates:
        raise InputShapeError("Cell identifiers must be unique.")
    if isinstance(covariates.index, pd.RangeIndex):
        cov.index = cells
        return cov
    if set(cov.index) != set(cells):
        extra = sorted(set(cov.index) - set(cells))[:5]
        absent = sorted(set(cells) - set(cov.index))[:5]
        raise InputShapeError(
            "covariates index does not match the count cell identifiers "
            f"(unknown: {extra}, missing: {absent})."
        )
    return cov.loc[cells]


def corr_group_labels(covariates: pd.DataFrame, corr_formula: str | None) -> pd.Series:
    """Per-cell ``corr_group`` labels.

    An existing ``corr_group`` column wins. Otherwise the label joins the
    formula's variables with ``":"``; ``"1"`` puts every cell in one group.
    """
    if GROUP_COL in covariates.columns:
        return covariates[GROUP_COL].astype(str)
    variables = formula_variables(normalize_formula(corr_formula))
    if not variables:
        return pd.Series(SINGLE_GROUP, index=covariates.index, name=GROUP_COL)
    missing = [v for v in variables if v not in covariates.columns]
    if missing:
        raise InputShapeError(
            f"Cannot resolve corr_group: columns {missing} are missing and no "
            f"'{GROUP_COL}' column is present."
        )
    parts = [covariates[v].astype(str) for v in variables]
    label = parts[0]
    for p in parts[1:]:
        label = label + ":" + p
    return label.rename(GROUP_COL)


def filter_genes(counts: np.ndarray, min_nonzero_cells: int = 1) -> np.ndarray:
    """Boolean keep-mask over genes.

    A gene is dropped when its variance is zero (all-zero genes included) or
    fewer than ``min_nonzero_cells`` cells express it.
    """
    nonzero = np.count_nonzero(counts, axis=0)
    var = np.var(counts, axis=0)
    return (var > 0.0) & (nonzero >= int(min_nonzero_cells))


def construct_data(
    counts: Any,
    covariates: pd.DataFrame,
    *,
    mu_formula: str | None = "1",
    sigma_formula: str | None = "1",
    corr_formula: str | None = "1",
    gene_names: Sequence[str] | None = None,
    min_nonzero_cells: int = 1,
    discrete: bool = True,
) -> ConstructedData:
    """Build the modeling table used by every fitting stage.

    Args:
        counts: Cells x genes matrix (dense, sparse or DataFrame).
        covariates: Per-cell covariate table, row-aligned with ``counts``.
        mu_formula: Mean formula over covariate columns.
        sigma_formula: Dispersion formula over covariate columns.
        corr_formula: Correlation grouping formula; ``"1"``/``None`` for one group.
        gene_names: Gene identifiers; defaults to DataFrame columns or ``gene_<j>``.
        min_nonzero_cells: Minimum expressing cells for a gene to be kept.
        discrete: Require nonnegative integer counts.

    Returns:
        ConstructedData with retained genes and the filtered gene list.

    Raises:
        InputShapeError: On mismatched shapes, invalid counts, missing
            covariate columns, or too few cells for the regression designs.
    """
    if not isinstance(covariates, pd.DataFrame):
        raise InputShapeError("covariates must be a pandas DataFrame.")
    mat = _dense_counts(counts)
    n_cells, n_genes = mat.shape
    if covariates.shape[0] != n_cells:
        raise InputShapeError(
            f"covariates has {covariates.shape[0]} rows but counts has {n_cells} cells."
        )
    if not np.isfinite(mat).all():
        raise InputShapeError("counts contain NaN or infinite values.")
    if discrete and (np.any(mat < 0) or np.any(mat != np.round(mat))):
        raise InputShapeError("counts must be nonnegative integers for count families.")
    genes = _gene_names(counts, gene_names, n_genes)

    cov = _align_covariates(counts, covariates)

    corr_vars = formula_variables(normalize_formula(corr_formula))
    require_columns(cov, corr_vars, "corr_formula")
    design = DesignSpec.from_covariates(cov, mu_formula, sigma_formula)
    n_coef = max(design.n_mu, design.n_sigma)
    if n_cells <= n_coef:
        raise InputShapeError(
            f"{n_cells} cells cannot support a regression with {n_coef} coefficients."
        )
    cov[GROUP_COL] = corr_group_labels(cov.drop(columns=[GROUP_COL], errors="ignore"), corr_formula)

    keep = filter_genes(mat, min_nonzero_cells=min_nonzero_cells)
    filtered = tuple(g for g, k in zip(genes, keep) if not k)
    if filtered:
        msg = (
            f"{len(filtered)} gene(s) filtered for zero variance or fewer than "
            f"{int(min_nonzero_cells)} expressing cells."
        )
        logger.info(msg)
        warnings.warn(msg, DegenerateGeneWarning, stacklevel=2)
    if not keep.any():
        raise InputShapeError("No genes remain after filtering.")

    count_mat = pd.DataFrame(
        mat[:, keep],
        index=cov.index,
        columns=[g for g, k in zip(genes, keep) if k],
    )
    if discrete:
        count_mat = count_mat.astype(np.int64)
    logger.info(
        "Constructed data: %d cells, %d genes kept, %d filtered, %d corr groups",
        n_cells,
        count_mat.shape[1],
        len(filtered),
        cov[GROUP_COL].nunique(),
    )
    return ConstructedData(
        count_mat=count_mat,
        covariates=cov,
        filtered_gene=filtered,
        design=design,
        corr_formula=None if corr_formula is None else normalize_formula(corr_formula),
    )
