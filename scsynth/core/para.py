"""Parameter Extractor: evaluate fitted marginals on a covariate table."""

from __future__ import annotations

import logging
from typing import Callable

import numpy as np
import pandas as pd
from scipy.special import expit

from scsynth.core.construct import corr_group_labels
from scsynth.core.types import CopulaFit, MarginalFit, MarginalModel, ParameterMatrices
from scsynth.errors import GroupConsistencyError
from scsynth.parallel import parallel_map

logger = logging.getLogger(__name__)

Params = tuple[np.ndarray, np.ndarray, np.ndarray]


def _log_mean(model: MarginalModel, X_mu: np.ndarray) -> np.ndarray:
    return np.exp(np.clip(X_mu @ model.mu_coef, -30.0, 30.0))


def _log_sigma(model: MarginalModel, X_sigma: np.ndarray) -> np.ndarray:
    return np.exp(np.clip(X_sigma @ model.sigma_coef, -30.0, 30.0))


def _zero(model: MarginalModel, n: int) -> np.ndarray:
    return np.full(n, float(expit(model.zero_coef[0])))


def _eval_poisson(model, X_mu, X_sigma) -> Params:
    n = X_mu.shape[0]
    return _log_mean(model, X_mu), np.zeros(n), np.zeros(n)


def _eval_nb(model, X_mu, X_sigma) -> Params:
    n = X_mu.shape[0]
    return _log_mean(model, X_mu), _log_sigma(model, X_sigma), np.zeros(n)


def _eval_zip(model, X_mu, X_sigma) -> Params:
    n = X_mu.shape[0]
    return _log_mean(model, X_mu), np.zeros(n), _zero(model, n)


def _eval_zinb(model, X_mu, X_sigma) -> Params:
    n = X_mu.shape[0]
    return _log_mean(model, X_mu), _log_sigma(model, X_sigma), _zero(model, n)


def _eval_gaussian(model, X_mu, X_sigma) -> Params:
    n = X_mu.shape[0]
    return X_mu @ model.mu_coef, _log_sigma(model, X_sigma), np.zeros(n)


EVALUATORS: dict[str, Callable[[MarginalModel, np.ndarray, np.ndarray], Params]] = {
    "poisson": _eval_poisson,
    "nb": _eval_nb,
    "zip": _eval_zip,
    "zinb": _eval_zinb,
    "gaussian": _eval_gaussian,
}


def check_groups(covariates: pd.DataFrame, copula: CopulaFit) -> pd.Series:
    """Resolve each row's ``corr_group`` and require it to be a fitted group."""
    groups = corr_group_labels(covariates, copula.corr_formula)
    unknown = sorted(set(groups.unique()) - set(copula.groups))
    if unknown:
        raise GroupConsistencyError(
            f"corr_group value(s) {unknown} have no fitted dependency model; "
            f"known groups: {list(copula.groups)}"
        )
    return groups


def extract_para(
    marginal: MarginalFit,
    covariates: pd.DataFrame,
    *,
    copula: CopulaFit | None = None,
    n_workers: int = 1,
    backend: str = "threading",
) -> ParameterMatrices:
    """Mean, dispersion and zero probability for every (cell, gene).

    Deterministic and side-effect free. When ``copula`` is given the table's
    ``corr_group`` values are validated against it as well.

    Raises:
        InputShapeError: Missing covariate columns or unseen categorical levels.
        GroupConsistencyError: Unknown ``corr_group`` (only with ``copula``).
    """
    design = marginal.design
    design.check(covariates)
    if copula is not None:
        check_groups(covariates, copula)
    X_mu = design.mu_matrix(covariates)
    X_sigma = design.sigma_matrix(covariates)
    genes = marginal.genes

    def _one(gene: str) -> Params:
        model = marginal.models[gene]
        return EVALUATORS[model.family](model, X_mu, X_sigma)

    evaluated = parallel_map(_one, genes, n_jobs=n_workers, backend=backend)
    index = covariates.index
    n = len(index)

    def _frame(pos: int) -> pd.DataFrame:
        if not evaluated:
            return pd.DataFrame(index=index, columns=list(genes), dtype=float)
        return pd.DataFrame(
            np.column_stack([e[pos] for e in evaluated]).reshape(n, len(genes)),
            index=index,
            columns=list(genes),
        )

    logger.debug("Extracted parameters for %d cells x %d genes", n, len(genes))
    return ParameterMatrices(
        mean=_frame(0),
        sigma=_frame(1),
        zero_prob=_frame(2),
        family={g: marginal.models[g].family for g in genes},
    )
