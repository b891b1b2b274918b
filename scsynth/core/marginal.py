"""Marginal Fitter: one distributional regression per gene."""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import replace

import numpy as np
import statsmodels.api as sm
from scipy.special import expit, logit
from statsmodels.base.model import GenericLikelihoodModel
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    HessianInversionWarning,
    PerfectSeparationError,
)

from scsynth.core import families
from scsynth.core.types import FAMILIES, NOFIT, ConstructedData, MarginalFit, MarginalModel
from scsynth.errors import ConvergenceFailure
from scsynth.parallel import parallel_map

logger = logging.getLogger(__name__)

FALLBACK: dict[str, str | None] = {
    "zinb": "nb",
    "zip": "poisson",
    "nb": "poisson",
    "poisson": None,
    "gaussian": None,
}

_FIT_ERRORS = (
    ValueError,
    ArithmeticError,
    np.linalg.LinAlgError,
    PerfectSeparationError,
)
_EMPTY = np.zeros(0, dtype=float)


class _FitError(Exception):
    pass


class DistributionalRegression(GenericLikelihoodModel):
    """Maximum-likelihood regression of mean, dispersion and zero mass.

    Parameters are stacked as ``[mu | sigma | zero]``; the mean uses ``exog``,
    the dispersion uses ``exog_sigma`` and the zero-inflation term is an
    intercept on the logit scale.
    """

    def __init__(self, endog, exog, exog_sigma, family: str, **kwds):
        self.family = family
        self.k_mu = exog.shape[1]
        self.k_sigma = exog_sigma.shape[1] if family in families.HAS_SIGMA else 0
        self.k_zero = 1 if family in families.ZERO_INFLATED else 0
        extra = [f"sigma_{i}" for i in range(self.k_sigma)]
        extra += ["zero_logit"] * self.k_zero
        super().__init__(endog, exog, extra_params_names=extra, **kwds)
        self.exog_sigma = np.asarray(exog_sigma, dtype=float)

    def split(self, params: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        params = np.asarray(params, dtype=float)
        a = self.k_mu
        b = a + self.k_sigma
        return params[:a], params[a:b], params[b : b + self.k_zero]

    def nloglikeobs(self, params):
        beta, gamma, delta = self.split(params)
        eta = self.exog @ beta
        if self.family == "gaussian":
            mean = eta
        else:
            mean = np.exp(np.clip(eta, -30.0, 30.0))
        sigma = np.exp(np.clip(self.exog_sigma @ gamma, -30.0, 30.0)) if self.k_sigma else 0.0
        zero = expit(delta[0]) if self.k_zero else 0.0
        return -families.logpdf(self.family, self.endog, mean, sigma, zero)


def _information(llf: float, k: int, n: int) -> tuple[float, float]:
    return -2.0 * llf + 2.0 * k, -2.0 * llf + k * math.log(max(n, 1))


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=float)
    out.setflags(write=False)
    return out


def _fit_poisson(gene, y, X_mu, X_sigma, max_iter) -> MarginalModel:
    res = sm.GLM(y, X_mu, family=sm.families.Poisson()).fit(maxiter=max_iter)
    if not getattr(res, "converged", True):
        raise _FitError("IRLS did not converge")
    if not np.all(np.isfinite(res.params)) or not np.isfinite(res.llf):
        raise _FitError("non-finite Poisson fit")
    aic, bic = _information(float(res.llf), X_mu.shape[1], y.size)
    return MarginalModel(
        gene=gene,
        family="poisson",
        mu_coef=_frozen(res.params),
        sigma_coef=_EMPTY,
        zero_coef=_EMPTY,
        loglik=float(res.llf),
        aic=aic,
        bic=bic,
        n_obs=int(y.size),
        requested_family="poisson",
    )


def _start_params(family: str, y, X_mu, X_sigma, max_iter) -> np.ndarray:
    if family == "gaussian":
        beta, *_ = np.linalg.lstsq(X_mu, y, rcond=None)
        resid_sd = float(np.std(y - X_mu @ beta)) or 1.0
        gamma = np.zeros(X_sigma.shape[1])
        gamma[0] = math.log(resid_sd)
        return np.concatenate([beta, gamma])

    pois = sm.GLM(y, X_mu, family=sm.families.Poisson()).fit(maxiter=max_iter)
    beta = np.asarray(pois.params, dtype=float)
    mean = np.asarray(pois.fittedvalues, dtype=float)
    parts = [beta]
    if family in families.HAS_SIGMA:
        excess = np.mean((y - mean) ** 2 - mean) / max(float(np.mean(mean**2)), 1e-8)
        gamma = np.zeros(X_sigma.shape[1])
        gamma[0] = math.log(float(np.clip(excess, 0.05, 20.0)))
        parts.append(gamma)
    if family in families.ZERO_INFLATED:
        expected_zero = float(np.mean(np.exp(-mean)))
        excess_zero = float(np.mean(y == 0)) - expected_zero
        parts.append(np.array([logit(float(np.clip(excess_zero, 0.02, 0.9)))]))
    return np.concatenate(parts)


def _fit_generic(gene, family, y, X_mu, X_sigma, max_iter) -> MarginalModel:
    start = _start_params(family, y, X_mu, X_sigma, max_iter)
    model = DistributionalRegression(y, X_mu, X_sigma, family)
    res = model.fit(
        start_params=start, method="lbfgs", maxiter=max_iter, disp=0, skip_hessian=True
    )
    converged = bool(res.mle_retvals.get("converged", True))
    if not converged:
        raise _FitError(f"{family} optimizer did not converge")
    if not np.all(np.isfinite(res.params)) or not np.isfinite(res.llf):
        raise _FitError(f"non-finite {family} fit")
    beta, gamma, delta = model.split(res.params)
    aic, bic = _information(float(res.llf), res.params.size, y.size)
    return MarginalModel(
        gene=gene,
        family=family,
        mu_coef=_frozen(beta),
        sigma_coef=_frozen(gamma),
        zero_coef=_frozen(delta),
        loglik=float(res.llf),
        aic=aic,
        bic=bic,
        n_obs=int(y.size),
        requested_family=family,
    )


def fit_gene(
    gene: str,
    y: np.ndarray,
    X_mu: np.ndarray,
    X_sigma: np.ndarray,
    family: str,
    max_iter: int = 200,
) -> MarginalModel:
    """Fit one gene, walking the fallback chain on failure.

    Returns a ``nofit`` model when every family in the chain fails.
    """
    y = np.asarray(y, dtype=float)
    current: str | None = family
    failures: list[str] = []
    while current is not None:
        try:
            if current == "poisson":
                fitted = _fit_poisson(gene, y, X_mu, X_sigma, max_iter)
            else:
                fitted = _fit_generic(gene, current, y, X_mu, X_sigma, max_iter)
        except (_FitError, *_FIT_ERRORS) as exc:
            failures.append(f"{current}: {exc}")
            current = FALLBACK[current]
            continue
        return replace(
            fitted,
            requested_family=family,
            fallback=current != family,
            message="; ".join(failures),
        )
    return MarginalModel(
        gene=gene,
        family=NOFIT,
        mu_coef=_EMPTY,
        sigma_coef=_EMPTY,
        zero_coef=_EMPTY,
        loglik=float("nan"),
        aic=float("nan"),
        bic=float("nan"),
        n_obs=int(y.size),
        requested_family=family,
        fallback=True,
        converged=False,
        message="; ".join(failures),
    )


def fit_marginal(
    data: ConstructedData,
    *,
    family: str = "nb",
    n_workers: int = 1,
    backend: str = "threading",
    max_iter: int = 200,
) -> MarginalFit:
    """Fit every retained gene of ``data`` independently.

    Genes that needed a fallback family or could not be fitted at all are
    reported on the returned `MarginalFit` and in one `ConvergenceFailure`
    warning; they never abort the run.
    """
    if family not in FAMILIES:
        raise ValueError(f"family must be one of {FAMILIES}, got '{family}'.")
    X_mu = data.design.mu_matrix(data.covariates)
    X_sigma = data.design.sigma_matrix(data.covariates)
    counts = data.count_mat.to_numpy(dtype=float)
    genes = data.genes

    def _one(j: int) -> MarginalModel:
        return fit_gene(genes[j], counts[:, j], X_mu, X_sigma, family, max_iter)

    # warning filters are process-global; set them on the calling thread only
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ConvergenceWarning)
        warnings.simplefilter("ignore", HessianInversionWarning)
        warnings.simplefilter("ignore", RuntimeWarning)
        fitted = parallel_map(_one, range(len(genes)), n_jobs=n_workers, backend=backend)
    result = MarginalFit(models={m.gene: m for m in fitted}, design=data.design, family=family)

    fallback = result.fallback_gene
    failed = result.failed_gene
    if fallback or failed:
        msg = (
            f"{len(fallback)} gene(s) fitted with a fallback family and "
            f"{len(failed)} gene(s) could not be fitted under '{family}'."
        )
        logger.warning(msg)
        warnings.warn(msg, ConvergenceFailure, stacklevel=2)
    logger.info("Fitted %d marginal models (family=%s)", len(result.genes), family)
    return result
