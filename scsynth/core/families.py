"""Distribution helpers for the supported marginal families.

Negative binomial uses the NBI parameterization ``Var = mu + sigma * mu**2``;
zero-inflated variants put mass ``pi`` on zero before the count component.
"""

from __future__ import annotations

import numpy as np
from scipy import stats

DISCRETE: frozenset[str] = frozenset({"poisson", "nb", "zip", "zinb"})
ZERO_INFLATED: frozenset[str] = frozenset({"zip", "zinb"})
HAS_SIGMA: frozenset[str] = frozenset({"nb", "zinb", "gaussian"})

EPS = 1e-10
MIN_SIGMA = 1e-8


def _nb_args(mean: np.ndarray, sigma: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    size = 1.0 / np.maximum(sigma, MIN_SIGMA)
    prob = size / (size + mean)
    return size, prob


def _base_logpmf(family: str, y, mean, sigma) -> np.ndarray:
    if family in ("poisson", "zip"):
        return stats.poisson.logpmf(y, mean)
    size, prob = _nb_args(mean, sigma)
    return stats.nbinom.logpmf(y, size, prob)


def _base_cdf(family: str, y, mean, sigma) -> np.ndarray:
    if family in ("poisson", "zip"):
        return stats.poisson.cdf(y, mean)
    size, prob = _nb_args(mean, sigma)
    return stats.nbinom.cdf(y, size, prob)


def _base_ppf(family: str, u, mean, sigma) -> np.ndarray:
    if family in ("poisson", "zip"):
        return stats.poisson.ppf(u, mean)
    size, prob = _nb_args(mean, sigma)
    return stats.nbinom.ppf(u, size, prob)


def logpdf(family: str, y, mean, sigma, zero) -> np.ndarray:
    """Per-observation log-likelihood."""
    y = np.asarray(y, dtype=float)
    if family == "gaussian":
        return stats.norm.logpdf(y, mean, np.maximum(sigma, MIN_SIGMA))
    base = _base_logpmf(family, y, mean, sigma)
    if family not in ZERO_INFLATED:
        return base
    pi = np.clip(zero, EPS, 1.0 - EPS)
    at_zero = np.log(pi + (1.0 - pi) * np.exp(base))
    return np.where(y == 0, at_zero, np.log1p(-pi) + base)


def cdf(family: str, y, mean, sigma, zero) -> np.ndarray:
    """CDF at ``y``; values below zero give 0 for discrete families."""
    y = np.asarray(y, dtype=float)
    if family == "gaussian":
        return stats.norm.cdf(y, mean, np.maximum(sigma, MIN_SIGMA))
    out = _base_cdf(family, y, mean, sigma)
    if family in ZERO_INFLATED:
        out = zero + (1.0 - zero) * out
    return np.where(y < 0, 0.0, out)


def ppf(family: str, u, mean, sigma, zero) -> np.ndarray:
    """Inverse CDF at quantiles ``u``."""
    u = np.clip(np.asarray(u, dtype=float), EPS, 1.0 - EPS)
    if family == "gaussian":
        return stats.norm.ppf(u, mean, np.maximum(sigma, MIN_SIGMA))
    if family in ZERO_INFLATED:
        pi = np.clip(np.broadcast_to(zero, u.shape), 0.0, 1.0 - EPS)
        scaled = np.clip((u - pi) / (1.0 - pi), EPS, 1.0 - EPS)
        out = np.where(u <= pi, 0.0, _base_ppf(family, scaled, mean, sigma))
    else:
        out = _base_ppf(family, u, mean, sigma)
    return np.nan_to_num(out, nan=0.0)


def randomized_pit(family: str, y, mean, sigma, zero, rng: np.random.Generator) -> np.ndarray:
    """Probability integral transform with a random draw inside each count's CDF step.

    Continuous families return the plain CDF.
    """
    y = np.asarray(y, dtype=float)
    upper = cdf(family, y, mean, sigma, zero)
    if family not in DISCRETE:
        return np.clip(upper, EPS, 1.0 - EPS)
    lower = cdf(family, y - 1.0, mean, sigma, zero)
    v = rng.uniform(0.0, 1.0, size=y.shape)
    u = lower + v * (upper - lower)
    return np.clip(u, EPS, 1.0 - EPS)
