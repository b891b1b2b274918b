"""Dependency Fitter: per-group copulas on Gaussian-scale residuals."""

from __future__ import annotations

import logging
import math

import numpy as np
import pandas as pd
from scipy.sparse.csgraph import breadth_first_order, minimum_spanning_tree
from scipy.stats import norm

from scsynth.core import families
from scsynth.core.para import extract_para
from scsynth.core.types import (
    COPULAS,
    CRITERIA,
    DEPENDENCY_FAMILIES,
    GROUP_COL,
    ConstructedData,
    CopulaFit,
    DependencyModel,
    MarginalFit,
)
from scsynth.parallel import parallel_map
from scsynth.seeding import rng_for

logger = logging.getLogger(__name__)

MIN_VARIANCE = 1e-8
MIN_EIGEN = 1e-6
MAX_RHO = 1.0 - 1e-6
MIN_GROUP_CELLS = 3

CANDIDATES: dict[str, tuple[str, ...]] = {
    "gaussian": ("independent", "gaussian"),
    "vine": ("independent", "vine"),
    "auto": DEPENDENCY_FAMILIES,
}


def gaussian_residuals(
    data: ConstructedData,
    marginal: MarginalFit,
    *,
    seed: int = 0,
    n_workers: int = 1,
    backend: str = "threading",
) -> pd.DataFrame:
    """Cells x genes residuals on the standard normal scale.

    Discrete genes get a randomized probability integral transform; gene ``j``
    (position in ``marginal.genes``) draws its uniforms from
    ``stable_seed(seed, "copula", j)`` in cell order.
    """
    para = extract_para(marginal, data.covariates, n_workers=n_workers, backend=backend)
    genes = marginal.genes
    counts = data.count_mat.loc[:, list(genes)].to_numpy(dtype=float)
    mean = para.mean.to_numpy()
    sigma = para.sigma.to_numpy()
    zero = para.zero_prob.to_numpy()

    def _one(j: int) -> np.ndarray:
        rng = rng_for(seed, "copula", j)
        u = families.randomized_pit(
            para.family[genes[j]], counts[:, j], mean[:, j], sigma[:, j], zero[:, j], rng
        )
        return norm.ppf(u)

    cols = parallel_map(_one, range(len(genes)), n_jobs=n_workers, backend=backend)
    z = np.column_stack(cols) if cols else np.zeros((data.n_cells, 0))
    return pd.DataFrame(z, index=data.count_mat.index, columns=list(genes))


def nearest_correlation(corr: np.ndarray, min_eigen: float = MIN_EIGEN) -> np.ndarray:
    """Project a symmetric matrix to a positive definite correlation matrix."""
    sym = 0.5 * (np.asarray(corr, dtype=float) + np.asarray(corr, dtype=float).T)
    sym = np.nan_to_num(sym, nan=0.0)
    np.fill_diagonal(sym, 1.0)
    vals, vecs = np.linalg.eigh(sym)
    if vals.min() >= min_eigen:
        return sym
    fixed = (vecs * np.maximum(vals, min_eigen)) @ vecs.T
    d = np.sqrt(np.diag(fixed))
    out = fixed / np.outer(d, d)
    np.fill_diagonal(out, 1.0)
    return out


def gaussian_copula_loglik(z: np.ndarray, corr: np.ndarray) -> float:
    n = z.shape[0]
    _, logdet = np.linalg.slogdet(corr)
    inv = np.linalg.inv(corr) - np.eye(corr.shape[0])
    quad = np.einsum("ij,jk,ik->", z, inv, z)
    return float(-0.5 * n * logdet - 0.5 * quad)


def _pair_loglik(za: np.ndarray, zb: np.ndarray, rho: float) -> float:
    r2 = rho * rho
    quad = (r2 * (za**2 + zb**2) - 2.0 * rho * za * zb) / (2.0 * (1.0 - r2))
    return float(-0.5 * za.size * math.log(1.0 - r2) - quad.sum())


def fit_vine_tree(corr: np.ndarray) -> tuple[int, tuple[tuple[int, int, float], ...]]:
    """First tree of a regular vine: maximum spanning tree on ``|rho|``.

    Pair copulas are Gaussian and the vine is truncated after this tree, so
    genes not joined by an edge are conditionally independent. Edges are
    returned in breadth-first order from the root as ``(parent, child, rho)``.
    """
    p = corr.shape[0]
    weight = 1.0 - np.abs(corr) + 1e-9
    np.fill_diagonal(weight, 0.0)
    tree = minimum_spanning_tree(weight)
    root = int(np.argmax(np.abs(corr).sum(axis=0)))
    order, pred = breadth_first_order(tree, root, directed=False, return_predecessors=True)
    edges = []
    for child in order[1:]:
        parent = int(pred[child])
        rho = float(np.clip(corr[parent, child], -MAX_RHO, MAX_RHO))
        edges.append((parent, int(child), rho))
    if len(edges) != p - 1:
        raise ValueError("Spanning tree does not connect every gene.")
    return root, tuple(edges)


def vine_loglik(z: np.ndarray, edges: tuple[tuple[int, int, float], ...]) -> float:
    return sum(_pair_loglik(z[:, a], z[:, b], rho) for a, b, rho in edges)


def _frozen(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, dtype=float)
    out.setflags(write=False)
    return out


def _score(loglik: float, k: int, n: int, ic: str) -> float:
    if ic == "bic":
        return -2.0 * loglik + k * math.log(max(n, 1))
    return -2.0 * loglik + 2.0 * k


def important_features(
    counts: np.ndarray,
    z: np.ndarray,
    genes: tuple[str, ...],
    zero_fraction: float,
) -> list[bool]:
    """Mask of genes too zero-dominated or degenerate for the joint structure."""
    zero_frac = np.mean(counts == 0, axis=0)
    var = np.var(z, axis=0) if z.shape[0] > 1 else np.zeros(len(genes))
    return [bool(zf >= zero_fraction or v < MIN_VARIANCE) for zf, v in zip(zero_frac, var)]


def fit_group(
    group: str,
    counts: np.ndarray,
    z: np.ndarray,
    genes: tuple[str, ...],
    *,
    copula: str = "gaussian",
    ic: str = "aic",
    important_zero_fraction: float = 0.95,
) -> DependencyModel:
    """Select and fit the dependency model of one ``corr_group``."""
    n = z.shape[0]
    tagged = important_features(counts, z, genes, important_zero_fraction)
    important = tuple(g for g, t in zip(genes, tagged) if t)
    joint_idx = [j for j, t in enumerate(tagged) if not t]
    joint = tuple(genes[j] for j in joint_idx)
    zj = z[:, joint_idx]
    p = len(joint_idx)

    if p < 2 or n < MIN_GROUP_CELLS:
        return DependencyModel(
            group=group,
            family="independent",
            genes=joint,
            corr=_frozen(np.eye(p)),
            scores={"independent": 0.0},
            important_feature=important,
            n_cells=n,
        )

    corr = nearest_correlation(np.corrcoef(zj, rowvar=False))
    scores: dict[str, float] = {}
    root, edges = 0, ()
    for family in CANDIDATES[copula]:
        if family == "independent":
            scores[family] = _score(0.0, 0, n, ic)
        elif family == "gaussian":
            ll = gaussian_copula_loglik(zj, corr)
            scores[family] = _score(ll, p * (p - 1) // 2, n, ic)
        else:
            root, edges = fit_vine_tree(corr)
            scores[family] = _score(vine_loglik(zj, edges), p - 1, n, ic)

    rank = {f: i for i, f in enumerate(DEPENDENCY_FAMILIES)}
    chosen = min(scores, key=lambda f: (scores[f], rank[f]))
    return DependencyModel(
        group=group,
        family=chosen,
        genes=joint,
        corr=_frozen(np.eye(p) if chosen == "independent" else corr),
        scores=scores,
        important_feature=important,
        n_cells=n,
        vine_root=root if chosen == "vine" else 0,
        vine_edges=edges if chosen == "vine" else (),
    )


def fit_copula(
    data: ConstructedData,
    marginal: MarginalFit,
    *,
    copula: str = "gaussian",
    ic: str = "aic",
    important_zero_fraction: float = 0.95,
    seed: int = 0,
    n_workers: int = 1,
    backend: str = "threading",
) -> CopulaFit:
    """Fit one dependency model per ``corr_group`` of ``data``.

    Args:
        data: Modeling table from `construct_data`.
        marginal: Fitted marginals for the same table.
        copula: ``"gaussian"`` or ``"vine"`` competes with the independence
            model; ``"auto"`` lets all three compete.
        ic: ``"aic"`` or ``"bic"``; lower wins, ties go to the simpler family.
        important_zero_fraction: Zero fraction at or above which a gene is
            sampled independently in that group.
        seed: Master seed of the randomized transform.
        n_workers: Worker bound for per-gene and per-group work.
        backend: joblib backend.

    Returns:
        CopulaFit keyed by group label.
    """
    if copula not in COPULAS:
        raise ValueError(f"copula must be one of {COPULAS}, got '{copula}'.")
    if ic not in CRITERIA:
        raise ValueError(f"ic must be one of {CRITERIA}, got '{ic}'.")

    z = gaussian_residuals(data, marginal, seed=seed, n_workers=n_workers, backend=backend)
    genes = marginal.genes
    counts = data.count_mat.loc[:, list(genes)].to_numpy()
    z_arr = z.to_numpy()
    labels = data.covariates[GROUP_COL].astype(str).to_numpy()
    groups = list(pd.unique(labels))

    def _one(group: str) -> DependencyModel:
        rows = labels == group
        return fit_group(
            group,
            counts[rows],
            z_arr[rows],
            genes,
            copula=copula,
            ic=ic,
            important_zero_fraction=important_zero_fraction,
        )

    fitted = parallel_map(_one, groups, n_jobs=n_workers, backend=backend)
    for model in fitted:
        logger.info(
            "corr_group %s: %s copula over %d genes (%d important features, %d cells)",
            model.group,
            model.family,
            len(model.genes),
            len(model.important_feature),
            model.n_cells,
        )
    return CopulaFit(
        models={m.group: m for m in fitted},
        corr_formula=data.corr_formula,
        copula=copula,
        ic=ic,
    )
