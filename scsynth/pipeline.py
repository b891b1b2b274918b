"""End-to-end orchestration of the five simulation stages."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import pandas as pd

from scsynth.core.construct import construct_data, corr_group_labels
from scsynth.core.copula import fit_copula
from scsynth.core.families import DISCRETE
from scsynth.core.marginal import fit_marginal
from scsynth.core.para import extract_para
from scsynth.core.simulate import simu_new
from scsynth.core.types import GROUP_COL, Diagnostics, SimConfig, SimulationResult
from scsynth.io import counts_from_anndata, result_to_anndata

logger = logging.getLogger(__name__)


def run_simulation(
    counts: Any,
    covariates: pd.DataFrame,
    config: SimConfig | None = None,
    *,
    new_covariates: pd.DataFrame | None = None,
    gene_names: Sequence[str] | None = None,
) -> SimulationResult:
    """Fit marginals and copulas on a reference, then simulate.

    Args:
        counts: Reference cells x genes matrix.
        covariates: Reference covariate table.
        config: Stage options; defaults to `SimConfig()`.
        new_covariates: Covariates of the cells to simulate. Defaults to the
            reference covariates (same cells, same design).
        gene_names: Optional gene identifiers for ``counts``.

    Returns:
        SimulationResult; fitted models and parameters are attached when
        ``config.return_model`` is true.
    """
    cfg = config or SimConfig()
    data = construct_data(
        counts,
        covariates,
        mu_formula=cfg.mu_formula,
        sigma_formula=cfg.sigma_formula,
        corr_formula=cfg.corr_formula,
        gene_names=gene_names,
        min_nonzero_cells=cfg.min_nonzero_cells,
        discrete=cfg.family in DISCRETE,
    )
    marginal = fit_marginal(
        data,
        family=cfg.family,
        n_workers=cfg.n_workers,
        backend=cfg.backend,
        max_iter=cfg.max_iter,
    )
    copula = fit_copula(
        data,
        marginal,
        copula=cfg.copula,
        ic=cfg.ic,
        important_zero_fraction=cfg.important_zero_fraction,
        seed=cfg.seed,
        n_workers=cfg.n_workers,
        backend=cfg.backend,
    )

    if new_covariates is None:
        target = data.covariates
    else:
        target = new_covariates.copy()
        target.index = target.index.astype(str)
        target[GROUP_COL] = corr_group_labels(target, copula.corr_formula)

    para = extract_para(
        marginal, target, copula=copula, n_workers=cfg.n_workers, backend=cfg.backend
    )
    new_count = simu_new(
        para,
        copula,
        target,
        seed=cfg.seed,
        important_family=cfg.important_family,
        n_workers=cfg.n_workers,
        backend=cfg.backend,
    )

    diagnostics = Diagnostics(
        filtered_gene=data.filtered_gene,
        fallback_gene=marginal.fallback_gene,
        failed_gene=marginal.failed_gene,
        important_feature=copula.important_feature,
        copula_family=copula.family,
    )
    for gene, (requested, used) in diagnostics.fallback_gene.items():
        diagnostics.messages.append(f"{gene}: fitted as {used} instead of {requested}")
    for gene in diagnostics.failed_gene:
        diagnostics.messages.append(f"{gene}: no family could be fitted; dropped from output")
    for gene in diagnostics.filtered_gene:
        diagnostics.messages.append(f"{gene}: filtered before fitting")

    logger.info(
        "Simulation done: %d cells x %d genes (%d filtered, %d fallback, %d failed)",
        new_count.shape[0],
        new_count.shape[1],
        len(diagnostics.filtered_gene),
        len(diagnostics.fallback_gene),
        len(diagnostics.failed_gene),
    )
    if not cfg.return_model:
        return SimulationResult(new_count=new_count, new_covariate=target, diagnostics=diagnostics)
    return SimulationResult(
        new_count=new_count,
        new_covariate=target,
        diagnostics=diagnostics,
        marginal=marginal,
        copula=copula,
        para=para,
    )


def simulate_anndata(
    adata,
    config: SimConfig | None = None,
    *,
    new_covariates: pd.DataFrame | None = None,
):
    """Run `run_simulation` on an AnnData reference and return AnnData output."""
    cfg = config or SimConfig()
    counts, covariates, genes = counts_from_anndata(adata, cfg.assay)
    result = run_simulation(
        counts,
        covariates,
        cfg,
        new_covariates=new_covariates,
        gene_names=genes,
    )
    return result_to_anndata(result, layer=cfg.assay)
