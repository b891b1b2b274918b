"""Core estimation-and-resampling subpackage."""

from scsynth.core.construct import construct_data, corr_group_labels, filter_genes
from scsynth.core.copula import fit_copula, gaussian_residuals
from scsynth.core.marginal import fit_gene, fit_marginal
from scsynth.core.para import extract_para
from scsynth.core.simulate import draw_latent, simu_new
from scsynth.core.types import (
    ConstructedData,
    CopulaFit,
    DependencyModel,
    Diagnostics,
    MarginalFit,
    MarginalModel,
    ParameterMatrices,
    SimConfig,
    SimulationResult,
)

__all__ = [
    "SimConfig",
    "ConstructedData",
    "MarginalModel",
    "MarginalFit",
    "DependencyModel",
    "CopulaFit",
    "ParameterMatrices",
    "Diagnostics",
    "SimulationResult",
    "construct_data",
    "corr_group_labels",
    "filter_genes",
    "fit_gene",
    "fit_marginal",
    "gaussian_residuals",
    "fit_copula",
    "extract_para",
    "draw_latent",
    "simu_new",
]
