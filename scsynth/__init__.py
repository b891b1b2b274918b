"""scsynth public API."""

from scsynth._version import __version__
from scsynth.core.construct import construct_data
from scsynth.core.copula import fit_copula
from scsynth.core.marginal import fit_marginal
from scsynth.core.para import extract_para
from scsynth.core.simulate import simu_new
from scsynth.core.types import SimConfig, SimulationResult
from scsynth.covariates import resample_covariates
from scsynth.errors import (
    ConvergenceFailure,
    DegenerateGeneWarning,
    GroupConsistencyError,
    InputShapeError,
)


def run_simulation(*args, **kwargs):
    """Lazy wrapper to avoid importing AnnData I/O at import time."""
    from scsynth.pipeline import run_simulation as _run_simulation

    return _run_simulation(*args, **kwargs)


def simulate_anndata(*args, **kwargs):
    from scsynth.pipeline import simulate_anndata as _simulate_anndata

    return _simulate_anndata(*args, **kwargs)


__all__ = [
    "__version__",
    "SimConfig",
    "SimulationResult",
    "construct_data",
    "fit_marginal",
    "fit_copula",
    "extract_para",
    "simu_new",
    "resample_covariates",
    "run_simulation",
    "simulate_anndata",
    "InputShapeError",
    "GroupConsistencyError",
    "ConvergenceFailure",
    "DegenerateGeneWarning",
]
