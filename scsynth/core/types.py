"""Typed configuration and result containers for the simulation engine."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from scsynth.core.formula import DesignSpec

FAMILIES: tuple[str, ...] = ("poisson", "nb", "zip", "zinb", "gaussian")
COPULAS: tuple[str, ...] = ("gaussian", "vine", "auto")
DEPENDENCY_FAMILIES: tuple[str, ...] = ("independent", "vine", "gaussian")
CRITERIA: tuple[str, ...] = ("aic", "bic")
NOFIT = "nofit"
GROUP_COL = "corr_group"


@dataclass(frozen=True)
class SimConfig:
    """Options consumed by the five pipeline stages."""

    assay: str | None = "counts"
    mu_formula: str = "1"
    sigma_formula: str = "1"
    corr_formula: str | None = "1"
    family: str = "nb"
    copula: str = "gaussian"
    ic: str = "aic"
    min_nonzero_cells: int = 1
    important_zero_fraction: float = 0.95
    important_family: str | None = None
    n_workers: int = 1
    backend: str = "threading"
    seed: int = 0
    max_iter: int = 200
    return_model: bool = False

    def __post_init__(self) -> None:
        if self.family not in FAMILIES:
            raise ValueError(f"family must be one of {FAMILIES}, got '{self.family}'.")
        if self.copula not in COPULAS:
            raise ValueError(f"copula must be one of {COPULAS}, got '{self.copula}'.")
        if self.ic not in CRITERIA:
            raise ValueError(f"ic must be one of {CRITERIA}, got '{self.ic}'.")
        if self.important_family not in (None, "poisson"):
            raise ValueError("important_family must be None or 'poisson'.")
        if int(self.min_nonzero_cells) < 1:
            raise ValueError("min_nonzero_cells must be >= 1.")
        if not 0.0 < float(self.important_zero_fraction) <= 1.0:
            raise ValueError("important_zero_fraction must be in (0, 1].")
        if int(self.n_workers) < 1:
            raise ValueError("n_workers must be >= 1.")
        if int(self.max_iter) < 1:
            raise ValueError("max_iter must be >= 1.")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SimConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConstructedData:
    """Modeling table: retained counts aligned to covariates and ``corr_group``.

    - `count_mat`: cells x retained genes.
    - `covariates`: per-cell covariates plus the `corr_group` column.
    """

    count_mat: pd.DataFrame
    covariates: pd.DataFrame
    filtered_gene: tuple[str, ...]
    design: "DesignSpec"
    corr_formula: str | None

    @property
    def genes(self) -> tuple[str, ...]:
        return tuple(str(g) for g in self.count_mat.columns)

    @property
    def n_cells(self) -> int:
        return int(self.count_mat.shape[0])

    def to_long(self) -> pd.DataFrame:
        """Long table with one row per (cell, gene)."""
        counts = self.count_mat.copy()
        counts.index = counts.index.rename("cell")
        long = counts.reset_index().melt(id_vars="cell", var_name="gene", value_name="count")
        cov = self.covariates.copy()
        cov.index = cov.index.rename("cell")
        return long.merge(cov.reset_index(), on="cell", how="left", sort=False)


@dataclass(frozen=True)
class MarginalModel:
    """Fitted marginal for one gene, tagged by ``family``.

    `mu_coef` is on the log link (identity for gaussian), `sigma_coef` on the
    log link and `zero_coef` on the logit link. Unused terms are empty.
    """

    gene: str
    family: str
    mu_coef: np.ndarray
    sigma_coef: np.ndarray
    zero_coef: np.ndarray
    loglik: float
    aic: float
    bic: float
    n_obs: int
    requested_family: str
    fallback: bool = False
    converged: bool = True
    message: str = ""


@dataclass(frozen=True)
class MarginalFit:
    """Per-gene marginal models sharing one design specification."""

    models: dict[str, MarginalModel]
    design: "DesignSpec"
    family: str

    @property
    def genes(self) -> tuple[str, ...]:
        """Genes with a usable fit, in fitting order."""
        return tuple(g for g, m in self.models.items() if m.family != NOFIT)

    @property
    def fallback_gene(self) -> dict[str, tuple[str, str]]:
        return {
            g: (m.requested_family, m.family)
            for g, m in self.models.items()
            if m.fallback and m.family != NOFIT
        }

    @property
    def failed_gene(self) -> tuple[str, ...]:
        return tuple(g for g, m in self.models.items() if m.family == NOFIT)

    def summary(self) -> pd.DataFrame:
        rows = [
            {
                "gene": m.gene,
                "family": m.family,
                "requested_family": m.requested_family,
                "fallback": m.fallback,
                "converged": m.converged,
                "loglik": m.loglik,
                "aic": m.aic,
                "bic": m.bic,
            }
            for m in self.models.values()
        ]
        return pd.DataFrame(rows).set_index("gene")


@dataclass(frozen=True)
class DependencyModel:
    """Copula fitted on one ``corr_group``.

    `genes` are the jointly modeled genes in fitted gene order; `corr` is
    their (positive definite) correlation matrix. For the vine family,
    `vine_edges` holds ``(parent, child, rho)`` positions into `genes` in
    sampling order, starting from `vine_root`.
    """

    group: str
    family: str
    genes: tuple[str, ...]
    corr: np.ndarray
    scores: dict[str, float]
    important_feature: tuple[str, ...]
    n_cells: int
    vine_root: int = 0
    vine_edges: tuple[tuple[int, int, float], ...] = ()


@dataclass(frozen=True)
class CopulaFit:
    models: dict[str, DependencyModel]
    corr_formula: str | None
    copula: str
    ic: str

    @property
    def groups(self) -> tuple[str, ...]:
        return tuple(self.models)

    @property
    def important_feature(self) -> dict[str, tuple[str, ...]]:
        return {g: m.important_feature for g, m in self.models.items()}

    @property
    def family(self) -> dict[str, str]:
        return {g: m.family for g, m in self.models.items()}


@dataclass(frozen=True)
class ParameterMatrices:
    """Cells x genes distribution parameters; `family` maps gene to its tag."""

    mean: pd.DataFrame
    sigma: pd.DataFrame
    zero_prob: pd.DataFrame
    family: dict[str, str]

    @property
    def genes(self) -> tuple[str, ...]:
        return tuple(str(g) for g in self.mean.columns)


@dataclass
class Diagnostics:
    """Per-gene and per-group outcomes that never abort a run."""

    filtered_gene: tuple[str, ...] = ()
    fallback_gene: dict[str, tuple[str, str]] = field(default_factory=dict)
    failed_gene: tuple[str, ...] = ()
    important_feature: dict[str, tuple[str, ...]] = field(default_factory=dict)
    copula_family: dict[str, str] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "filtered_gene": list(self.filtered_gene),
            "fallback_gene": {g: list(v) for g, v in self.fallback_gene.items()},
            "failed_gene": list(self.failed_gene),
            "important_feature": {g: list(v) for g, v in self.important_feature.items()},
            "copula_family": dict(self.copula_family),
            "messages": list(self.messages),
        }


@dataclass(frozen=True)
class SimulationResult:
    new_count: pd.DataFrame
    new_covariate: pd.DataFrame
    diagnostics: Diagnostics
    marginal: MarginalFit | None = None
    copula: CopulaFit | None = None
    para: ParameterMatrices | None = None

    @property
    def filtered_gene(self) -> tuple[str, ...]:
        return self.diagnostics.filtered_gene

    @property
    def important_feature(self) -> dict[str, tuple[str, ...]]:
        return self.diagnostics.important_feature
