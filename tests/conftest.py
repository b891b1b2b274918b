from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from scipy.stats import nbinom, norm

from scsynth.core.construct import construct_data
from scsynth.core.copula import fit_copula
from scsynth.core.marginal import fit_marginal
from scsynth.errors import DegenerateGeneWarning

CELL_TYPES = ("A", "B", "C")
GENE_MEANS = {
    "A": [5.0, 3.0, 8.0, 2.0, 6.0, 4.0, 0.4],
    "B": [2.0, 6.0, 4.0, 5.0, 3.0, 7.0, 0.4],
    "C": [8.0, 2.0, 3.0, 6.0, 5.0, 2.0, 0.4],
}
LATENT_CORR = np.array(
    [
        [1.0, 0.6, 0.6, 0.0, 0.0, 0.0, 0.7],
        [0.6, 1.0, 0.6, 0.0, 0.0, 0.0, 0.5],
        [0.6, 0.6, 1.0, 0.0, 0.0, 0.0, 0.5],
        [0.0, 0.0, 0.0, 1.0, -0.5, 0.0, 0.0],
        [0.0, 0.0, 0.0, -0.5, 1.0, 0.0, 0.0],
        [0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0],
        [0.7, 0.5, 0.5, 0.0, 0.0, 0.0, 1.0],
    ]
)
GENES = ["G0", "G1", "G2", "G3", "G4", "G5", "PATCHY"]


def make_reference(seed: int = 0, n_per_type: int = 150) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Correlated NB counts for three cell types plus an all-zero and a sparse gene."""
    rng = np.random.default_rng(seed)
    labels = np.repeat(CELL_TYPES, n_per_type)
    n = labels.size
    z = rng.multivariate_normal(np.zeros(len(GENES)), LATENT_CORR, size=n)
    mu = np.array([GENE_MEANS[t] for t in labels])
    size = 1.0 / 0.3
    counts = nbinom.ppf(norm.cdf(z), size, size / (size + mu))

    sparse = np.zeros(n)
    sparse[[10, n_per_type + 10, 2 * n_per_type + 20, n - 50]] = 1.0
    cells = [f"c{i}" for i in range(n)]
    frame = pd.DataFrame(counts, index=cells, columns=GENES)
    frame["ZERO"] = 0.0
    frame["SPARSE"] = sparse
    covariates = pd.DataFrame(
        {
            "cell_type": labels,
            "batch": np.where(np.arange(n) % 2 == 0, "b1", "b2"),
        },
        index=cells,
    )
    return frame.astype(int), covariates


@pytest.fixture(scope="session")
def reference():
    return make_reference()


@pytest.fixture(scope="session")
def small_reference():
    return make_reference(seed=1, n_per_type=60)


@pytest.fixture(scope="session")
def fitted(reference):
    counts, covariates = reference
    with pytest.warns(DegenerateGeneWarning):
        data = construct_data(
            counts,
            covariates,
            mu_formula="cell_type",
            sigma_formula="1",
            corr_formula="cell_type",
        )
    marginal = fit_marginal(data, family="nb")
    copula = fit_copula(data, marginal, copula="gaussian", seed=11)
    return data, marginal, copula
