from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scsynth.core.copula import (
    fit_copula,
    fit_group,
    fit_vine_tree,
    gaussian_copula_loglik,
    gaussian_residuals,
    nearest_correlation,
    vine_loglik,
)


def test_nearest_correlation_is_positive_definite():
    bad = np.array([[1.0, 0.9, -0.9], [0.9, 1.0, 0.9], [-0.9, 0.9, 1.0]])
    fixed = nearest_correlation(bad)
    assert np.all(np.linalg.eigvalsh(fixed) > 0)
    np.testing.assert_allclose(np.diag(fixed), 1.0)
    np.testing.assert_allclose(fixed, fixed.T)


def test_vine_tree_connects_every_gene_in_sampling_order():
    corr = np.array(
        [
            [1.0, 0.8, 0.1, 0.0],
            [0.8, 1.0, 0.2, 0.7],
            [0.1, 0.2, 1.0, -0.6],
            [0.0, 0.7, -0.6, 1.0],
        ]
    )
    root, edges = fit_vine_tree(corr)
    assert root == 1
    assert len(edges) == 3
    seen = {root}
    for parent, child, rho in edges:
        assert parent in seen
        seen.add(child)
        assert rho == pytest.approx(corr[parent, child])
    assert {frozenset((a, b)) for a, b, _ in edges} == {
        frozenset((0, 1)),
        frozenset((1, 3)),
        frozenset((2, 3)),
    }


def test_tree_loglik_equals_gaussian_loglik_for_two_genes():
    rng = np.random.default_rng(1)
    corr = np.array([[1.0, 0.5], [0.5, 1.0]])
    z = rng.multivariate_normal(np.zeros(2), corr, size=300)
    _, edges = fit_vine_tree(corr)
    assert vine_loglik(z, edges) == pytest.approx(gaussian_copula_loglik(z, corr))


def test_group_selection_prefers_independence_for_independent_genes():
    rng = np.random.default_rng(3)
    z = rng.standard_normal((400, 4))
    counts = np.ones((400, 4))
    model = fit_group("g", counts, z, ("a", "b", "c", "d"), copula="auto", ic="bic")
    assert model.family == "independent"
    assert set(model.scores) == {"independent", "vine", "gaussian"}
    np.testing.assert_allclose(model.corr, np.eye(4))


def test_group_selection_prefers_richer_model_for_correlated_genes():
    rng = np.random.default_rng(3)
    corr = np.full((3, 3), 0.6) + 0.4 * np.eye(3)
    z = rng.multivariate_normal(np.zeros(3), corr, size=400)
    counts = np.ones((400, 3))
    gaussian = fit_group("g", counts, z, ("a", "b", "c"), copula="gaussian")
    vine = fit_group("g", counts, z, ("a", "b", "c"), copula="vine")
    assert gaussian.family == "gaussian"
    assert vine.family == "vine"
    assert len(vine.vine_edges) == 2
    assert gaussian.corr[0, 1] == pytest.approx(0.6, abs=0.1)


def test_zero_dominated_gene_becomes_important_feature():
    rng = np.random.default_rng(3)
    z = rng.standard_normal((100, 3))
    counts = np.ones((100, 3))
    counts[:97, 2] = 0
    model = fit_group("g", counts, z, ("a", "b", "c"), important_zero_fraction=0.95)
    assert model.important_feature == ("c",)
    assert model.genes == ("a", "b")


def test_small_group_is_independent():
    z = np.array([[0.1, 0.2], [0.3, -0.1]])
    model = fit_group("tiny", np.ones((2, 2)), z, ("a", "b"))
    assert model.family == "independent"
    assert model.n_cells == 2


def test_residuals_are_reproducible_and_worker_independent(fitted):
    data, marginal, _ = fitted
    first = gaussian_residuals(data, marginal, seed=4)
    again = gaussian_residuals(data, marginal, seed=4, n_workers=3)
    other = gaussian_residuals(data, marginal, seed=5)
    pd.testing.assert_frame_equal(first, again)
    assert not np.allclose(first.to_numpy(), other.to_numpy())
    assert np.all(np.isfinite(first.to_numpy()))
    assert abs(float(first["G3"].mean())) < 0.2


def test_fit_copula_per_cell_type(fitted):
    data, marginal, copula = fitted
    assert copula.groups == ("A", "B", "C")
    for group, model in copula.models.items():
        assert model.family == "gaussian"
        assert "ZERO" not in model.genes
        assert "SPARSE" in model.important_feature
        assert model.n_cells == 150
        assert model.scores["gaussian"] < model.scores["independent"]
        g0, g1 = model.genes.index("G0"), model.genes.index("G1")
        g3, g4 = model.genes.index("G3"), model.genes.index("G4")
        assert model.corr[g0, g1] > 0.3
        assert model.corr[g3, g4] < -0.2


def test_fit_copula_rejects_unknown_options(fitted):
    data, marginal, _ = fitted
    with pytest.raises(ValueError, match="copula"):
        fit_copula(data, marginal, copula="clayton")
    with pytest.raises(ValueError, match="ic"):
        fit_copula(data, marginal, ic="hqic")


def test_fitted_correlation_is_read_only(fitted):
    _, _, copula = fitted
    for model in copula.models.values():
        assert not model.corr.flags.writeable
        with pytest.raises(ValueError):
            model.corr[0, 0] = 0.5
    tiny = fit_group("tiny", np.ones((2, 2)), np.zeros((2, 2)), ("a", "b"))
    assert not tiny.corr.flags.writeable
