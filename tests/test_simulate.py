from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scsynth.core.copula import fit_copula
from scsynth.core.para import extract_para
from scsynth.core.simulate import draw_latent, simu_new
from scsynth.core.types import DependencyModel
from scsynth.covariates import resample_covariates
from scsynth.errors import GroupConsistencyError, InputShapeError


def _simulate(fitted, covariates=None, **kwargs):
    data, marginal, copula = fitted
    target = data.covariates if covariates is None else covariates
    para = extract_para(marginal, target, copula=copula)
    return simu_new(para, copula, target, **kwargs)


def test_simulation_is_deterministic_for_seed_and_workers(fitted):
    first = _simulate(fitted, seed=7)
    again = _simulate(fitted, seed=7)
    threaded = _simulate(fitted, seed=7, n_workers=3)
    other = _simulate(fitted, seed=8)
    pd.testing.assert_frame_equal(first, again)
    pd.testing.assert_frame_equal(first, threaded)
    assert not first.equals(other)


def test_output_genes_and_cells_follow_fitted_models(fitted):
    data, marginal, _ = fitted
    out = _simulate(fitted, seed=1)
    assert tuple(out.columns) == marginal.genes
    assert "ZERO" not in out.columns
    assert out.index.equals(data.covariates.index)
    assert out.dtypes.unique().tolist() == [np.dtype("int64")]
    assert (out.to_numpy() >= 0).all()


def test_simulated_means_track_reference(fitted):
    data, _, _ = fitted
    out = _simulate(fitted, seed=2)
    labels = data.covariates["cell_type"]
    sim = out["G0"].groupby(labels).mean()
    ref = data.count_mat["G0"].groupby(labels).mean()
    np.testing.assert_allclose(sim, ref, rtol=0.25)


def test_within_group_correlation_is_reproduced(fitted):
    data, _, _ = fitted
    out = _simulate(fitted, seed=3)
    rows = data.covariates["cell_type"] == "A"
    ref = np.corrcoef(data.count_mat.loc[rows, "G0"], data.count_mat.loc[rows, "G1"])[0, 1]
    sim = np.corrcoef(out.loc[rows, "G0"], out.loc[rows, "G1"])[0, 1]
    assert ref > 0.3
    assert sim > 0.3
    assert abs(sim - ref) < 0.25
    neg = np.corrcoef(out.loc[rows, "G3"], out.loc[rows, "G4"])[0, 1]
    assert neg < 0


def test_important_features_are_sampled_independently(fitted):
    data, marginal, _ = fitted
    copula = fit_copula(data, marginal, important_zero_fraction=0.5, seed=11)
    assert all("PATCHY" in feats for feats in copula.important_feature.values())
    para = extract_para(marginal, data.covariates, copula=copula)
    out = simu_new(para, copula, data.covariates, seed=4)
    rows = data.covariates["cell_type"] == "A"
    r = np.corrcoef(out.loc[rows, "PATCHY"], out.loc[rows, "G0"])[0, 1]
    assert abs(r) < 0.2


def test_important_features_can_be_sampled_as_poisson(fitted):
    data, marginal, copula = fitted
    para = extract_para(marginal, data.covariates, copula=copula)
    base = simu_new(para, copula, data.covariates, seed=4)
    poisson = simu_new(para, copula, data.covariates, seed=4, important_family="poisson")
    joint = [g for g in marginal.genes if g != "SPARSE"]
    pd.testing.assert_frame_equal(base[joint], poisson[joint])
    with pytest.raises(ValueError, match="important_family"):
        simu_new(para, copula, data.covariates, important_family="nb")


def test_counterfactual_proportions(fitted):
    data, _, _ = fitted
    new = resample_covariates(
        data.covariates, 500, {"A": 0.0, "B": 0.2, "C": 0.8}, seed=5
    )
    out = _simulate(fitted, new, seed=5)
    counts = new["cell_type"].value_counts()
    assert out.shape[0] == 500
    assert counts.get("B") == 100
    assert counts.get("C") == 400
    assert "A" not in counts.index
    assert out.index.equals(new.index)


def test_unknown_corr_group_raises(fitted):
    data, marginal, copula = fitted
    new = pd.DataFrame({"cell_type": ["A", "B"], "corr_group": ["A", "Z"]}, index=["n1", "n2"])
    para = extract_para(marginal, new)
    with pytest.raises(GroupConsistencyError, match="Z"):
        simu_new(para, copula, new)


def test_misaligned_parameters_raise(fitted):
    data, marginal, copula = fitted
    para = extract_para(marginal, data.covariates)
    shifted = data.covariates.iloc[::-1]
    with pytest.raises(InputShapeError, match="row-aligned"):
        simu_new(para, copula, shifted)


def test_vine_latent_draw_follows_tree():
    model = DependencyModel(
        group="g",
        family="vine",
        genes=("a", "b", "c"),
        corr=np.eye(3),
        scores={},
        important_feature=(),
        n_cells=10,
        vine_root=0,
        vine_edges=((0, 1, 0.8), (1, 2, -0.7)),
    )
    z = draw_latent(model, 5000, np.random.default_rng(0))
    corr = np.corrcoef(z, rowvar=False)
    assert corr[0, 1] == pytest.approx(0.8, abs=0.05)
    assert corr[1, 2] == pytest.approx(-0.7, abs=0.05)
    assert corr[0, 2] == pytest.approx(-0.56, abs=0.05)
    assert np.std(z, axis=0) == pytest.approx(np.ones(3), abs=0.05)
