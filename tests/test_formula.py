from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from scsynth.core.formula import DesignSpec, formula_variables, normalize_formula
from scsynth.errors import InputShapeError


def _covariates() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "cell_type": ["a", "b", "c", "a", "b", "c"],
            "pseudotime": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6],
        }
    )


def test_normalize_formula_strips_tilde_and_defaults():
    assert normalize_formula("~ cell_type") == "cell_type"
    assert normalize_formula(None) == "1"
    assert normalize_formula("  ") == "1"


def test_formula_variables_skip_functions_and_keywords():
    assert formula_variables("cell_type + batch") == ["cell_type", "batch"]
    assert formula_variables("bs(pseudotime, df=4) + C(cell_type)") == ["pseudotime", "cell_type"]
    assert formula_variables("np.log(depth)") == ["depth"]
    assert formula_variables("1") == []


def test_intercept_only_design_matches_rows():
    spec = DesignSpec.from_covariates(_covariates(), "1", "1")
    X = spec.mu_matrix(_covariates())
    assert X.shape == (6, 1)
    assert np.all(X == 1.0)


def test_design_reused_on_new_rows():
    spec = DesignSpec.from_covariates(_covariates(), "cell_type + pseudotime", "cell_type")
    new = pd.DataFrame({"cell_type": ["c", "c"], "pseudotime": [0.9, 0.0]})
    X = spec.mu_matrix(new)
    assert X.shape == (2, 4)
    assert spec.levels == {"cell_type": ("a", "b", "c")}
    assert spec.n_sigma == 3


def test_unseen_level_and_missing_column_rejected():
    spec = DesignSpec.from_covariates(_covariates(), "cell_type", "1")
    with pytest.raises(InputShapeError, match="not seen during fitting"):
        spec.check(pd.DataFrame({"cell_type": ["a", "z"]}))
    with pytest.raises(InputShapeError, match="missing"):
        spec.check(pd.DataFrame({"pseudotime": [0.1]}))
