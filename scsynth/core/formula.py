"""Covariate formulas and design matrices.

Formulas are right-hand sides in patsy syntax (``"cell_type"``,
``"cell_type + batch"``, ``"1"``). The design information built on the
reference covariates is kept so the same columns, contrasts and stateful
transforms are reproduced on any later covariate table.
"""

from __future__ import annotations

import io
import re
import tokenize
from dataclasses import dataclass

import numpy as np
import pandas as pd
from patsy import DesignInfo, PatsyError, build_design_matrices, dmatrix

from scsynth.errors import InputShapeError

# Names that may appear bare inside a formula without being covariates.
_RESERVED = frozenset({"Treatment", "Sum", "Poly", "Helmert", "Diff", "True", "False", "None"})
_C_WRAPPED = re.compile(r"^C\(\s*([A-Za-z_][A-Za-z0-9_]*)")


def normalize_formula(formula: str | None) -> str:
    if formula is None:
        return "1"
    text = str(formula).strip()
    if text.startswith("~"):
        text = text[1:].strip()
    return text or "1"


def formula_variables(formula: str | None) -> list[str]:
    """Bare variable names a formula reads from the covariate table."""
    text = normalize_formula(formula)
    toks = [
        t
        for t in tokenize.generate_tokens(io.StringIO(text).readline)
        if t.type not in (tokenize.NEWLINE, tokenize.NL, tokenize.ENDMARKER)
    ]
    out: list[str] = []
    for i, tok in enumerate(toks):
        if tok.type != tokenize.NAME or tok.string in _RESERVED:
            continue
        prev = toks[i - 1].string if i > 0 else ""
        nxt = toks[i + 1].string if i + 1 < len(toks) else ""
        if nxt in {"(", ".", "="} or prev == ".":
            continue
        if tok.string not in out:
            out.append(tok.string)
    return out


def require_columns(covariates: pd.DataFrame, columns: list[str], what: str) -> None:
    missing = [c for c in columns if c not in covariates.columns]
    if missing:
        raise InputShapeError(f"{what} requires covariate columns missing from the table: {missing}")


def _factor_column(name: str, columns: pd.Index) -> str | None:
    if name in columns:
        return name
    m = _C_WRAPPED.match(name)
    if m and m.group(1) in columns:
        return m.group(1)
    return None


def _build(info: DesignInfo, covariates: pd.DataFrame) -> np.ndarray:
    try:
        mat = build_design_matrices([info], covariates, NA_action="raise")[0]
    except PatsyError as exc:
        raise InputShapeError(f"Could not evaluate design on covariates: {exc}") from exc
    arr = np.asarray(mat, dtype=float)
    n = int(covariates.shape[0])
    if arr.shape[0] != n and arr.shape[0] == 1:
        # intercept-only designs carry no row information
        arr = np.repeat(arr, n, axis=0)
    return arr


@dataclass(frozen=True)
class DesignSpec:
    """Mean and dispersion designs learned on the reference covariates."""

    mu_formula: str
    sigma_formula: str
    mu_info: DesignInfo
    sigma_info: DesignInfo
    variables: tuple[str, ...]
    levels: dict[str, tuple]

    @classmethod
    def from_covariates(
        cls, covariates: pd.DataFrame, mu_formula: str | None, sigma_formula: str | None
    ) -> "DesignSpec":
        mu_f = normalize_formula(mu_formula)
        sigma_f = normalize_formula(sigma_formula)
        variables = formula_variables(mu_f) + [
            v for v in formula_variables(sigma_f) if v not in formula_variables(mu_f)
        ]
        require_columns(covariates, variables, "Marginal formulas")
        try:
            mu_info = dmatrix(mu_f, covariates, NA_action="raise").design_info
            sigma_info = dmatrix(sigma_f, covariates, NA_action="raise").design_info
        except PatsyError as exc:
            raise InputShapeError(f"Invalid covariate formula: {exc}") from exc

        levels: dict[str, tuple] = {}
        for info in (mu_info, sigma_info):
            for factor, finfo in info.factor_infos.items():
                if finfo.type != "categorical":
                    continue
                col = _factor_column(factor.name(), covariates.columns)
                if col is not None:
                    levels[col] = tuple(finfo.categories)
        return cls(
            mu_formula=mu_f,
            sigma_formula=sigma_f,
            mu_info=mu_info,
            sigma_info=sigma_info,
            variables=tuple(variables),
            levels=levels,
        )

    @property
    def n_mu(self) -> int:
        return len(self.mu_info.column_names)

    @property
    def n_sigma(self) -> int:
        return len(self.sigma_info.column_names)

    def check(self, covariates: pd.DataFrame) -> None:
        """Raise `InputShapeError` for missing columns or unseen categorical levels."""
        require_columns(covariates, list(self.variables), "Fitted marginal design")
        for col, known in self.levels.items():
            seen = pd.unique(covariates[col])
            unseen = [v for v in seen if v not in set(known)]
            if unseen:
                raise InputShapeError(
                    f"Covariate '{col}' has levels not seen during fitting: {unseen}"
                )

    def mu_matrix(self, covariates: pd.DataFrame) -> np.ndarray:
        return _build(self.mu_info, covariates)

    def sigma_matrix(self, covariates: pd.DataFrame) -> np.ndarray:
        return _build(self.sigma_info, covariates)
