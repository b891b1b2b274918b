"""Counterfactual covariate tables with exact group proportions."""

from __future__ import annotations

from typing import Mapping

import numpy as np
import pandas as pd

from scsynth.core.types import GROUP_COL
from scsynth.errors import GroupConsistencyError, InputShapeError
from scsynth.seeding import rng_for


def allocate_counts(proportions: Mapping[str, float], n_cells: int) -> dict[str, int]:
    """Split ``n_cells`` across groups by largest remainder.

    Ties in the remainder go to the group listed first.
    """
    if int(n_cells) < 0:
        raise ValueError("n_cells must be nonnegative.")
    keys = [str(k) for k in proportions]
    weights = np.asarray([float(v) for v in proportions.values()], dtype=float)
    if weights.size == 0 or np.any(~np.isfinite(weights)) or np.any(weights < 0):
        raise ValueError("proportions must be finite and nonnegative.")
    total = float(weights.sum())
    if total <= 0:
        raise ValueError("proportions must sum to a positive value.")
    raw = weights / total * int(n_cells)
    base = np.floor(raw).astype(int)
    left = int(n_cells) - int(base.sum())
    order = sorted(range(len(keys)), key=lambda i: (-(raw[i] - base[i]), i))
    for i in order[:left]:
        base[i] += 1
    return {k: int(c) for k, c in zip(keys, base)}


def resample_covariates(
    reference: pd.DataFrame,
    n_cells: int,
    proportions: Mapping[str, float] | None = None,
    *,
    group_col: str = GROUP_COL,
    seed: int = 0,
) -> pd.DataFrame:
    """Draw a synthetic covariate table from reference rows.

    Rows of each group are sampled with replacement so that the group counts
    follow ``proportions`` exactly up to integer rounding. Without
    ``proportions`` the reference composition is kept. Groups with proportion
    0 contribute no rows.

    Raises:
        InputShapeError: ``group_col`` is missing from ``reference``.
        GroupConsistencyError: A positive proportion names an unknown group.
    """
    if group_col not in reference.columns:
        raise InputShapeError(f"reference covariates have no '{group_col}' column.")
    labels = reference[group_col].astype(str)
    if proportions is None:
        proportions = labels.value_counts(sort=False).to_dict()
    counts = allocate_counts(proportions, n_cells)
    unknown = [g for g, c in counts.items() if c > 0 and g not in set(labels)]
    if unknown:
        raise GroupConsistencyError(f"Requested groups absent from the reference: {unknown}")

    pieces = []
    for group, count in counts.items():
        if count == 0:
            continue
        rng = rng_for(seed, "covariates", group)
        idx = np.flatnonzero((labels == group).to_numpy())
        pieces.append(reference.iloc[rng.choice(idx, size=count, replace=True)])
    if not pieces:
        return reference.iloc[:0].copy()
    out = pd.concat(pieces, axis=0)
    out.index = pd.Index([f"cell_{i}" for i in range(out.shape[0])])
    return out
