"""Error and warning taxonomy for the simulation engine."""

from __future__ import annotations


class ScsynthError(Exception):
    """Base class for fatal simulation errors."""


class InputShapeError(ScsynthError, ValueError):
    """Inputs are structurally unusable (missing columns, bad shapes, unseen levels)."""


class GroupConsistencyError(ScsynthError, KeyError):
    """A covariate table references a ``corr_group`` with no fitted dependency model."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep it readable.
        return str(self.args[0]) if self.args else ""


class ConvergenceFailure(RuntimeWarning):
    """A gene's regression did not fit under the requested family."""


class DegenerateGeneWarning(RuntimeWarning):
    """A gene is zero-variance or dominated by zero mass."""
