from __future__ import annotations

import threading

import numpy as np
import pytest

from scsynth.parallel import parallel_map
from scsynth.seeding import rng_for, stable_seed


def test_stable_seed_depends_only_on_tokens():
    assert stable_seed(0, "copula", 3) == stable_seed(0, "copula", 3)
    assert stable_seed(0, "copula", 3) != stable_seed(0, "copula", 4)
    assert stable_seed(0, "copula", 3) != stable_seed(1, "copula", 3)
    assert 0 <= stable_seed(42, "simulate", "B") < 2**32


def test_rng_for_streams_are_reproducible():
    a = rng_for(5, "simulate", "A").standard_normal(4)
    b = rng_for(5, "simulate", "A").standard_normal(4)
    np.testing.assert_array_equal(a, b)


def test_parallel_map_preserves_input_order():
    def _slow_square(x: int) -> int:
        threading.Event().wait(0.002 * (5 - x))
        return x * x

    assert parallel_map(_slow_square, range(5), n_jobs=3) == [0, 1, 4, 9, 16]
    assert parallel_map(_slow_square, range(5), n_jobs=1) == [0, 1, 4, 9, 16]
    assert parallel_map(_slow_square, [], n_jobs=3) == []


def test_parallel_map_rejects_unknown_backend():
    with pytest.raises(ValueError, match="backend"):
        parallel_map(abs, [1, -2], n_jobs=2, backend="dask")


def test_parallel_map_propagates_errors():
    def _fail(x: int) -> int:
        raise ValueError(f"bad item {x}")

    with pytest.raises(ValueError, match="bad item"):
        parallel_map(_fail, [1, 2], n_jobs=2)
