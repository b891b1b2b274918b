"""Bounded worker pool with order-stable aggregation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import TypeVar

from joblib import Parallel, delayed

T = TypeVar("T")
R = TypeVar("R")

BACKENDS = ("threading", "loky", "multiprocessing")

logger = logging.getLogger(__name__)


def _call_indexed(func: Callable[[T], R], indexed: tuple[int, T]) -> tuple[int, R]:
    idx, item = indexed
    return idx, func(item)


def parallel_map(
    func: Callable[[T], R],
    items: Iterable[T],
    *,
    n_jobs: int = 1,
    backend: str = "threading",
    batch_size: int | str = "auto",
) -> list[R]:
    """Apply ``func`` to items with deterministic, order-stable aggregation.

    Output order is always aligned to input order, independent of scheduling.
    Units must not share mutable state; any randomness inside ``func`` has to
    come from a per-item seed.
    """
    seq = list(items)
    if not seq:
        return []
    if backend not in BACKENDS:
        raise ValueError(f"Unknown backend '{backend}'. Use one of {BACKENDS}.")

    jobs = max(1, int(n_jobs))
    if jobs == 1 or len(seq) == 1:
        return [func(item) for item in seq]

    logger.debug(
        "parallel_map n_items=%d n_jobs=%d backend=%s", len(seq), jobs, backend
    )
    rows = Parallel(n_jobs=jobs, backend=backend, batch_size=batch_size)(
        delayed(_call_indexed)(func, pair) for pair in enumerate(seq)
    )
    rows.sort(key=lambda x: x[0])
    return [row for _, row in rows]
