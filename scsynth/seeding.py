"""Deterministic seeding helpers that avoid Python's salted hash."""

from __future__ import annotations

import hashlib
import json
from typing import Any

import numpy as np


def _token_to_str(token: Any) -> str:
    try:
        return json.dumps(token, sort_keys=True, separators=(",", ":"), default=str)
    except (TypeError, ValueError):
        return repr(token)


def stable_seed(master_seed: int, *tokens: Any) -> int:
    """Derive a stable uint32 seed from a master seed and arbitrary tokens.

    Sub-seeds depend only on ``(master_seed, tokens)``, so a gene or group
    draws the same stream no matter which worker processes it.
    """
    parts = [str(int(master_seed))] + [_token_to_str(tok) for tok in tokens]
    payload = "|".join(parts).encode("utf-8")
    digest = hashlib.sha256(payload).digest()
    offset = int.from_bytes(digest[:8], "big")
    return int((int(master_seed) + offset) % (2**32))


def rng_for(master_seed: int, *tokens: Any) -> np.random.Generator:
    """NumPy Generator seeded from :func:`stable_seed`."""
    return np.random.default_rng(stable_seed(master_seed, *tokens))
