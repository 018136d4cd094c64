"""
mnemo similarity -- exact cosine ranking over the vectors of one project.

The whole scope is scanned on every query; there is no vector index.
"""

from datetime import datetime
from typing import List, Sequence, Tuple

import numpy as np

# (id, vector, created_at)
Candidate = Tuple[str, Sequence[float], datetime]


def _cosine_rows(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine of ``query`` against each row of ``matrix``, in float64.

    Rows (or a query) with zero or non-finite norm score 0.0.
    """
    with np.errstate(invalid="ignore", over="ignore", divide="ignore"):
        q_norm = np.linalg.norm(query)
        row_norms = np.linalg.norm(matrix, axis=1)
        dots = matrix @ query
        sims = dots / (row_norms * q_norm)
    degenerate = (row_norms == 0) | (q_norm == 0) | ~np.isfinite(sims)
    sims[degenerate] = 0.0
    return np.clip(sims, -1.0, 1.0)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either norm is zero."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"vector shapes differ: {va.shape} vs {vb.shape}")
    return float(_cosine_rows(va, vb[np.newaxis, :])[0])


def rank_by_similarity(query: Sequence[float], candidates: Sequence[Candidate]) -> List[Tuple[str, float]]:
    """Return ``[(id, similarity), ...]`` best first.

    Ties are broken by newer ``created_at`` first, then by id, so the order
    is fully deterministic.
    """
    if not candidates:
        return []
    q = np.asarray(query, dtype=np.float64)
    matrix = np.vstack([np.asarray(vec, dtype=np.float64) for _, vec, _ in candidates])
    sims = _cosine_rows(q, matrix)

    ranked = [
        (float(sim), created_at.timestamp(), memory_id)
        for (memory_id, _, created_at), sim in zip(candidates, sims)
    ]
    ranked.sort(key=lambda r: (-r[0], -r[1], r[2]))
    return [(memory_id, sim) for sim, _, memory_id in ranked]
