"""
mnemo fusion -- Reciprocal Rank Fusion of ranked id lists.

Only rank positions cross the fusion boundary; the raw cosine and BM25
scores are never compared with each other.
"""

from typing import Dict, Iterable, List, Sequence, Tuple

DEFAULT_RRF_K = 60


def rrf_fuse(rankings: Iterable[Sequence[Tuple[str, float]]], k: int = DEFAULT_RRF_K) -> List[Tuple[str, float]]:
    """Fuse ranked lists of ``(id, score)`` into ``[(id, fused_score), ...]``.

    Each list contributes ``1 / (k + rank)`` for every item it holds, rank
    starting at 1 for its first entry. An id repeated within one list only
    counts at its best position. Output is fused score descending, ties
    broken by id ascending.
    """
    if k <= 0:
        raise ValueError(f"rrf k must be positive, got {k}")
    scores: Dict[str, float] = {}
    for ranking in rankings:
        seen = set()
        for rank, (memory_id, _) in enumerate(ranking, start=1):
            if memory_id in seen:
                continue
            seen.add(memory_id)
            scores[memory_id] = scores.get(memory_id, 0.0) + 1.0 / (k + rank)
    return sorted(scores.items(), key=lambda item: (-item[1], item[0]))
