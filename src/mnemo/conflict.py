"""
mnemo conflict detection -- near-duplicate check run before every insert.

Only embedding similarity is consulted. Lexical overlap never blocks or
admits an insert on its own.
"""

import logging
from typing import Dict, List, Sequence, Tuple

from mnemo.types import ConflictCandidate

logger = logging.getLogger("mnemo.conflict")

DEFAULT_SIMILARITY_THRESHOLD = 0.85


class ConflictDetector:
    """Selects existing records whose similarity reaches ``threshold`` (inclusive)."""

    def __init__(self, threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        if not (0.0 <= threshold <= 1.0):
            raise ValueError(f"similarity threshold must be within [0, 1], got {threshold}")
        self.threshold = threshold

    def select(
        self,
        ranked: Sequence[Tuple[str, float]],
        contents: Dict[str, str],
    ) -> List[ConflictCandidate]:
        """Return the conflicting ``(id, content, similarity)`` triples, best first.

        ``ranked`` is the similarity ranking of the proposed embedding against
        its project; ``contents`` maps those ids to their text.
        """
        conflicts = [
            ConflictCandidate(memory_id, contents[memory_id], similarity)
            for memory_id, similarity in ranked
            if similarity >= self.threshold
        ]
        if conflicts:
            logger.debug(
                "%d conflict(s) at threshold %.3f, best %.4f",
                len(conflicts), self.threshold, conflicts[0].similarity,
            )
        return conflicts
