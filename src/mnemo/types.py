"""
mnemo types -- records and results passed between the store and its callers.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional


class MemoryRecord:
    """A stored memory as read back from the database."""

    __slots__ = (
        "id",
        "project_id",
        "content",
        "embedding",
        "metadata",
        "created_at",
        "updated_at",
    )

    def __init__(
        self,
        id: str,
        project_id: str,
        content: str,
        embedding: Optional[List[float]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ):
        self.id = id
        self.project_id = project_id
        self.content = content
        self.embedding = embedding
        self.metadata = metadata
        self.created_at = created_at
        self.updated_at = updated_at or created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "content": self.content,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"MemoryRecord(id={self.id!r}, project_id={self.project_id!r}, content={self.content[:40]!r})"


class ScoredMemory:
    """One search hit: the record fields a caller displays plus its final score."""

    __slots__ = ("id", "content", "score", "created_at", "metadata")

    def __init__(
        self,
        id: str,
        content: str,
        score: float,
        created_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.id = id
        self.content = content
        self.score = score
        self.created_at = created_at
        self.metadata = metadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "score": self.score,
            "created_at": self.created_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"ScoredMemory(id={self.id!r}, score={self.score:.4f})"


class ConflictCandidate(NamedTuple):
    """An existing record judged too similar to a proposed insert."""

    id: str
    content: str
    similarity: float


class AddStatus(Enum):
    ADDED = "added"
    CONFLICTS = "conflicts"


class AddResult:
    """Outcome of ``MemoryStore.add``.

    ``status`` is ADDED with ``id`` set, or CONFLICTS with ``conflicts``
    listing the records that blocked the write (nothing was stored).
    """

    __slots__ = ("status", "id", "proposed", "conflicts")

    def __init__(
        self,
        status: AddStatus,
        id: Optional[str] = None,
        proposed: Optional[str] = None,
        conflicts: Optional[List[ConflictCandidate]] = None,
    ):
        self.status = status
        self.id = id
        self.proposed = proposed
        self.conflicts = conflicts or []

    @classmethod
    def added(cls, memory_id: str) -> "AddResult":
        return cls(AddStatus.ADDED, id=memory_id)

    @classmethod
    def conflicted(cls, proposed: str, conflicts: List[ConflictCandidate]) -> "AddResult":
        return cls(AddStatus.CONFLICTS, proposed=proposed, conflicts=conflicts)

    @property
    def is_added(self) -> bool:
        return self.status is AddStatus.ADDED

    def to_dict(self) -> Dict[str, Any]:
        if self.is_added:
            return {"status": self.status.value, "id": self.id}
        return {
            "status": self.status.value,
            "proposed": self.proposed,
            "conflicts": [c._asdict() for c in self.conflicts],
        }
