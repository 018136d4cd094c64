"""mnemo -- local semantic memory store with hybrid search and conflict detection."""

__version__ = "0.1.0"

from mnemo.config import Config
from mnemo.errors import (
    ConfigError,
    CorruptEmbedding,
    DataIntegrityError,
    DimensionMismatch,
    EmbeddingFailure,
    MnemoError,
    NotFound,
    StoreBusy,
    StoreError,
    ValidationError,
)
from mnemo.memory_store import MemoryStore
from mnemo.types import AddResult, AddStatus, ConflictCandidate, MemoryRecord, ScoredMemory

__all__ = [
    "AddResult",
    "AddStatus",
    "Config",
    "ConfigError",
    "ConflictCandidate",
    "CorruptEmbedding",
    "DataIntegrityError",
    "DimensionMismatch",
    "EmbeddingFailure",
    "MemoryRecord",
    "MemoryStore",
    "MnemoError",
    "NotFound",
    "ScoredMemory",
    "StoreBusy",
    "StoreError",
    "ValidationError",
]
