"""
mnemo errors -- typed failure kinds surfaced by the store.

Every failure path raises one of these. A refused insert is not an error:
``MemoryStore.add`` returns an ``AddResult`` carrying the conflicting set.
"""

from typing import Optional


class MnemoError(Exception):
    """Base class for all mnemo errors."""


class ValidationError(MnemoError):
    """Rejected input (empty content, malformed metadata, bad limit or weight).

    Raised before any side effect, so the store is left untouched.
    """


class ConfigError(ValidationError):
    """Invalid configuration value."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{key}: {message}")


class EmbeddingFailure(MnemoError):
    """The embedding provider could not produce a vector."""


class DataIntegrityError(MnemoError):
    """A stored or proposed record violates the vector format."""


class DimensionMismatch(DataIntegrityError):
    """Vector length differs from the configured dimensionality."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected a vector of length {expected}, got {actual}")


class CorruptEmbedding(DataIntegrityError):
    """Stored embedding blob cannot be decoded to a vector of the right length."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        self.record_id = record_id
        if record_id:
            message = f"{message} (record {record_id})"
        super().__init__(message)


class StoreError(MnemoError):
    """Backing-store failure.

    ``transient`` is True when the caller may retry the same operation
    (lock contention), False for structural faults (schema mismatch,
    missing FTS5 support, I/O errors).
    """

    transient = False

    def __init__(self, message: str, transient: Optional[bool] = None):
        if transient is not None:
            self.transient = transient
        super().__init__(message)


class StoreBusy(StoreError):
    """Another process holds the write lock."""

    transient = True


class NotFound(MnemoError):
    """No record with this id in the active project."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"memory not found: {memory_id}")
