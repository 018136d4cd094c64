"""
mnemo codec -- fixed-width float32 vector <-> blob conversion.

Blobs are exactly ``4 * dim`` bytes of little-endian IEEE-754 float32.
Nothing else in the package packs or unpacks embedding bytes.
"""

import struct
from typing import List, Optional, Sequence

import numpy as np

from mnemo.errors import CorruptEmbedding, DataIntegrityError, DimensionMismatch

EMBEDDING_DIM = 384

_LE_F32 = np.dtype("<f4")


def encode(vector: Sequence[float], dim: int = EMBEDDING_DIM) -> bytes:
    """Serialize a float32 vector to ``4 * dim`` little-endian bytes."""
    if len(vector) != dim:
        raise DimensionMismatch(dim, len(vector))
    try:
        return struct.pack(f"<{dim}f", *vector)
    except (struct.error, OverflowError) as e:
        raise DataIntegrityError(f"vector is not representable as float32: {e}") from e


def _check_blob(blob: bytes, dim: int, record_id: Optional[str]) -> None:
    if blob is None:
        raise CorruptEmbedding("embedding is missing", record_id)
    if len(blob) % 4 != 0:
        raise CorruptEmbedding(f"embedding blob of {len(blob)} bytes is not a multiple of 4", record_id)
    if len(blob) // 4 != dim:
        raise CorruptEmbedding(f"embedding has {len(blob) // 4} values, expected {dim}", record_id)


def decode(blob: bytes, dim: int = EMBEDDING_DIM, record_id: Optional[str] = None) -> List[float]:
    """Deserialize a blob back into the exact float32 values it was written from."""
    _check_blob(blob, dim, record_id)
    return list(struct.unpack(f"<{dim}f", blob))


def decode_array(blob: bytes, dim: int = EMBEDDING_DIM, record_id: Optional[str] = None) -> np.ndarray:
    """Same contract as ``decode`` but returns a float32 numpy array for ranking."""
    _check_blob(blob, dim, record_id)
    return np.frombuffer(blob, dtype=_LE_F32)
