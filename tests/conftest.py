"""mnemo test configuration."""
import hashlib
import math
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

# Ensure mnemo package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

DIM = 384

ALICE = "Alice works at Microsoft"
ALICE_SENIOR = "Alice is a senior engineer at Microsoft"


def basis(i: int, dim: int = DIM) -> list:
    v = np.zeros(dim, dtype=np.float32)
    v[i] = 1.0
    return v.tolist()


def blend(i: int, j: int, cos: float, dim: int = DIM) -> list:
    """Unit vector at cosine ``cos`` to basis(i), leaning toward basis(j)."""
    v = np.zeros(dim, dtype=np.float32)
    v[i] = cos
    v[j] = math.sqrt(1.0 - cos * cos)
    return v.tolist()


def hash_vector(text: str, dim: int = DIM) -> list:
    """Deterministic pseudo-embedding: seeded gaussian, normalized, float32."""
    seed = int.from_bytes(hashlib.md5(text.encode()).digest()[:4], byteorder="big")
    v = np.random.default_rng(seed).standard_normal(dim)
    v = (v / np.linalg.norm(v)).astype(np.float32)
    return v.tolist()


class FakeEmbedder:
    """Canned vectors for known texts, hash vectors for everything else."""

    def __init__(self, vectors=None, dimension: int = DIM):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        return hash_vector(text, self.dimension)


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def tmp_mnemo_dir(tmp_path, monkeypatch):
    """Create a temporary MNEMO_HOME with no ambient config or project."""
    mnemo_dir = tmp_path / ".mnemo"
    mnemo_dir.mkdir()
    monkeypatch.setenv("MNEMO_HOME", str(mnemo_dir))
    monkeypatch.setenv("MNEMO_CONFIG", str(tmp_path / "no-such-config.toml"))
    # Default: disable encryption in tests for deterministic output
    monkeypatch.setenv("MNEMO_ENCRYPT", "0")
    for var in (
        "MNEMO_PROJECT",
        "MNEMO_DATABASE_PATH",
        "MNEMO_EMBEDDING_MODEL",
        "MNEMO_MODEL_CACHE",
        "MNEMO_SIMILARITY_THRESHOLD",
        "MNEMO_RECENCY_WEIGHT",
        "MNEMO_DECAY_FUNCTION",
        "MNEMO_DECAY_LAMBDA",
        "MNEMO_DECAY_HORIZON_DAYS",
        "MNEMO_DECAY_OFFSET_DAYS",
        "MNEMO_RRF_K",
    ):
        monkeypatch.delenv(var, raising=False)
    from mnemo.crypto import reset_crypto_state
    reset_crypto_state()
    yield mnemo_dir
    reset_crypto_state()


@pytest.fixture
def tmp_mnemo_dir_encrypted(tmp_mnemo_dir, monkeypatch):
    """Temporary MNEMO_HOME with encryption enabled."""
    monkeypatch.setenv("MNEMO_ENCRYPT", "1")
    from mnemo.crypto import reset_crypto_state
    reset_crypto_state()
    yield tmp_mnemo_dir


@pytest.fixture
def config(tmp_mnemo_dir):
    from mnemo.config import Config
    return Config(database_path=tmp_mnemo_dir / "test.db", model_cache=tmp_mnemo_dir / "models")


@pytest.fixture
def embedder():
    return FakeEmbedder({ALICE: basis(0), ALICE_SENIOR: blend(0, 1, 0.94)})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(config, embedder, clock):
    """Fresh MemoryStore scoped to project 'P'."""
    from mnemo.memory_store import MemoryStore
    s = MemoryStore(config, embedder=embedder, project_id="P", clock=clock)
    yield s
    s.close()


@pytest.fixture
def db(tmp_mnemo_dir):
    """Bare Database without the orchestrator."""
    from mnemo.sqlite_store import Database
    d = Database(tmp_mnemo_dir / "test.db", busy_timeout_ms=0, retries=1, retry_base_delay=0.0)
    yield d
    d.close()
