"""
mnemo embeddings -- text -> fixed-length vector providers.

The store only depends on the ``Embedder`` protocol: a ``dimension`` and a
deterministic ``embed(text)``. Two real providers ship:

- ``OnnxEmbedder``: bge-small-en-v1.5 exported to ONNX, run with ONNX
  Runtime on CPU (~90MB RAM). Files come from ``mnemo setup --download-model``.
- ``SentenceTransformerEmbedder``: the same model through PyTorch, used when
  the ONNX files are absent and ``sentence-transformers`` is installed.

There is no hash or random fallback: if no model can run, embedding fails
with ``EmbeddingFailure`` and nothing is written.
"""

import contextlib
import importlib.util
import io
import logging
import os
import sys
import urllib.request
from pathlib import Path
from typing import List, Optional, Protocol, runtime_checkable

import numpy as np

from mnemo.errors import EmbeddingFailure

logger = logging.getLogger("mnemo.embedding")

HF_BASE = "https://huggingface.co"
MODEL_FILES = {
    "model.onnx": "onnx/model.onnx",
    "tokenizer.json": "tokenizer.json",
    "config.json": "config.json",
    "tokenizer_config.json": "tokenizer_config.json",
}
REQUIRED_FILES = ("model.onnx", "tokenizer.json")
MAX_TOKENS = 512


@runtime_checkable
class Embedder(Protocol):
    dimension: int

    def embed(self, text: str) -> List[float]:
        ...


def model_dir_for(model_cache: Path, model_id: str) -> Path:
    """``BAAI/bge-small-en-v1.5`` -> ``<cache>/bge-small-en-v1.5-onnx``."""
    return Path(model_cache).expanduser() / f"{model_id.rsplit('/', 1)[-1]}-onnx"


def has_onnx_model(model_dir: Path) -> bool:
    return all((model_dir / name).exists() for name in REQUIRED_FILES)


def _check_output(vector: np.ndarray, dimension: int) -> List[float]:
    vector = np.asarray(vector, dtype=np.float32).reshape(-1)
    if vector.shape[0] != dimension:
        raise EmbeddingFailure(f"model returned {vector.shape[0]} values, expected {dimension}")
    if not np.all(np.isfinite(vector)):
        raise EmbeddingFailure("model returned non-finite values")
    return vector.tolist()


def _onnx_encode(tokenizer, session, texts: List[str]) -> np.ndarray:
    """Encode texts using ONNX Runtime. Returns normalized embeddings."""
    batch = tokenizer.encode_batch(texts)
    ids = np.array([b.ids for b in batch], dtype=np.int64)
    mask = np.array([b.attention_mask for b in batch], dtype=np.int64)
    feed = {"input_ids": ids, "attention_mask": mask}
    input_names = {i.name for i in session.get_inputs()}
    if "token_type_ids" in input_names:
        feed["token_type_ids"] = np.zeros_like(ids)
    outputs = session.run(None, feed)
    embeddings = outputs[1] if len(outputs) > 1 else outputs[0]
    if embeddings.ndim == 3:
        # mean pooling over real (unpadded) tokens
        mask_expanded = mask[:, :, np.newaxis].astype(np.float32)
        sum_emb = np.sum(embeddings * mask_expanded, axis=1)
        sum_mask = np.clip(np.sum(mask_expanded, axis=1), a_min=1e-9, a_max=None)
        embeddings = sum_emb / sum_mask
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / np.clip(norms, a_min=1e-9, a_max=None)


class OnnxEmbedder:
    """bge-style sentence embeddings via ONNX Runtime + HF tokenizers."""

    def __init__(self, model_dir: Path, dimension: int = 384):
        import onnxruntime as ort
        from tokenizers import Tokenizer

        self.model_dir = Path(model_dir)
        self.dimension = dimension
        try:
            tokenizer = Tokenizer.from_file(str(self.model_dir / "tokenizer.json"))
            tokenizer.enable_padding(pad_id=0, pad_token="[PAD]")
            tokenizer.enable_truncation(max_length=MAX_TOKENS)
            sess_opts = ort.SessionOptions()
            sess_opts.log_severity_level = 4
            sess_opts.enable_cpu_mem_arena = False
            with contextlib.redirect_stderr(io.StringIO()):
                session = ort.InferenceSession(
                    str(self.model_dir / "model.onnx"),
                    sess_options=sess_opts,
                    providers=["CPUExecutionProvider"],
                )
        except Exception as e:
            raise EmbeddingFailure(f"failed to load ONNX model from {self.model_dir}: {e}") from e
        self._tokenizer = tokenizer
        self._session = session
        logger.info("Loaded ONNX embedding model from %s", self.model_dir)

    def embed(self, text: str) -> List[float]:
        try:
            vectors = _onnx_encode(self._tokenizer, self._session, [text])
        except Exception as e:
            raise EmbeddingFailure(f"ONNX inference failed: {e}") from e
        return _check_output(vectors[0], self.dimension)


class SentenceTransformerEmbedder:
    """PyTorch fallback through sentence-transformers (optional extra)."""

    def __init__(self, model_id: str, dimension: int = 384):
        os.environ.setdefault("TQDM_DISABLE", "1")
        try:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(model_id)
        except Exception as e:
            raise EmbeddingFailure(f"failed to load sentence-transformers model {model_id}: {e}") from e
        self.model_id = model_id
        self.dimension = dimension
        logger.info("Loaded sentence-transformers model %s (PyTorch fallback)", model_id)

    def embed(self, text: str) -> List[float]:
        try:
            vector = self._model.encode(text, normalize_embeddings=True)
        except Exception as e:
            raise EmbeddingFailure(f"sentence-transformers inference failed: {e}") from e
        return _check_output(vector, self.dimension)


def has_sentence_transformers() -> bool:
    return importlib.util.find_spec("sentence_transformers") is not None


def load_embedder(config) -> Embedder:
    """Pick a provider for ``config.embedding_model``.

    Priority: ONNX files in the model cache > sentence-transformers.
    """
    model_dir = model_dir_for(config.model_cache, config.embedding_model)
    if has_onnx_model(model_dir):
        return OnnxEmbedder(model_dir, dimension=config.embedding_dim)
    if has_sentence_transformers():
        return SentenceTransformerEmbedder(config.embedding_model, dimension=config.embedding_dim)
    raise EmbeddingFailure(
        f"no embedding model found in {model_dir}. Run 'mnemo setup --download-model' "
        "or install the 'st' extra for sentence-transformers."
    )


def _download_file(url: str, target: Path, quiet: bool = False) -> None:
    """Download a file, showing bytes and percentage on stderr."""
    req = urllib.request.Request(url, headers={"User-Agent": "mnemo/0.1"})
    with urllib.request.urlopen(req, timeout=60) as resp:
        total = int(resp.headers.get("Content-Length", 0))
        downloaded = 0
        chunk_size = 64 * 1024

        # temp file renamed on success, so no partial files are left behind
        tmp = target.with_suffix(target.suffix + ".tmp")
        try:
            with open(tmp, "wb") as f:
                while True:
                    chunk = resp.read(chunk_size)
                    if not chunk:
                        break
                    f.write(chunk)
                    downloaded += len(chunk)
                    if quiet:
                        continue
                    mb_done = downloaded / (1024 * 1024)
                    if total > 0:
                        pct = downloaded * 100 // total
                        print(f"\r    {target.name}: {mb_done:.1f}/{total / (1024 * 1024):.1f} MB ({pct}%)",
                              end="", flush=True, file=sys.stderr)
                    else:
                        print(f"\r    {target.name}: {mb_done:.1f} MB", end="", flush=True, file=sys.stderr)
            tmp.rename(target)
            if not quiet:
                print(file=sys.stderr)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise


def download_model(model_id: str, target_dir: Path, quiet: bool = False) -> Path:
    """Fetch the ONNX export and tokenizer of ``model_id`` from the Hugging Face hub.

    Files already present are kept. Returns ``target_dir``.
    """
    target_dir = Path(target_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    base = f"{HF_BASE}/{model_id}/resolve/main"
    try:
        for fname, remote in MODEL_FILES.items():
            target = target_dir / fname
            if not target.exists():
                logger.info("Downloading %s/%s", model_id, remote)
                _download_file(f"{base}/{remote}", target, quiet=quiet)
    except OSError as e:
        raise EmbeddingFailure(f"model download failed: {e}") from e
    if not has_onnx_model(target_dir):
        raise EmbeddingFailure(f"model files still missing in {target_dir} after download")
    return target_dir


def describe_embedder(embedder: Optional[Embedder]) -> str:
    if embedder is None:
        return "not loaded"
    if isinstance(embedder, OnnxEmbedder):
        return f"onnx ({embedder.model_dir})"
    if isinstance(embedder, SentenceTransformerEmbedder):
        return f"sentence-transformers ({embedder.model_id})"
    return type(embedder).__name__
