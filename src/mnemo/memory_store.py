"""
mnemo memory store -- add / search / get / list / update / delete.

Composes the embedding provider, the vector codec, the similarity ranker,
the FTS5 lexical index, rank fusion, recency decay and the conflict
detector over one ``Database``. Each public call is one atomic operation:
it reads what it needs from SQLite, and every write commits together with
its lexical index entry or not at all.

Usage:
    store = MemoryStore(Config.load(), project_id="acme/api")
    result = store.add("Alice works at Microsoft")
    if result.status is AddStatus.CONFLICTS:
        ...
    hits = store.search("where does Alice work", limit=5, hybrid=True)
"""

import json
import logging
import math
import os
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from mnemo import codec, lexical
from mnemo.config import Config
from mnemo.conflict import ConflictDetector
from mnemo.embedding import Embedder, load_embedder
from mnemo.errors import CorruptEmbedding, DimensionMismatch, EmbeddingFailure, NotFound, ValidationError
from mnemo.fusion import rrf_fuse
from mnemo.recency import apply_recency_weight, time_score, validate_recency_weight
from mnemo.similarity import rank_by_similarity
from mnemo.sqlite_store import (
    Database,
    Delete,
    Insert,
    Update,
    format_dt,
    parse_dt,
    select_all,
    select_record,
    select_records,
    select_recent,
    select_scope_vectors,
)
from mnemo.types import AddResult, ConflictCandidate, MemoryRecord, ScoredMemory

logger = logging.getLogger("mnemo.memory_store")

DEFAULT_LIMIT = 10
EXPORT_VERSION = "mnemo-v1"

_MIN_CANDIDATE_POOL = 50
_MAX_CANDIDATE_POOL = 10_000


def candidate_pool_size(limit: int) -> int:
    """How many entries of each ranking feed the fusion step."""
    return max(_MIN_CANDIDATE_POOL, min(limit * 10, _MAX_CANDIDATE_POOL))


class _EmbedderSlot:
    """Loads the embedding provider on first use; shared by ``for_project`` handles."""

    def __init__(self, config: Config, embedder: Optional[Embedder]):
        self._config = config
        self._embedder = embedder

    @property
    def loaded(self) -> Optional[Embedder]:
        return self._embedder

    def get(self) -> Embedder:
        if self._embedder is None:
            self._embedder = load_embedder(self._config)
        return self._embedder


class MemoryStore:
    """All operations are scoped to ``project_id``; nothing crosses projects."""

    def __init__(
        self,
        config: Optional[Config] = None,
        embedder: Optional[Embedder] = None,
        project_id: str = "default",
        db: Optional[Database] = None,
        clock: Optional[Callable[[], datetime]] = None,
        *,
        _slot: Optional[_EmbedderSlot] = None,
    ):
        self.config = (config or Config()).validate()
        self.project_id = _check_project_id(project_id)
        self._owns_db = db is None
        self._db = db or Database(
            self.config.database_path,
            busy_timeout_ms=self.config.busy_timeout_ms,
            retries=self.config.busy_retries,
        )
        self._embedder = _slot or _EmbedderSlot(self.config, embedder)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._detector = ConflictDetector(self.config.similarity_threshold)

    def for_project(self, project_id: str) -> "MemoryStore":
        """Another scope over the same database and embedder."""
        return MemoryStore(
            config=self.config,
            project_id=project_id,
            db=self._db,
            clock=self._clock,
            _slot=self._embedder,
        )

    @property
    def db(self) -> Database:
        return self._db

    @property
    def embedder(self) -> Embedder:
        return self._embedder.get()

    # ------------------------------------------------------------------
    # Input checks
    # ------------------------------------------------------------------

    def _clean_text(self, text: Any, what: str = "content") -> str:
        if not isinstance(text, str):
            raise ValidationError(f"{what} must be a string, got {type(text).__name__}")
        cleaned = text.strip()
        if not cleaned:
            raise ValidationError(f"{what} must not be empty")
        if len(cleaned) > self.config.max_content_length:
            raise ValidationError(
                f"{what} is {len(cleaned)} characters, maximum is {self.config.max_content_length}"
            )
        return cleaned

    def _check_limit(self, limit: Any) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValidationError(f"limit must be an integer, got {limit!r}")
        if not (1 <= limit <= self.config.max_limit):
            raise ValidationError(f"limit must be between 1 and {self.config.max_limit}, got {limit}")
        return limit

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    def _embed(self, text: str) -> List[float]:
        vector = self.embedder.embed(text)
        if len(vector) != self.config.embedding_dim:
            raise DimensionMismatch(self.config.embedding_dim, len(vector))
        if not all(math.isfinite(x) for x in vector):
            raise EmbeddingFailure("embedding contains non-finite values")
        return vector

    def _encode(self, vector: Sequence[float]) -> bytes:
        return codec.encode(vector, self.config.embedding_dim)

    # ------------------------------------------------------------------
    # Ranking helpers (run inside a transaction)
    # ------------------------------------------------------------------

    def _scope_candidates(self, conn) -> Tuple[List[Tuple[str, Any, datetime]], Dict[str, str]]:
        """Decoded vectors of the active project plus an id -> content map.

        A record whose blob cannot be decoded is left out of the ranking and
        reported; it is never padded, truncated or scored as zero.
        """
        candidates = []
        contents = {}
        for memory_id, blob, created_at, content in select_scope_vectors(conn, self.project_id):
            try:
                vector = codec.decode_array(blob, self.config.embedding_dim, record_id=memory_id)
            except CorruptEmbedding as e:
                logger.error("Skipping memory with corrupt embedding: %s", e)
                continue
            candidates.append((memory_id, vector, created_at))
            contents[memory_id] = content
        return candidates, contents

    def _find_conflicts(self, conn, vector: Sequence[float]) -> List[ConflictCandidate]:
        candidates, contents = self._scope_candidates(conn)
        ranked = rank_by_similarity(vector, candidates)
        return self._detector.select(ranked, contents)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def add(
        self,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        bypass_conflict: bool = False,
    ) -> AddResult:
        """Store a new memory unless a near-duplicate already exists.

        Returns ``AddResult`` with status ADDED and the new id, or status
        CONFLICTS listing the existing records at or above the similarity
        threshold (nothing is written). ``bypass_conflict`` skips the check.
        """
        text = self._clean_text(content)
        meta = _check_metadata(metadata)
        vector = self._embed(text)
        blob = self._encode(vector)
        now = self._now()

        with self._db.write_transaction() as conn:
            if not bypass_conflict:
                conflicts = self._find_conflicts(conn, vector)
                if conflicts:
                    return AddResult.conflicted(text, conflicts)
            memory_id = str(uuid.uuid4())
            self._db.apply_mutation(
                Insert(memory_id, self.project_id, text, blob, meta, created_at=now, updated_at=now),
                conn=conn,
            )
        logger.debug("Added %s to %s", memory_id, self.project_id)
        return AddResult.added(memory_id)

    def search(
        self,
        query: str,
        limit: int = DEFAULT_LIMIT,
        recency_weight: Optional[float] = None,
        hybrid: bool = False,
    ) -> List[ScoredMemory]:
        """Rank the active project against ``query``.

        Semantic ranking alone, or fused with the BM25 ranking when
        ``hybrid`` is set; then blended with recency by ``recency_weight``
        (the configured default when None) and cut to ``limit``.
        """
        text = self._clean_text(query, "query")
        limit = self._check_limit(limit)
        weight = validate_recency_weight(self.config.recency_weight if recency_weight is None else recency_weight)
        vector = self._embed(text)

        with self._db.read_transaction() as conn:
            candidates, _ = self._scope_candidates(conn)
            if not candidates:
                return []
            created = {memory_id: created_at for memory_id, _, created_at in candidates}
            ranked = rank_by_similarity(vector, candidates)

            if hybrid:
                pool = candidate_pool_size(limit)
                lexical_ranked = [
                    (memory_id, score)
                    for memory_id, score in lexical.search(conn, text, self.project_id, pool)
                    if memory_id in created
                ]
                ranked = rrf_fuse([ranked[:pool], lexical_ranked], k=self.config.rrf_k)
                logger.debug("hybrid search fused %d semantic + %d lexical", min(pool, len(created)), len(lexical_ranked))

            if weight > 0:
                ranked = self._apply_recency(ranked, created, weight)

            top = ranked[:limit]
            records = select_records(conn, [memory_id for memory_id, _ in top])

        return [
            ScoredMemory(
                id=memory_id,
                content=records[memory_id].content,
                score=score,
                created_at=records[memory_id].created_at,
                metadata=records[memory_id].metadata,
            )
            for memory_id, score in top
            if memory_id in records
        ]

    def _apply_recency(
        self,
        ranked: List[Tuple[str, float]],
        created: Dict[str, datetime],
        weight: float,
    ) -> List[Tuple[str, float]]:
        now = self._now()
        decay = self.config.decay
        rescored = []
        for memory_id, base in ranked:
            tau = time_score(created[memory_id], now, decay)
            rescored.append((memory_id, apply_recency_weight(base, tau, weight), created[memory_id]))
        rescored.sort(key=lambda r: (-r[1], -r[2].timestamp(), r[0]))
        return [(memory_id, score) for memory_id, score, _ in rescored]

    def get(self, memory_id: str) -> MemoryRecord:
        """Full record including its decoded embedding."""
        record = self._db.read(select_record, memory_id, self.project_id)
        if record is None:
            raise NotFound(memory_id)
        record.embedding = codec.decode(record.embedding, self.config.embedding_dim, record_id=memory_id)
        return record

    def update(
        self,
        memory_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> MemoryRecord:
        """Replace content (re-embedded) and, when given, metadata.

        ``id`` and ``created_at`` never change; ``updated_at`` always moves
        forward.
        """
        text = self._clean_text(content)
        meta = _check_metadata(metadata)
        if self._db.read(select_record, memory_id, self.project_id) is None:
            raise NotFound(memory_id)
        vector = self._embed(text)
        blob = self._encode(vector)

        with self._db.write_transaction() as conn:
            existing = select_record(conn, memory_id, self.project_id)
            if existing is None:
                raise NotFound(memory_id)
            updated_at = self._now()
            floor = max(existing.updated_at, existing.created_at)
            if updated_at <= floor:
                updated_at = floor + timedelta(microseconds=1)
            self._db.apply_mutation(
                Update(
                    memory_id,
                    self.project_id,
                    text,
                    blob,
                    meta,
                    updated_at=updated_at,
                    replace_metadata=metadata is not None,
                ),
                conn=conn,
            )
        logger.debug("Updated %s", memory_id)
        return MemoryRecord(
            id=memory_id,
            project_id=self.project_id,
            content=text,
            embedding=vector,
            metadata=meta if metadata is not None else existing.metadata,
            created_at=existing.created_at,
            updated_at=updated_at,
        )

    def delete(self, memory_id: str) -> None:
        """Hard delete; the lexical entry goes with it."""
        with self._db.write_transaction() as conn:
            if self._db.apply_mutation(Delete(memory_id, self.project_id), conn=conn) == 0:
                raise NotFound(memory_id)
        logger.debug("Deleted %s", memory_id)

    def count(self) -> int:
        return self._db.count(self.project_id)

    def list(self, limit: int = DEFAULT_LIMIT, all_projects: bool = False) -> List[MemoryRecord]:
        """Most recent records first, in this project (or every project)."""
        limit = self._check_limit(limit)
        return self._db.read(select_recent, None if all_projects else self.project_id, limit)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_to_file(self, filepath: Path, all_projects: bool = False) -> Dict[str, Any]:
        """Export memories (without embeddings) to a JSON file readable only by the owner."""
        records = self._db.read(select_all, None if all_projects else self.project_id)
        export_data = {
            "version": EXPORT_VERSION,
            "exported_at": format_dt(self._now()),
            "count": len(records),
            "memories": [
                {
                    "id": r.id,
                    "project_id": r.project_id,
                    "content": r.content,
                    "metadata": r.metadata,
                    "created_at": format_dt(r.created_at),
                    "updated_at": format_dt(r.updated_at),
                }
                for r in records
            ],
        }

        filepath = Path(filepath)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        export_bytes = json.dumps(export_data, indent=2, ensure_ascii=False).encode("utf-8")
        fd = os.open(str(filepath), os.O_CREAT | os.O_WRONLY | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
        try:
            os.write(fd, export_bytes)
        finally:
            os.close(fd)
        logger.info("Exported %d memories to %s", len(records), filepath)
        return {
            "filepath": str(filepath),
            "count": len(records),
            "projects": sorted({r.project_id for r in records}),
            "exported_at": export_data["exported_at"],
        }

    def import_from_file(self, filepath: Path, bypass_conflict: bool = False) -> Dict[str, Any]:
        """Import memories from an export file or a bare JSON list.

        Items without a ``project_id`` land in this store's project. Each item
        is re-embedded; items that conflict with what is already stored (or
        with earlier items of the same file) are skipped as duplicates.
        """
        filepath = Path(filepath)
        if filepath.is_symlink():
            raise ValidationError("Import file must not be a symlink")
        try:
            data = json.loads(filepath.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationError(f"{filepath} is not valid JSON: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ValidationError(f"cannot read {filepath}: {e}") from e
        items = data.get("memories") if isinstance(data, dict) else data
        if not isinstance(items, list):
            raise ValidationError(f"{filepath} holds no list of memories")

        stats = {"total": len(items), "imported": 0, "skipped_duplicates": 0, "skipped_invalid": 0, "projects": []}
        scopes: Dict[str, MemoryStore] = {}
        projects = set()
        for index, item in enumerate(items):
            try:
                project_id = self.project_id
                if isinstance(item, dict) and item.get("project_id") is not None:
                    project_id = _check_project_id(item["project_id"])
                scope = scopes.get(project_id)
                if scope is None:
                    scope = self if project_id == self.project_id else self.for_project(project_id)
                    scopes[project_id] = scope
                added = scope._import_item(item, bypass_conflict)
            except ValidationError as e:
                logger.warning("Skipping import item %d: %s", index, e)
                stats["skipped_invalid"] += 1
                continue
            if added:
                stats["imported"] += 1
                projects.add(project_id)
            else:
                stats["skipped_duplicates"] += 1
        stats["projects"] = sorted(projects)
        logger.info(
            "Imported %d/%d memories from %s (%d duplicates, %d invalid)",
            stats["imported"], stats["total"], filepath, stats["skipped_duplicates"], stats["skipped_invalid"],
        )
        return stats

    def _import_item(self, item: Any, bypass_conflict: bool) -> bool:
        if not isinstance(item, dict):
            raise ValidationError(f"expected an object, got {type(item).__name__}")
        text = self._clean_text(item.get("content"))
        meta = _check_metadata(item.get("metadata"))
        try:
            created_at = parse_dt(item.get("created_at")) or self._now()
            updated_at = parse_dt(item.get("updated_at")) or created_at
        except (TypeError, ValueError) as e:
            raise ValidationError(f"bad timestamp: {e}") from e
        updated_at = max(updated_at, created_at)

        vector = self._embed(text)
        blob = self._encode(vector)
        with self._db.write_transaction() as conn:
            if not bypass_conflict and self._find_conflicts(conn, vector):
                return False
            self._db.apply_mutation(
                Insert(str(uuid.uuid4()), self.project_id, text, blob, meta, created_at, updated_at),
                conn=conn,
            )
        return True

    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._owns_db:
            self._db.close()

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _check_project_id(project_id: Any) -> str:
    if not isinstance(project_id, str) or not project_id.strip():
        raise ValidationError(f"project id must be a non-empty string, got {project_id!r}")
    return project_id.strip()


def _check_metadata(metadata: Any) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    if not isinstance(metadata, dict):
        raise ValidationError(f"metadata must be a JSON object, got {type(metadata).__name__}")
    try:
        json.dumps(metadata, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"metadata is not JSON-serializable: {e}") from e
    return metadata
