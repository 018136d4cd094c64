"""
mnemo SQLite store -- the single on-disk database behind a MemoryStore.

Owns the connection, schema and migrations, and is the only module that
issues SQL against ``memories``. Every write goes through
``apply_mutation`` inside one ``BEGIN IMMEDIATE`` transaction; the FTS5
triggers ride along in that transaction, so readers never see a record
without its lexical index entry or vice versa.

Usage:
    db = Database(path)
    db.apply_mutation(Insert(...))
    row = db.read(select_record, memory_id, "my/project")
"""

import json
import logging
import sqlite3
import time as _time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from mnemo import crypto, lexical
from mnemo.errors import StoreBusy, StoreError
from mnemo.types import MemoryRecord

logger = logging.getLogger("mnemo.sqlite_store")

# v1: memories_fts without the project_id column
# v2: memories_fts carries project_id UNINDEXED
SCHEMA_VERSION = 2

_REQUIRED_COLUMNS = ("seq", "id", "project_id", "content", "embedding", "metadata", "created_at", "updated_at")

_RECORD_COLUMNS = "id, project_id, content, embedding, metadata, created_at, updated_at"


# ---------------------------------------------------------------------------
# Lock contention. busy_timeout absorbs most of it; past that we retry with
# exponential backoff and then surface StoreBusy (transient) to the caller.
# ---------------------------------------------------------------------------


def _is_locked(e: sqlite3.Error) -> bool:
    msg = str(e).lower()
    return isinstance(e, sqlite3.OperationalError) and ("database is locked" in msg or "database is busy" in msg)


def _retry_on_locked(fn, *args, attempts: int = 3, base_delay: float = 0.1, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if not _is_locked(e):
                raise
            if attempt == attempts - 1:
                raise StoreBusy(f"database is locked after {attempts} attempts") from e
            delay = base_delay * (2 ** attempt)
            logger.warning("database is locked (attempt %d/%d), retrying in %.2fs", attempt + 1, attempts, delay)
            _time.sleep(delay)


def _translate(e: sqlite3.Error) -> StoreError:
    if _is_locked(e):
        return StoreBusy(str(e))
    return StoreError(f"{type(e).__name__}: {e}", transient=False)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_dt(dt: datetime) -> str:
    """UTC ISO-8601 with a fixed microsecond width so text order is time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_dt(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string to an aware UTC datetime.

    Handles naive strings (no tz), Z-suffix, and +00:00 suffix.
    Returns None when *value* is falsy; raises TypeError for non-strings.
    """
    if not value:
        return None
    if not isinstance(value, str):
        raise TypeError(f"expected an ISO datetime string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Insert:
    id: str
    project_id: str
    content: str
    embedding: bytes
    metadata: Optional[Dict[str, Any]]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Update:
    id: str
    project_id: str
    content: str
    embedding: bytes
    metadata: Optional[Dict[str, Any]]
    updated_at: datetime
    replace_metadata: bool = True


@dataclass(frozen=True)
class Delete:
    id: str
    project_id: str


Mutation = Union[Insert, Update, Delete]


def _encode_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
    if metadata is None:
        return None
    return crypto.encrypt(json.dumps(metadata, ensure_ascii=False, sort_keys=True))


def _decode_metadata(raw: Optional[str], memory_id: str) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        return json.loads(crypto.decrypt(raw))
    except ValueError as e:
        raise StoreError(f"unreadable metadata for {memory_id}: {e}", transient=False) from e


def _execute_mutation(conn: sqlite3.Connection, mutation: Mutation) -> int:
    if isinstance(mutation, Insert):
        cur = conn.execute(
            f"INSERT INTO memories ({_RECORD_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                mutation.id,
                mutation.project_id,
                mutation.content,
                mutation.embedding,
                _encode_metadata(mutation.metadata),
                format_dt(mutation.created_at),
                format_dt(mutation.updated_at),
            ),
        )
    elif isinstance(mutation, Update):
        sets = ["content = ?", "embedding = ?", "updated_at = ?"]
        params: List[Any] = [mutation.content, mutation.embedding, format_dt(mutation.updated_at)]
        if mutation.replace_metadata:
            sets.append("metadata = ?")
            params.append(_encode_metadata(mutation.metadata))
        params.extend([mutation.id, mutation.project_id])
        cur = conn.execute(
            f"UPDATE memories SET {', '.join(sets)} WHERE id = ? AND project_id = ?",
            params,
        )
    elif isinstance(mutation, Delete):
        cur = conn.execute(
            "DELETE FROM memories WHERE id = ? AND project_id = ?",
            (mutation.id, mutation.project_id),
        )
    else:
        raise TypeError(f"unknown mutation {mutation!r}")
    return cur.rowcount


# ---------------------------------------------------------------------------
# Read helpers -- run inside Database.read() / write_transaction()
# ---------------------------------------------------------------------------


def row_to_record(row: tuple) -> MemoryRecord:
    """Convert a database row to a MemoryRecord (embedding left as raw bytes)."""
    memory_id, project_id, content, embedding, metadata, created_at, updated_at = row
    return MemoryRecord(
        id=memory_id,
        project_id=project_id,
        content=content,
        embedding=embedding,
        metadata=_decode_metadata(metadata, memory_id),
        created_at=parse_dt(created_at),
        updated_at=parse_dt(updated_at),
    )


def select_record(conn: sqlite3.Connection, memory_id: str, project_id: str) -> Optional[MemoryRecord]:
    row = conn.execute(
        f"SELECT {_RECORD_COLUMNS} FROM memories WHERE id = ? AND project_id = ?",
        (memory_id, project_id),
    ).fetchone()
    return row_to_record(row) if row else None


def select_records(conn: sqlite3.Connection, ids: Sequence[str]) -> Dict[str, MemoryRecord]:
    """Fetch several records by id, chunked under SQLite's variable limit."""
    found: Dict[str, MemoryRecord] = {}
    ids = list(ids)
    for start in range(0, len(ids), 500):
        chunk = ids[start:start + 500]
        placeholders = ",".join("?" * len(chunk))
        for row in conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories WHERE id IN ({placeholders})", chunk
        ).fetchall():
            record = row_to_record(row)
            found[record.id] = record
    return found


def select_scope_vectors(conn: sqlite3.Connection, project_id: str) -> List[Tuple[str, bytes, datetime, str]]:
    """All ``(id, embedding_blob, created_at, content)`` in one project."""
    rows = conn.execute(
        "SELECT id, embedding, created_at, content FROM memories WHERE project_id = ?",
        (project_id,),
    ).fetchall()
    return [(memory_id, blob, parse_dt(created), content) for memory_id, blob, created, content in rows]


def select_recent(conn: sqlite3.Connection, project_id: Optional[str], limit: int) -> List[MemoryRecord]:
    """Newest first; ``project_id=None`` spans every project."""
    if project_id is None:
        rows = conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories ORDER BY created_at DESC, id ASC LIMIT ?",
            (limit,),
        ).fetchall()
    else:
        rows = conn.execute(
            f"""SELECT {_RECORD_COLUMNS} FROM memories WHERE project_id = ?
                ORDER BY created_at DESC, id ASC LIMIT ?""",
            (project_id, limit),
        ).fetchall()
    return [row_to_record(row) for row in rows]


def select_all(conn: sqlite3.Connection, project_id: Optional[str] = None) -> List[MemoryRecord]:
    """Oldest first, for export."""
    if project_id is None:
        rows = conn.execute(f"SELECT {_RECORD_COLUMNS} FROM memories ORDER BY created_at, id").fetchall()
    else:
        rows = conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM memories WHERE project_id = ? ORDER BY created_at, id",
            (project_id,),
        ).fetchall()
    return [row_to_record(row) for row in rows]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """SQLite database holding memories and their FTS5 index."""

    def __init__(
        self,
        db_path: Union[str, Path],
        busy_timeout_ms: int = 5000,
        retries: int = 3,
        retry_base_delay: float = 0.1,
    ):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self._busy_timeout_ms = busy_timeout_ms
        self._retries = retries
        self._retry_base_delay = retry_base_delay
        self._conn = self._connect()
        try:
            self._init_schema()
        except BaseException:
            self._conn.close()
            raise

    def _connect(self) -> sqlite3.Connection:
        """Create a new SQLite connection in autocommit mode; transactions are explicit."""
        try:
            conn = crypto.secure_connect(
                self.db_path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise _translate(e) from e
        return conn

    def _retry(self, fn, *args):
        return _retry_on_locked(fn, *args, attempts=self._retries, base_delay=self._retry_base_delay)

    @contextmanager
    def write_transaction(self) -> Iterator[sqlite3.Connection]:
        """``BEGIN IMMEDIATE`` ... ``COMMIT``; rolls back on any exception."""
        self._retry(self._conn.execute, "BEGIN IMMEDIATE")
        try:
            yield self._conn
            self._retry(self._conn.execute, "COMMIT")
        except sqlite3.Error as e:
            self._rollback()
            raise _translate(e) from e
        except BaseException:
            self._rollback()
            raise

    @contextmanager
    def read_transaction(self) -> Iterator[sqlite3.Connection]:
        """Deferred transaction so multi-statement reads see one snapshot."""
        self._retry(self._conn.execute, "BEGIN")
        try:
            yield self._conn
        except sqlite3.Error as e:
            self._rollback()
            raise _translate(e) from e
        except BaseException:
            self._rollback()
            raise
        else:
            self._conn.execute("COMMIT")

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def read(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run ``fn(conn, *args)`` inside a read transaction."""
        with self.read_transaction() as conn:
            return fn(conn, *args)

    def apply_mutation(self, mutation: Mutation, conn: Optional[sqlite3.Connection] = None) -> int:
        """Apply one insert/update/delete, returning the affected row count.

        With ``conn`` the mutation joins the caller's open write transaction;
        otherwise it runs in a transaction of its own.
        """
        if conn is not None:
            return _execute_mutation(conn, mutation)
        with self.write_transaction() as c:
            return _execute_mutation(c, mutation)

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create tables if they don't exist and migrate older layouts."""
        with self.write_transaction() as c:
            c.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is not None and row[0] > SCHEMA_VERSION:
                raise StoreError(
                    f"database schema v{row[0]} is newer than supported v{SCHEMA_VERSION}",
                    transient=False,
                )

            c.execute("""
                CREATE TABLE IF NOT EXISTS memories (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT UNIQUE NOT NULL,
                    project_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    embedding BLOB NOT NULL,
                    metadata TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            columns = {r[1] for r in c.execute("PRAGMA table_info(memories)").fetchall()}
            missing = [col for col in _REQUIRED_COLUMNS if col not in columns]
            if missing:
                raise StoreError(f"memories table is missing columns: {', '.join(missing)}", transient=False)
            c.execute("CREATE INDEX IF NOT EXISTS idx_memories_project_created ON memories(project_id, created_at)")

            fts_columns = lexical.index_columns(c)
            if fts_columns and "project_id" not in fts_columns:
                self._migrate_lexical_index(c)
            elif not fts_columns:
                self._create_lexical_index(c)
            else:
                lexical.create_index(c)

            if row is None:
                c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row[0] < SCHEMA_VERSION:
                c.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
        logger.debug("Schema ready at %s (v%d)", self.db_path, SCHEMA_VERSION)

    def _create_lexical_index(self, c: sqlite3.Connection) -> None:
        try:
            lexical.create_index(c)
        except sqlite3.OperationalError as e:
            if "fts5" in str(e).lower():
                raise StoreError("SQLite was built without FTS5 support", transient=False) from e
            raise
        mem_count = c.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
        if mem_count:
            lexical.rebuild(c)
            logger.info("Populated FTS5 index with %d existing memories", mem_count)

    def _migrate_lexical_index(self, c: sqlite3.Connection) -> None:
        """Rebuild an FTS table that predates the project_id column."""
        mem_count = c.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
        lexical.drop_index(c)
        lexical.create_index(c)
        lexical.rebuild(c)
        indexed = lexical.indexed_row_count(c)
        if indexed != mem_count:
            raise StoreError(
                f"FTS migration indexed {indexed} of {mem_count} memories; rolled back",
                transient=False,
            )
        logger.info("Schema migrated v1 -> v2: FTS5 index rebuilt with project_id (%d rows)", mem_count)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def count(self, project_id: Optional[str] = None) -> int:
        def _count(conn):
            if project_id is None:
                return conn.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM memories WHERE project_id = ?", (project_id,)).fetchone()[0]

        return self.read(_count)

    def projects(self) -> Dict[str, int]:
        rows = self.read(
            lambda conn: conn.execute(
                "SELECT project_id, COUNT(*) FROM memories GROUP BY project_id ORDER BY project_id"
            ).fetchall()
        )
        return {project_id: n for project_id, n in rows}

    def check_integrity(self) -> Dict[str, Any]:
        """Run SQLite and FTS5 integrity checks and compare index/row counts."""
        report: Dict[str, Any] = {}
        try:
            report["sqlite"] = self._conn.execute("PRAGMA integrity_check").fetchone()[0]
        except sqlite3.Error as e:
            raise _translate(e) from e
        try:
            lexical.integrity_check(self._conn)
            report["fts"] = "ok"
        except sqlite3.DatabaseError as e:
            if _is_locked(e):
                raise _translate(e) from e
            report["fts"] = str(e)
        with self.read_transaction() as c:
            report["rows"] = c.execute("SELECT COUNT(*) FROM memories").fetchone()[0]
            report["indexed"] = lexical.indexed_row_count(c)
        report["ok"] = report["sqlite"] == "ok" and report["fts"] == "ok" and report["rows"] == report["indexed"]
        return report

    def rebuild_lexical_index(self) -> int:
        """Rebuild FTS5 from the primary table; returns the number of indexed rows."""
        with self.write_transaction() as c:
            lexical.rebuild(c)
            indexed = lexical.indexed_row_count(c)
        logger.info("FTS5 index rebuilt (%d rows)", indexed)
        return indexed

    def close(self) -> None:
        """Close the database connection."""
        try:
            self._conn.close()
        except sqlite3.Error as e:
            logger.debug("Database close failed: %s", e)

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
