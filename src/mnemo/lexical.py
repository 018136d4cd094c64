"""
mnemo lexical index -- BM25 keyword ranking backed by SQLite FTS5.

The index is an external-content FTS5 table over ``memories``. Triggers
update it inside the same statement as the primary row, so a committed
transaction never holds one without the other.
"""

import logging
import re
import sqlite3
from typing import List, Optional, Tuple

logger = logging.getLogger("mnemo.lexical")

FTS_TABLE = "memories_fts"

_WORD_RE = re.compile(r"\w+", re.UNICODE)

_CREATE_FTS = f"""
    CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
        content,
        project_id UNINDEXED,
        content='memories',
        content_rowid='seq',
        tokenize='porter unicode61'
    )
"""

_TRIGGERS = {
    "memories_ai": f"""
        CREATE TRIGGER IF NOT EXISTS memories_ai AFTER INSERT ON memories BEGIN
            INSERT INTO {FTS_TABLE}(rowid, content, project_id)
            VALUES (new.seq, new.content, new.project_id);
        END
    """,
    "memories_ad": f"""
        CREATE TRIGGER IF NOT EXISTS memories_ad AFTER DELETE ON memories BEGIN
            INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content, project_id)
            VALUES ('delete', old.seq, old.content, old.project_id);
        END
    """,
    "memories_au": f"""
        CREATE TRIGGER IF NOT EXISTS memories_au AFTER UPDATE OF content, project_id ON memories BEGIN
            INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content, project_id)
            VALUES ('delete', old.seq, old.content, old.project_id);
            INSERT INTO {FTS_TABLE}(rowid, content, project_id)
            VALUES (new.seq, new.content, new.project_id);
        END
    """,
}


def create_index(conn: sqlite3.Connection) -> None:
    """Create the FTS5 table and its sync triggers if missing."""
    conn.execute(_CREATE_FTS)
    for sql in _TRIGGERS.values():
        conn.execute(sql)


def drop_index(conn: sqlite3.Connection) -> None:
    for name in _TRIGGERS:
        conn.execute(f"DROP TRIGGER IF EXISTS {name}")
    conn.execute(f"DROP TABLE IF EXISTS {FTS_TABLE}")


def index_columns(conn: sqlite3.Connection) -> List[str]:
    """Column names of the FTS table, or [] when it does not exist."""
    return [row[1] for row in conn.execute(f"PRAGMA table_info({FTS_TABLE})").fetchall()]


def rebuild(conn: sqlite3.Connection) -> None:
    """Repopulate the index from the primary table."""
    conn.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('rebuild')")


def integrity_check(conn: sqlite3.Connection) -> None:
    """Run FTS5's own consistency check; raises sqlite3.DatabaseError on failure."""
    conn.execute(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('integrity-check')")


def indexed_row_count(conn: sqlite3.Connection) -> int:
    """Number of documents the index actually holds.

    ``SELECT COUNT(*)`` on an external-content table reads the content
    table, so the docsize shadow table is counted instead.
    """
    return conn.execute(f"SELECT COUNT(*) FROM {FTS_TABLE}_docsize").fetchone()[0]


def build_match_query(text: str) -> Optional[str]:
    """Turn free text into an FTS5 MATCH expression.

    Each word is quoted so FTS5 operators in user text are inert; words are
    OR-ed so any overlap matches and BM25 orders by how much. Returns None
    when the text has no indexable words.
    """
    words = _WORD_RE.findall(text.lower())
    if not words:
        return None
    seen = []
    for w in words:
        if w not in seen:
            seen.append(w)
    return " OR ".join(f'"{w}"' for w in seen)


def search(conn: sqlite3.Connection, query: str, project_id: str, limit: int) -> List[Tuple[str, float]]:
    """Return ``[(id, score), ...]`` best first, within one project.

    ``score`` is the negated FTS5 ``bm25()`` value so that larger is better.
    Empty queries and queries without matches return [].
    """
    match = build_match_query(query or "")
    if match is None:
        return []
    rows = conn.execute(
        f"""SELECT m.id, bm25({FTS_TABLE}) AS rank
            FROM {FTS_TABLE}
            JOIN memories m ON m.seq = {FTS_TABLE}.rowid
            WHERE {FTS_TABLE} MATCH ? AND m.project_id = ?
            ORDER BY rank ASC, m.id ASC
            LIMIT ?""",
        (match, project_id, limit),
    ).fetchall()
    logger.debug("lexical search %r matched %d rows", match, len(rows))
    return [(memory_id, -rank) for memory_id, rank in rows]
