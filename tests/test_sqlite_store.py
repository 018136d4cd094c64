"""Tests for mnemo.sqlite_store -- schema, transactions, locking, integrity."""
import json
import sqlite3
import stat
from datetime import datetime, timezone

import pytest

from conftest import hash_vector
from mnemo import codec, lexical
from mnemo.errors import StoreBusy, StoreError
from mnemo.sqlite_store import (
    SCHEMA_VERSION,
    Database,
    Delete,
    Insert,
    Update,
    format_dt,
    parse_dt,
    select_record,
    select_recent,
)

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _insert(db, memory_id, content="some memory", project_id="P", metadata=None, created=T0):
    return db.apply_mutation(
        Insert(memory_id, project_id, content, codec.encode(hash_vector(content)), metadata, created, created)
    )


class TestSchema:
    def test_creates_tables_and_version(self, db):
        with db.read_transaction() as c:
            tables = {r[0] for r in c.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'trigger')")}
            version = c.execute("SELECT version FROM schema_version").fetchone()[0]
        assert {"memories", "memories_fts", "schema_version", "memories_ai", "memories_ad", "memories_au"} <= tables
        assert version == SCHEMA_VERSION

    def test_fts_has_project_column(self, db):
        assert db.read(lexical.index_columns) == ["content", "project_id"]

    def test_reopen_is_idempotent(self, tmp_mnemo_dir, db):
        _insert(db, "m1")
        db.close()
        with Database(tmp_mnemo_dir / "test.db") as again:
            assert again.count() == 1
            assert again.read(lexical.indexed_row_count) == 1

    def test_db_file_is_private(self, db):
        mode = db.db_path.stat().st_mode
        assert not mode & (stat.S_IRWXG | stat.S_IRWXO)

    def test_newer_schema_is_structural_error(self, tmp_mnemo_dir, db):
        db.close()
        conn = sqlite3.connect(tmp_mnemo_dir / "test.db")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION + 1,))
        conn.commit()
        conn.close()
        with pytest.raises(StoreError) as exc:
            Database(tmp_mnemo_dir / "test.db")
        assert exc.value.transient is False
        assert "newer" in str(exc.value)

    def test_missing_columns_is_structural_error(self, tmp_mnemo_dir):
        path = tmp_mnemo_dir / "old.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE memories (id TEXT PRIMARY KEY, content TEXT)")
        conn.commit()
        conn.close()
        with pytest.raises(StoreError) as exc:
            Database(path)
        assert exc.value.transient is False
        assert "missing columns" in str(exc.value)

    def test_migrates_fts_without_project_id(self, tmp_mnemo_dir, db):
        _insert(db, "a1", "Alice works at Microsoft", project_id="A")
        _insert(db, "b1", "Bob works at Google", project_id="B")
        db.close()

        # rewind to the v1 layout: FTS table without project_id
        conn = sqlite3.connect(tmp_mnemo_dir / "test.db")
        for trig in ("memories_ai", "memories_ad", "memories_au"):
            conn.execute(f"DROP TRIGGER {trig}")
        conn.execute("DROP TABLE memories_fts")
        conn.execute(
            "CREATE VIRTUAL TABLE memories_fts USING fts5(content, content='memories', content_rowid='seq')"
        )
        conn.execute("INSERT INTO memories_fts(memories_fts) VALUES('rebuild')")
        conn.execute("UPDATE schema_version SET version = 1")
        conn.commit()
        conn.close()

        with Database(tmp_mnemo_dir / "test.db") as migrated:
            assert migrated.read(lexical.index_columns) == ["content", "project_id"]
            assert migrated.read(lexical.indexed_row_count) == 2
            assert [r[0] for r in migrated.read(lexical.search, "works", "A", 10)] == ["a1"]
            version = migrated.read(lambda c: c.execute("SELECT version FROM schema_version").fetchone()[0])
            assert version == SCHEMA_VERSION


class TestMutations:
    def test_insert_and_select(self, db):
        _insert(db, "m1", "hello world", metadata={"tag": "x"})
        record = db.read(select_record, "m1", "P")
        assert record.content == "hello world"
        assert record.metadata == {"tag": "x"}
        assert record.created_at == T0
        assert codec.decode(record.embedding) == hash_vector("hello world")

    def test_select_is_project_scoped(self, db):
        _insert(db, "m1")
        assert db.read(select_record, "m1", "other") is None

    def test_update_returns_rowcount(self, db):
        _insert(db, "m1")
        blob = codec.encode(hash_vector("new"))
        assert db.apply_mutation(Update("m1", "P", "new", blob, None, T0)) == 1
        assert db.apply_mutation(Update("nope", "P", "new", blob, None, T0)) == 0
        assert db.apply_mutation(Update("m1", "other", "new", blob, None, T0)) == 0

    def test_update_keeps_metadata_unless_replaced(self, db):
        _insert(db, "m1", metadata={"keep": True})
        blob = codec.encode(hash_vector("new"))
        db.apply_mutation(Update("m1", "P", "new", blob, None, T0, replace_metadata=False))
        assert db.read(select_record, "m1", "P").metadata == {"keep": True}
        db.apply_mutation(Update("m1", "P", "newer", blob, {"v": 2}, T0))
        assert db.read(select_record, "m1", "P").metadata == {"v": 2}

    def test_delete_returns_rowcount(self, db):
        _insert(db, "m1")
        assert db.apply_mutation(Delete("m1", "other")) == 0
        assert db.apply_mutation(Delete("m1", "P")) == 1
        assert db.apply_mutation(Delete("m1", "P")) == 0

    def test_duplicate_id_is_store_error(self, db):
        _insert(db, "m1")
        with pytest.raises(StoreError) as exc:
            _insert(db, "m1", project_id="other")
        assert exc.value.transient is False
        assert db.count() == 1

    def test_recent_is_newest_first(self, db):
        for day in (3, 1, 2):
            _insert(db, f"m{day}", f"memory {day}", created=T0.replace(day=day))
        assert [r.id for r in db.read(select_recent, "P", 10)] == ["m3", "m2", "m1"]
        assert [r.id for r in db.read(select_recent, "P", 2)] == ["m3", "m2"]

    def test_projects_counts(self, db):
        _insert(db, "a1", project_id="A")
        _insert(db, "a2", "other", project_id="A")
        _insert(db, "b1", project_id="B")
        assert db.projects() == {"A": 2, "B": 1}
        assert db.count("A") == 2
        assert db.count() == 3


class TestTransactions:
    def test_failed_transaction_leaves_nothing_behind(self, db):
        with pytest.raises(RuntimeError):
            with db.write_transaction() as conn:
                _ = db.apply_mutation(
                    Insert("m1", "P", "half written", codec.encode(hash_vector("x")), None, T0, T0),
                    conn=conn,
                )
                raise RuntimeError("boom")
        assert db.count() == 0
        assert db.read(lexical.indexed_row_count) == 0
        assert db.read(lexical.search, "written", "P", 10) == []

    def test_lock_contention_is_transient_store_busy(self, db):
        other = sqlite3.connect(db.db_path, isolation_level=None)
        other.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(StoreBusy) as exc:
                _insert(db, "m1")
            assert exc.value.transient is True
        finally:
            other.execute("ROLLBACK")
            other.close()
        _insert(db, "m1")
        assert db.count() == 1

    def test_readers_see_committed_state_only(self, db):
        _insert(db, "m1")
        with db.write_transaction() as conn:
            db.apply_mutation(Delete("m1", "P"), conn=conn)
            reader = sqlite3.connect(db.db_path)
            try:
                assert reader.execute("SELECT COUNT(*) FROM memories").fetchone()[0] == 1
            finally:
                reader.close()
        assert db.count() == 0


class TestIntegrity:
    def test_clean_database_passes(self, db):
        _insert(db, "m1")
        report = db.check_integrity()
        assert report["ok"] is True
        assert report["sqlite"] == "ok"
        assert report["fts"] == "ok"
        assert report["rows"] == report["indexed"] == 1

    def test_drift_detected_and_repaired(self, db):
        _insert(db, "m1", "alpha")
        _insert(db, "m2", "beta")
        # simulate drift: row added behind the triggers' back
        with db.write_transaction() as c:
            c.execute("DROP TRIGGER memories_ai")
            c.execute(
                "INSERT INTO memories (id, project_id, content, embedding, created_at, updated_at) "
                "VALUES ('m3', 'P', 'gamma', ?, ?, ?)",
                (codec.encode(hash_vector("gamma")), format_dt(T0), format_dt(T0)),
            )
            lexical.create_index(c)
        assert db.check_integrity()["ok"] is False
        assert db.rebuild_lexical_index() == 3
        assert db.check_integrity()["ok"] is True


class TestMetadataEncryption:
    def test_metadata_encrypted_at_rest(self, tmp_mnemo_dir_encrypted):
        with Database(tmp_mnemo_dir_encrypted / "enc.db") as db:
            _insert(db, "m1", metadata={"secret": "value"})
            raw = db.read(lambda c: c.execute("SELECT metadata FROM memories").fetchone()[0])
            assert raw.startswith("ENC:")
            assert "value" not in raw
            assert db.read(select_record, "m1", "P").metadata == {"secret": "value"}

    def test_plaintext_when_disabled(self, db):
        _insert(db, "m1", metadata={"a": 1})
        raw = db.read(lambda c: c.execute("SELECT metadata FROM memories").fetchone()[0])
        assert json.loads(raw) == {"a": 1}


class TestTimestamps:
    def test_format_is_fixed_width_utc(self):
        assert format_dt(T0) == "2026-01-01T00:00:00.000000+00:00"

    def test_parse_variants(self):
        assert parse_dt("2026-01-01T00:00:00Z") == T0
        assert parse_dt("2026-01-01T00:00:00") == T0
        assert parse_dt("2026-01-01T01:00:00+01:00") == T0
        assert parse_dt(None) is None

    def test_parse_rejects_non_strings(self):
        with pytest.raises(TypeError):
            parse_dt(1700000000)
