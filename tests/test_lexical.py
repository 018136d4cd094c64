"""Tests for mnemo.lexical -- FTS5 index kept in step with the primary table."""
from datetime import datetime, timezone

import pytest

from conftest import hash_vector
from mnemo import codec, lexical
from mnemo.sqlite_store import Delete, Insert, Update

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _insert(db, memory_id, content, project_id="P"):
    db.apply_mutation(
        Insert(memory_id, project_id, content, codec.encode(hash_vector(content)), None, T0, T0)
    )


def _search(db, query, project_id="P", limit=10):
    return db.read(lexical.search, query, project_id, limit)


class TestMatchQuery:
    def test_words_are_quoted_and_ored(self):
        assert lexical.build_match_query("Alice Microsoft") == '"alice" OR "microsoft"'

    def test_operators_are_inert(self):
        q = lexical.build_match_query('NOT alice AND (bob* OR "carol')
        assert q == '"not" OR "alice" OR "and" OR "bob" OR "or" OR "carol"'

    def test_repeated_words_once(self):
        assert lexical.build_match_query("rust rust Rust") == '"rust"'

    @pytest.mark.parametrize("text", ["", "   ", "?!-*()", '""'])
    def test_no_words(self, text):
        assert lexical.build_match_query(text) is None

    def test_deterministic(self):
        text = "The quick brown fox, jumping over lazy dogs!"
        assert lexical.build_match_query(text) == lexical.build_match_query(text)


class TestSearch:
    def test_finds_keyword_matches_best_first(self, db):
        _insert(db, "m1", "Alice works at Microsoft")
        _insert(db, "m2", "Bob likes sailing")
        _insert(db, "m3", "Microsoft Microsoft Microsoft quarterly report")
        results = _search(db, "microsoft")
        ids = [r[0] for r in results]
        assert set(ids) == {"m1", "m3"}
        scores = [r[1] for r in results]
        assert scores == sorted(scores, reverse=True)
        assert all(s > 0 for s in scores)

    def test_stemming(self, db):
        _insert(db, "m1", "She was running every morning")
        assert [r[0] for r in _search(db, "runs")] == ["m1"]

    def test_empty_query_and_no_match(self, db):
        _insert(db, "m1", "Alice works at Microsoft")
        assert _search(db, "") == []
        assert _search(db, "!!!") == []
        assert _search(db, "zebra") == []

    def test_special_characters_do_not_break_query(self, db):
        _insert(db, "m1", "use C++ and AND-gates")
        assert [r[0] for r in _search(db, 'AND "gates" (c++')] == ["m1"]

    def test_scoped_to_project(self, db):
        _insert(db, "a1", "Alice works at Microsoft", project_id="A")
        _insert(db, "b1", "Alice works at Microsoft", project_id="B")
        assert [r[0] for r in _search(db, "alice", project_id="A")] == ["a1"]
        assert [r[0] for r in _search(db, "alice", project_id="B")] == ["b1"]
        assert _search(db, "alice", project_id="C") == []

    def test_limit(self, db):
        for i in range(5):
            _insert(db, f"m{i}", f"note number {i} about kafka")
        assert len(_search(db, "kafka", limit=3)) == 3


class TestConsistency:
    def test_update_reindexes(self, db):
        _insert(db, "m1", "Alice works at Microsoft")
        db.apply_mutation(
            Update("m1", "P", "Alice moved to Google", codec.encode(hash_vector("x")), None, T0)
        )
        assert _search(db, "microsoft") == []
        assert [r[0] for r in _search(db, "google")] == ["m1"]

    def test_delete_removes_entry(self, db):
        _insert(db, "m1", "Alice works at Microsoft")
        db.apply_mutation(Delete("m1", "P"))
        assert _search(db, "alice") == []
        assert db.read(lexical.indexed_row_count) == 0

    def test_index_count_tracks_rows(self, db):
        for i in range(4):
            _insert(db, f"m{i}", f"memory {i}")
        db.apply_mutation(Delete("m2", "P"))
        assert db.read(lexical.indexed_row_count) == 3
        assert db.count() == 3
