"""
CLI tests using typer's CliRunner against a lexical-only store.
"""

import json

import pytest
from typer.testing import CliRunner

from recall.cli import _parse_timestamp, _text_content_id, app

runner = CliRunner()


@pytest.fixture
def store(tmp_path):
    return str(tmp_path / "store")


def _run(store, *args):
    return runner.invoke(app, ["--store", store, *args])


def _json(store, *args):
    result = runner.invoke(app, ["--store", store, "--json", *args])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


class TestHelpers:

    def test_content_id(self):
        assert _text_content_id("hello") == "%2cf24dba5fb0"

    def test_parse_timestamp(self):
        assert _parse_timestamp("1700000000") == 1_700_000_000.0
        assert _parse_timestamp("1970-01-02") == 86400.0
        assert _parse_timestamp("1970-01-01T01:00:00+01:00") == 0.0


class TestCommands:

    def test_add_and_get(self, store):
        result = _run(store, "add", "Rough day, the deadline moved up.",
                      "--id", "e1", "-t", "work", "-e", "anxious", "--confidence", "0.8")
        assert result.exit_code == 0, result.output
        assert result.stdout.strip() == "e1"

        doc = _json(store, "get", "e1")
        assert doc["text"] == "Rough day, the deadline moved up."
        assert doc["tags"] == ["work"]
        assert doc["emotion"]["label"] == "anxious"
        assert doc["emotion"]["confidence"] == 0.8
        assert doc["chunks"] == []

    def test_add_default_id_is_content_hash(self, store):
        result = _run(store, "add", "hello")
        assert result.exit_code == 0, result.output
        assert result.stdout.strip() == _text_content_id("hello")

    def test_add_json(self, store):
        info = _json(store, "add", "Typed entry.", "--id", "e1")
        assert info["id"] == "e1"
        assert info["chunks"] == 1
        assert info["embedded"] == 0

    def test_find_uses_full_text_without_provider(self, store):
        _run(store, "add", "Worried about the exam.", "--id", "e1")
        _run(store, "add", "Picnic in the park.", "--id", "e2")
        hits = _json(store, "find", "exam")
        assert [(h["id"], h["source"], h["chunk_id"]) for h in hits] == [("e1", "lexical", None)]
        assert hits[0]["text"] == "Worried about the exam."

    def test_grep(self, store):
        _run(store, "add", "Worried about the exam.", "--id", "e1")
        hits = _json(store, "grep", "exam", "-n", "3")
        assert [h["id"] for h in hits] == ["e1"]

    def test_grep_no_results(self, store):
        _run(store, "add", "Worried about the exam.", "--id", "e1")
        assert _json(store, "grep", "ocean") == []

    def test_tags(self, store):
        _run(store, "add", "At the office.", "--id", "e1", "-t", "work")
        _run(store, "add", "Homework night.", "--id", "e2", "-t", "homework")
        assert _json(store, "tags") == ["homework", "work"]
        assert {h["id"] for h in _json(store, "tags", "work")} == {"e1", "e2"}
        assert [h["id"] for h in _json(store, "tags", "work", "--exact")] == ["e1"]

    def test_emotion(self, store):
        _run(store, "add", "Nervous.", "--id", "e1", "-e", "anxious")
        _run(store, "add", "Happy.", "--id", "e2", "-e", "positive")
        assert [h["id"] for h in _json(store, "emotion", "anxious")] == ["e1"]

    def test_tag_replaces(self, store):
        _run(store, "add", "Entry.", "--id", "e1", "-t", "old")
        result = _run(store, "tag", "e1", "new", "other")
        assert result.exit_code == 0, result.output
        assert _json(store, "get", "e1")["tags"] == ["new", "other"]

    def test_delete(self, store):
        _run(store, "add", "Entry.", "--id", "e1")
        assert _run(store, "del", "e1").exit_code == 0
        assert _run(store, "get", "e1").exit_code == 1
        assert _run(store, "del", "e1").exit_code == 1

    def test_stats(self, store):
        _run(store, "add", "Entry.", "--id", "e1")
        info = _json(store, "stats")
        assert info["documents"] == 1
        assert info["schema_version"] == 2
        assert info["embedding_provider"] is None

    def test_migrate(self, store):
        assert _json(store, "migrate") == {"applied": [1, 2], "version": 2}
        assert _json(store, "migrate") == {"applied": [], "version": 2}

    def test_config(self, store):
        result = _run(store, "config", "search.k")
        assert result.exit_code == 0, result.output
        assert result.stdout.strip() == "5"
        assert _run(store, "config", "nope").exit_code == 1

    def test_pending_without_provider(self, store):
        info = _json(store, "pending")
        assert info["processed"] == 0
