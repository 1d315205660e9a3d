from __future__ import annotations

import orjson
from click.testing import CliRunner

from mce.cli import main
from mce.storage.sqlite_store import MemoryStore
from mce.types import MemoryRecord


def _invoke(tmp_path, *args: str):
    runner = CliRunner()
    return runner.invoke(main, ["--data-dir", str(tmp_path), "--embed-provider", "hash", *args])


def _json_line(output: str) -> dict:
    line = next(ln for ln in output.splitlines() if ln.startswith("{"))
    return orjson.loads(line)


def test_store_without_llm_key_falls_back_then_retrieves(tmp_path):
    result = _invoke(tmp_path, "store", "u1", "My favorite color is teal", "--reply", "Teal is nice.")
    assert result.exit_code == 0, result.output
    assert "Action: fallback" in result.output
    assert "Memory ID: 1" in result.output

    result = _invoke(tmp_path, "retrieve", "u1", "favorite color", "--json")
    assert result.exit_code == 0, result.output
    payload = _json_line(result.output)
    assert payload["fallback_used"] is False
    assert payload["records"][0]["content"].startswith("User: My favorite color is teal")

    result = _invoke(tmp_path, "status")
    assert result.exit_code == 0, result.output
    assert "Memories:          1" in result.output
    assert "Unique current:    not enforced" in result.output


def test_retrieve_with_no_memories(tmp_path):
    result = _invoke(tmp_path, "retrieve", "u1", "anything at all")
    assert result.exit_code == 0, result.output
    assert "No memories found." in result.output


def test_dedupe_and_enforce_unique(tmp_path):
    store = MemoryStore(tmp_path / "db" / "memories.db")
    store.insert(MemoryRecord(user_id="u1", content="Email: a@example.com.", fact_fingerprint="user_email"))
    store.insert(MemoryRecord(user_id="u1", content="Email: b@example.com.", fact_fingerprint="user_email"))
    store.close()

    result = _invoke(tmp_path, "dedupe-current")
    assert result.exit_code == 0, result.output
    assert "Retired 1 duplicate current record(s)" in result.output

    result = _invoke(tmp_path, "enforce-unique")
    assert result.exit_code == 0, result.output
    assert "Retired 0 duplicate current record(s)" in result.output
    assert "Unique current-fingerprint index installed" in result.output

    result = _invoke(tmp_path, "status", "--user", "u1")
    assert "Unique current:    enforced" in result.output
    assert "Superseded:        1" in result.output


def test_backfill_reports_counts(tmp_path):
    store = MemoryStore(tmp_path / "db" / "memories.db")
    store.insert(MemoryRecord(user_id="u1", content="Dog named Rex."))
    store.close()

    result = _invoke(tmp_path, "backfill", "--limit", "5")
    assert result.exit_code == 0, result.output
    assert "Processed: 1" in result.output
    assert "Succeeded: 1" in result.output
    assert "Remaining:   0" in result.output
