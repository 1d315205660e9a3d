from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from mce.config import SupersessionConfig
from mce.exceptions import SupersessionError
from mce.storage.sqlite_store import MemoryStore
from mce.types import EmbeddingStatus, MemoryRecord


def _rec(content: str, user_id: str = "u1", fingerprint: str | None = None, **kwargs) -> MemoryRecord:
    return MemoryRecord(user_id=user_id, content=content, fact_fingerprint=fingerprint, **kwargs)


def test_insert_and_get_roundtrip(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        rid = store.insert(_rec("Salary: 55k.", fingerprint="user_salary", metadata={"storage_version": "intelligent_v1"}))
        got = store.get(rid)
        assert got is not None
        assert got.content == "Salary: 55k."
        assert got.is_current is True
        assert got.fact_fingerprint == "user_salary"
        assert got.storage_version == "intelligent_v1"
        assert got.embedding is None
        assert store.get(rid + 100) is None
    finally:
        store.close()


def test_concurrent_boosts_lose_no_updates(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        rid = store.insert(_rec("Favorite color: teal."))
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: store.boost(rid), range(40)))
        assert all(results)
        got = store.get(rid)
        assert got.usage_frequency == 40
        assert got.relevance_score == pytest.approx(1.0)
    finally:
        store.close()


def test_boost_ignores_retired_rows(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        old = store.insert(_rec("Salary: 55k.", fingerprint="user_salary"))
        store.insert_superseding(_rec("Salary: 90k.", fingerprint="user_salary"), by_fingerprint=True)
        assert store.boost(old) is False
        assert store.get(old).usage_frequency == 0
    finally:
        store.close()


def test_supersession_leaves_one_current_record(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        old = store.insert(_rec("Salary: 55k.", fingerprint="user_salary"))
        new, retired = store.insert_superseding(
            _rec("Salary: 90k.", fingerprint="user_salary"), by_fingerprint=True
        )
        assert retired == [old]
        current = store.list_current("u1", fingerprint="user_salary")
        assert [r.content for r in current] == ["Salary: 90k."]
        stale = store.get(old)
        assert stale.is_current is False
        assert stale.superseded_by == new
        assert stale.superseded_at is not None
    finally:
        store.close()


def test_explicit_supersede_ids_are_scoped_to_user(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        mine = store.insert(_rec("Meeting: 3pm."))
        theirs = store.insert(_rec("Meeting: 3pm.", user_id="u2"))
        _, retired = store.insert_superseding(_rec("Meeting: 4pm."), supersede_ids=[mine, theirs])
        assert retired == [mine]
        assert store.get(theirs).is_current is True
    finally:
        store.close()


def test_cleanup_and_unique_constraint(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        first = store.insert(_rec("Email: a@example.com.", fingerprint="user_email"))
        second = store.insert(_rec("Email: b@example.com.", fingerprint="user_email"))
        store.insert(_rec("Untyped fact one."))
        store.insert(_rec("Untyped fact two."))
        assert store.cleanup_duplicate_current() == [first]
        assert store.get(first).superseded_by == second

        assert store.has_unique_current_index() is False
        assert store.create_supersession_constraint() == []
        assert store.has_unique_current_index() is True

        with pytest.raises(sqlite3.IntegrityError):
            store.insert(_rec("Email: c@example.com.", fingerprint="user_email"))
        with pytest.raises(SupersessionError):
            store.insert_superseding(_rec("Email: c@example.com.", fingerprint="user_email"))
        _, retired = store.insert_superseding(
            _rec("Email: c@example.com.", fingerprint="user_email"), by_fingerprint=True
        )
        assert retired == [second]
    finally:
        store.close()


def test_unique_constraint_from_config(tmp_path):
    store = MemoryStore(tmp_path / "m.db", SupersessionConfig(enforce_unique_current=True))
    try:
        assert store.stats()["unique_current_enforced"] is True
    finally:
        store.close()


def test_nearest_is_distance_ascending_and_current_only(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        far = store.insert(_rec("far", embedding=[0.0, 1.0]))
        near = store.insert(_rec("near", embedding=[1.0, 0.0]))
        mid = store.insert(_rec("mid", embedding=[0.9, 0.1]))
        store.insert(_rec("other category", category="work", embedding=[1.0, 0.0]))
        store.insert(_rec("unembedded"))

        hits = store.nearest("u1", "general", np.array([1.0, 0.0], dtype=np.float32))
        assert [h.record.id for h in hits] == [near, mid, far]
        assert hits[0].distance == pytest.approx(0.0, abs=1e-6)

        store.insert_superseding(_rec("replacement"), supersede_ids=[near])
        hits = store.nearest("u1", "general", np.array([1.0, 0.0], dtype=np.float32))
        assert near not in [h.record.id for h in hits]
    finally:
        store.close()


def test_embedding_status_and_stats(tmp_path):
    store = MemoryStore(tmp_path / "m.db")
    try:
        a = store.insert(_rec("pending fact"))
        b = store.insert(_rec("failed fact"))
        store.insert(_rec("someone else's fact", user_id="u2"))
        store.set_embedding(b, None, EmbeddingStatus.FAILED)
        assert [r.id for r in store.pending_embeddings()] == [a, b, b + 1]

        store.set_embedding(a, np.array([0.6, 0.8], dtype=np.float32), EmbeddingStatus.READY, "hash-32")
        got = store.get(a, with_embedding=True)
        assert got.embedding_status == EmbeddingStatus.READY
        assert got.embedding_model == "hash-32"
        assert got.embedding == pytest.approx([0.6, 0.8])

        st = store.stats("u1")
        assert st["memories"] == 2
        assert st["with_embeddings"] == 1
        assert st["failed_embeddings"] == 1
        assert st["embedding_coverage"] == 0.5
        assert store.stats()["users"] == 2
    finally:
        store.close()
