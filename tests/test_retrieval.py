from __future__ import annotations

import asyncio

import numpy as np
import pytest

from mce.config import EmbeddingConfig, RetrievalConfig
from mce.embeddings.backends import HashEmbedder, create_embedder
from mce.exceptions import ConfigError
from mce.llm import create_chat_backend
from mce.retrieval import RetrievalRanker, keyword_overlap
from mce.storage import EmbeddingWriter, MemoryStore
from mce.types import EmbeddingStatus, MemoryRecord


class _BrokenEmbedder:
    model = "broken"

    async def embed(self, texts: list[str]) -> np.ndarray:
        raise RuntimeError("provider down")

    async def embed_single(self, text: str) -> np.ndarray:
        raise RuntimeError("provider down")

    async def close(self) -> None:
        return None


class _SlowEmbedder(_BrokenEmbedder):
    async def embed_single(self, text: str) -> np.ndarray:
        await asyncio.sleep(1.0)
        return np.ones((8,), dtype=np.float32)


def _ranker(store: MemoryStore, embedder, **cfg) -> RetrievalRanker:
    writer = EmbeddingWriter(store, embedder)
    return RetrievalRanker(store, writer, RetrievalConfig(**cfg))


async def _insert_embedded(store: MemoryStore, embedder: HashEmbedder, content: str, **kwargs) -> int:
    vec = await embedder.embed_single(content)
    return store.insert(MemoryRecord(user_id="u1", content=content, embedding=vec.tolist(), **kwargs))


def test_keyword_overlap_ratio():
    assert keyword_overlap(["favorite", "color"], "Favorite color: blue.") == 1.0
    assert keyword_overlap(["favorite", "food"], "Favorite color: blue.") == 0.5
    assert keyword_overlap([], "anything") == 0.0


def test_vector_ranking_puts_closest_record_first(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        embedder = HashEmbedder(dims=1024)
        try:
            await _insert_embedded(store, embedder, "Salary: 90k.")
            color = await _insert_embedded(store, embedder, "Favorite color: blue.")
            await _insert_embedded(store, embedder, "Dog named Rex.")
            result = await _ranker(store, embedder).retrieve("u1", "what is my favorite color")
            assert result.fallback_used is False
            assert result.records[0].id == color
            assert result.records[0].score is not None
            assert result.telemetry["method"] == "vector"
            assert result.telemetry["candidates"] == 3
            assert result.telemetry["vectors_compared"] == 3
            assert len(result.records) < 3
        finally:
            store.close()

    asyncio.run(_run())


def test_keyword_fallback_when_embedding_fails(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        try:
            store.insert(MemoryRecord(user_id="u1", content="Favorite color: blue."))
            store.insert(MemoryRecord(user_id="u1", content="Dog named Rex."))
            result = await _ranker(store, _BrokenEmbedder()).retrieve("u1", "favorite color")
            assert result.fallback_used is True
            assert result.telemetry["method"] == "keyword_fallback"
            assert "provider down" in result.telemetry["fallback_reason"]
            assert [r.content for r in result.records] == ["Favorite color: blue."]
        finally:
            store.close()

    asyncio.run(_run())


def test_explicit_records_outrank_plain_overlap(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        try:
            store.insert(MemoryRecord(user_id="u1", content="Favorite color: blue."))
            explicit = store.insert(MemoryRecord(
                user_id="u1",
                content="Remember this: favorite food is pizza",
                metadata={"explicit_storage_request": True},
            ))
            result = await _ranker(store, _BrokenEmbedder()).retrieve("u1", "favorite food")
            assert result.records[0].id == explicit
        finally:
            store.close()

    asyncio.run(_run())


def test_token_budget_and_top_k_cap_selection(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        try:
            for i in range(5):
                store.insert(MemoryRecord(user_id="u1", content=f"Hiking trail note {i}", token_count=50))
            ranker = _ranker(store, _BrokenEmbedder())

            result = await ranker.retrieve("u1", "hiking trail", token_budget=120)
            assert len(result.records) == 2
            assert result.tokens_used == 100
            assert result.telemetry["budget_exhausted"] is True

            result = await ranker.retrieve("u1", "hiking trail", top_k=1)
            assert len(result.records) == 1
        finally:
            store.close()

    asyncio.run(_run())


def test_superseded_records_are_not_returned(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        try:
            store.insert(MemoryRecord(user_id="u1", content="Salary: 55k.", fact_fingerprint="user_salary"))
            store.insert_superseding(
                MemoryRecord(user_id="u1", content="Salary: 90k.", fact_fingerprint="user_salary"),
                by_fingerprint=True,
            )
            result = await _ranker(store, _BrokenEmbedder()).retrieve("u1", "salary")
            assert [r.content for r in result.records] == ["Salary: 90k."]
            assert result.telemetry["superseded_filtered"] == 1
        finally:
            store.close()

    asyncio.run(_run())


def test_empty_query_returns_nothing(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        try:
            store.insert(MemoryRecord(user_id="u1", content="Favorite color: blue."))
            result = await _ranker(store, HashEmbedder(dims=64)).retrieve("u1", "   ")
            assert result.records == []
            assert result.telemetry["method"] == "empty_query"
        finally:
            store.close()

    asyncio.run(_run())


def test_embedding_timeout_leaves_record_pending_and_backfill_recovers(tmp_path):
    async def _run() -> None:
        store = MemoryStore(tmp_path / "m.db")
        try:
            rid = store.insert(MemoryRecord(user_id="u1", content="Dog named Rex."))
            slow = EmbeddingWriter(store, _SlowEmbedder(), EmbeddingConfig(background_timeout=0.05))
            task = slow.attach_background(rid, "Dog named Rex.")
            await slow.drain()
            assert task.result() == EmbeddingStatus.PENDING
            assert store.get(rid).embedding_status == EmbeddingStatus.PENDING

            broken = EmbeddingWriter(store, _BrokenEmbedder())
            assert await broken.attach_sync(rid, "Dog named Rex.") == EmbeddingStatus.FAILED

            writer = EmbeddingWriter(store, HashEmbedder(dims=64))
            counts = await writer.backfill(limit=10)
            assert counts == {"processed": 1, "succeeded": 1, "pending": 0, "failed": 0, "remaining": 0}
            assert store.get(rid).embedding_status == EmbeddingStatus.READY
        finally:
            store.close()

    asyncio.run(_run())


def test_unknown_providers_raise_config_error():
    with pytest.raises(ConfigError):
        create_embedder(EmbeddingConfig(provider="nope"))
    with pytest.raises(ValueError):
        create_chat_backend("nope")
    assert isinstance(create_embedder(EmbeddingConfig(provider="hash", dims=64)), HashEmbedder)


def test_hash_embedder_is_deterministic_and_unit_length():
    async def _run() -> None:
        embedder = HashEmbedder(dims=256)
        assert embedder.features("Favorite color: Blue") == ["favorite", "color", "blue", "favorite color", "color blue"]
        a, b = await embedder.embed(["Favorite color: blue.", "favorite COLOR blue"])
        assert np.allclose(a, b)
        assert float(np.linalg.norm(a)) == pytest.approx(1.0, abs=1e-5)
        assert not (await embedder.embed_single("")).any()
        assert (await embedder.embed([])).shape == (0, 256)

    asyncio.run(_run())
