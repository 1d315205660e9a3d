"""Embedding lifecycle: attach vectors to stored records, now or in the background."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import numpy as np
import structlog

from mce.config import EmbeddingConfig
from mce.degrade import DegradePolicy, Outcome
from mce.embeddings.backends import EmbeddingBackend
from mce.storage.sqlite_store import MemoryStore
from mce.types import EmbeddingStatus

logger = structlog.get_logger(__name__)


class EmbeddingWriter:
    """Generates embeddings under a timeout and records the resulting status.

    A record whose embedding times out stays ``pending`` and is picked up
    again by :meth:`backfill`; a hard provider error marks it ``failed``
    (backfill retries those too). Neither ever blocks the stored fact.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingBackend | None,
        config: EmbeddingConfig | None = None,
        policy: DegradePolicy | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.config = config or EmbeddingConfig()
        self.policy = policy or DegradePolicy()
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def model(self) -> str:
        return str(getattr(self.embedder, "model", "")) if self.embedder else ""

    async def embed_text(self, text: str, timeout: float | None = None) -> Outcome[np.ndarray]:
        if self.embedder is None:
            return self.policy.record("embedding", "no embedding backend configured")
        payload = (text or "")[: self.config.max_content_chars]
        return await self.policy.run(
            "embedding",
            lambda: self.embedder.embed_single(payload),  # type: ignore[union-attr]
            timeout=self.config.timeout if timeout is None else timeout,
        )

    def attach_vector(self, memory_id: int, vector: np.ndarray) -> None:
        self.store.set_embedding(memory_id, vector, EmbeddingStatus.READY, self.model)

    async def attach_sync(self, memory_id: int, content: str, timeout: float | None = None) -> EmbeddingStatus:
        outcome = await self.embed_text(content, timeout=timeout)
        return self._record(memory_id, outcome)

    def attach_background(self, memory_id: int, content: str) -> asyncio.Task[EmbeddingStatus]:
        task = asyncio.get_running_loop().create_task(
            self.attach_sync(memory_id, content, timeout=self.config.background_timeout)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight background attaches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def backfill(self, limit: int = 20, max_seconds: float = 20.0) -> dict[str, Any]:
        started = time.monotonic()
        counts = {"processed": 0, "succeeded": 0, "pending": 0, "failed": 0}
        for record in self.store.pending_embeddings(limit=limit):
            if time.monotonic() - started > max_seconds:
                break
            status = await self.attach_sync(
                int(record.id), record.content, timeout=self.config.backfill_timeout  # type: ignore[arg-type]
            )
            counts["processed"] += 1
            counts["succeeded" if status is EmbeddingStatus.READY else status.value] += 1
        counts["remaining"] = len(self.store.pending_embeddings(limit=10_000))
        logger.info("embedding_backfill", **counts)
        return counts

    def _record(self, memory_id: int, outcome: Outcome[np.ndarray]) -> EmbeddingStatus:
        if outcome.ok and outcome.value is not None:
            self.attach_vector(memory_id, outcome.value)
            return EmbeddingStatus.READY
        status = EmbeddingStatus.PENDING if outcome.reason.startswith("timeout") else EmbeddingStatus.FAILED
        self.store.set_embedding(memory_id, None, status)
        return status
