"""Memory engine: the turn-level store / retrieve / validate facade."""

from __future__ import annotations

from typing import Any, Sequence

import numpy as np
import structlog

from mce.anchors import AnchorExtractor
from mce.compression import Compression, FactCompressor, patterns
from mce.config import Config
from mce.degrade import DegradePolicy
from mce.embeddings.backends import EmbeddingBackend, create_embedder
from mce.fingerprint import FingerprintClassifier, ModelFingerprinter
from mce.llm import create_chat_backend
from mce.llm.backends import ChatBackend
from mce.observability import preview
from mce.resolver import LLMUpdateDetector, Resolution, SimilarityResolver
from mce.retrieval.ranker import RetrievalRanker
from mce.storage.embedding_writer import EmbeddingWriter
from mce.storage.sqlite_store import MemoryStore
from mce.types import (
    Anchors,
    EmbeddingStatus,
    FingerprintInfo,
    MemoryRecord,
    RetrievalResult,
    StorageVersion,
    StoreAction,
    StoreResult,
)
from mce.utils import TokenCounter, normalize_mode
from mce.validators import (
    GuardResult,
    InMemorySessionStore,
    PipelineResult,
    SessionContext,
    SessionStore,
    SessionSweeper,
    ValidatorPipeline,
)

logger = structlog.get_logger(__name__)

PRIORITY_RELEVANCE = 0.85
DEFAULT_RELEVANCE = 0.5
PHRASE_SNIPPET_CHARS = 200


class MemoryEngine:
    """Wires compression, fingerprinting, resolution, storage, retrieval and validation.

    ``store_turn`` never raises for content reasons: extraction, embedding
    and similarity failures each degrade to a simpler write, and a failure
    of the main write path falls back to storing the raw exchange.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        embedder: EmbeddingBackend | None = None,
        chat: ChatBackend | None = None,
        session_store: SessionStore | None = None,
    ) -> None:
        self.config = config or Config()
        self.config.ensure_dirs()
        self.policy = DegradePolicy()

        self.embedder = embedder if embedder is not None else create_embedder(self.config.embedding)
        self.chat = chat if chat is not None else create_chat_backend(
            self.config.llm.provider,
            **({"model": self.config.llm.model} if self.config.llm.model else {}),
        )

        self.store = MemoryStore(self.config.db_path, self.config.supersession)
        self.writer = EmbeddingWriter(self.store, self.embedder, self.config.embedding, self.policy)
        self.compressor = FactCompressor(self.chat, self.config.compression, self.config.llm, self.policy)
        self.anchors = AnchorExtractor()
        self.fingerprints = FingerprintClassifier()
        self.model_fingerprints = (
            ModelFingerprinter(self.chat, config=self.config.llm, policy=self.policy)
            if self.config.llm.model_fingerprint and self.chat is not None else None
        )
        self.resolver = SimilarityResolver(
            self.store,
            self.config.resolver,
            update_detector=LLMUpdateDetector(self.chat, self.config.llm),
            policy=self.policy,
            timeout=self.config.llm.timeout,
        )
        self.ranker = RetrievalRanker(self.store, self.writer, self.config.retrieval, self.policy)
        self.tokens = TokenCounter(self.config.compression.tokenizer, self.config.compression.encoding)

        self.sessions: SessionStore = (
            session_store if session_store is not None
            else InMemorySessionStore(ttl_seconds=self.config.validators.refusal_ttl_seconds)
        )
        self.validators = ValidatorPipeline.default(self.config.validators, self.sessions, self.policy)
        self.sweeper = SessionSweeper(self.sessions, self.config.validators.sweep_interval_seconds)

    # --- Store ---

    async def store_turn(
        self,
        user_id: str,
        user_message: str,
        assistant_reply: str = "",
        category: str = "general",
        mode: str | None = None,
        subcategory: str = "general",
    ) -> StoreResult:
        """Compress one exchange and persist it as new, duplicate or superseding."""
        self._ensure_sweeper()
        mode = normalize_mode(mode)
        user = (user_message or "").strip()
        if len(user) < self.config.compression.min_content_chars:
            logger.info("turn_skipped", user_id=user_id, reason="too_short", chars=len(user))
            return StoreResult(action=StoreAction.SKIPPED, reason="too_short")
        try:
            return await self._store(user_id, user, assistant_reply or "", category or "general", mode,
                                     subcategory or "general")
        except Exception as exc:
            self.policy.record("store_turn", f"{type(exc).__name__}: {exc}")
            return self._store_fallback(user_id, user, assistant_reply or "", category or "general", mode,
                                        subcategory or "general", reason=type(exc).__name__)

    async def _store(
        self,
        user_id: str,
        user: str,
        assistant_reply: str,
        category: str,
        mode: str,
        subcategory: str,
    ) -> StoreResult:
        explicit = patterns.is_explicit_request(user)
        priority = patterns.is_priority(user)
        anchors = self.policy.call("anchors", lambda: self.anchors.extract(user), fallback=Anchors()).value
        anchors = anchors or Anchors()

        if explicit:
            content = self._redact(user)
            compression = Compression(facts=content, method="explicit")
            version = StorageVersion.EXPLICIT
        else:
            compression = await self.compressor.compress(user, assistant_reply)
            content = compression.facts.strip()
            version = StorageVersion.FALLBACK if compression.fallback else StorageVersion.COMPRESSED
        if not content:
            logger.info("turn_skipped", user_id=user_id, reason="empty_extraction")
            return StoreResult(action=StoreAction.SKIPPED, reason="empty_extraction")

        fingerprint = self.fingerprints.classify_turn(content, user)
        # Raw-exchange fallbacks are not sent to the model.
        if not fingerprint.matched and self.model_fingerprints is not None and not compression.fallback:
            fingerprint = await self.model_fingerprints.classify(content)
        supersedes_slot = fingerprint.supersedes(self.config.supersession.min_confidence)

        original_source = user if explicit else f"{user}\n{patterns.strip_boilerplate(assistant_reply)}".strip()
        original_tokens = self.tokens.count(original_source)
        compressed_tokens = self.tokens.count(content)
        ratio = 1.0 if explicit else round(original_tokens / max(1, compressed_tokens), 2)

        outcome = await self.writer.embed_text(content, timeout=self.config.embedding.timeout)
        vector: np.ndarray | None = outcome.value if outcome.ok else None

        resolution = await self.resolver.resolve(user_id, category, content, vector)
        if resolution.duplicate is not None:
            dup_id = int(resolution.duplicate.id)  # type: ignore[arg-type]
            if self.store.boost(dup_id):
                logger.info("memory_boosted", user_id=user_id, memory_id=dup_id,
                            distance=round(resolution.distance or 0.0, 4))
                return StoreResult(
                    action=StoreAction.BOOSTED,
                    memory_id=dup_id,
                    fingerprint=fingerprint.id,
                    reason="duplicate",
                )
            # Retired between the neighbor read and the boost; store as new.
            resolution = Resolution(reason="duplicate_retired")

        record = MemoryRecord(
            user_id=user_id,
            mode=mode,
            category=category,
            subcategory=subcategory,
            content=content,
            embedding=vector.tolist() if vector is not None else None,
            embedding_status=EmbeddingStatus.READY if vector is not None else EmbeddingStatus.PENDING,
            embedding_model=self.writer.model if vector is not None else "",
            token_count=compressed_tokens,
            relevance_score=PRIORITY_RELEVANCE if (priority or explicit) else DEFAULT_RELEVANCE,
            fact_fingerprint=fingerprint.id if supersedes_slot else None,
            fingerprint_confidence=fingerprint.confidence,
            metadata=self._metadata(
                version, explicit, priority, anchors, fingerprint, compression,
                ratio, original_tokens, compressed_tokens, user,
            ),
        )
        new_id, retired = self.store.insert_superseding(
            record, supersede_ids=resolution.supersedes, by_fingerprint=supersedes_slot
        )

        if vector is None and self.writer.embedder is not None:
            if explicit:
                await self.writer.attach_sync(new_id, content, timeout=self.config.embedding.timeout)
            else:
                self.writer.attach_background(new_id, content)

        action = StoreAction.FALLBACK if version is StorageVersion.FALLBACK else StoreAction.CREATED
        logger.info(
            "turn_stored",
            user_id=user_id,
            memory_id=new_id,
            action=action.value,
            fingerprint=fingerprint.id,
            superseded=retired,
            ratio=ratio,
            preview=preview(content),
        )
        return StoreResult(
            action=action,
            memory_id=new_id,
            superseded=retired,
            fingerprint=fingerprint.id,
            reason=compression.reason or resolution.reason,
            compression_ratio=ratio,
        )

    def _metadata(
        self,
        version: StorageVersion,
        explicit: bool,
        priority: bool,
        anchors: Anchors,
        fingerprint: FingerprintInfo,
        compression: Compression,
        ratio: float,
        original_tokens: int,
        compressed_tokens: int,
        user: str,
    ) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "storage_version": version.value,
            "explicit_storage_request": explicit,
            "user_priority": priority,
            "fingerprint": fingerprint.model_dump(),
            "compression_method": compression.method,
            "compression_ratio": ratio,
            "original_tokens": original_tokens,
            "compressed_tokens": compressed_tokens,
            "original_user_phrase": self._redact(user[:PHRASE_SNIPPET_CHARS]),
        }
        if not anchors.is_empty():
            meta["anchors"] = anchors.to_metadata()
        if compression.injected:
            meta["injected_tokens"] = list(compression.injected)
        if compression.reason:
            meta["compression_reason"] = compression.reason
        return meta

    def _store_fallback(
        self,
        user_id: str,
        user: str,
        assistant_reply: str,
        category: str,
        mode: str,
        subcategory: str,
        reason: str,
    ) -> StoreResult:
        assistant = patterns.strip_boilerplate(assistant_reply)
        content = self._redact(f"User: {user}\nAssistant: {assistant}".strip())
        record = MemoryRecord(
            user_id=user_id,
            mode=mode,
            category=category,
            subcategory=subcategory,
            content=content,
            token_count=self.tokens.count(content),
            metadata={
                "storage_version": StorageVersion.FALLBACK.value,
                "explicit_storage_request": False,
                "fallback_reason": reason,
                "original_user_phrase": self._redact(user[:PHRASE_SNIPPET_CHARS]),
            },
        )
        outcome = self.policy.call("storage", lambda: self.store.insert(record))
        if not outcome.ok or outcome.value is None:
            logger.error("turn_dropped", user_id=user_id, reason=outcome.reason)
            return StoreResult(action=StoreAction.SKIPPED, reason="storage_unavailable")
        logger.warning("turn_stored_uncompressed", user_id=user_id, memory_id=outcome.value, reason=reason)
        return StoreResult(action=StoreAction.FALLBACK, memory_id=outcome.value, reason=reason)

    def _redact(self, text: str) -> str:
        return patterns.redact_pii(text) if self.config.compression.redact_pii else text

    # --- Retrieve ---

    async def retrieve_memories(
        self,
        user_id: str,
        category: str | None,
        query_text: str,
        token_budget: int | None = None,
        *,
        mode: str | None = None,
        top_k: int | None = None,
    ) -> RetrievalResult:
        return await self.ranker.retrieve(
            user_id,
            query_text,
            category=category,
            mode=mode,
            token_budget=token_budget,
            top_k=top_k,
        )

    def list_current(
        self,
        user_id: str,
        category: str | None = None,
        fingerprint: str | None = None,
        mode: str | None = None,
    ) -> list[MemoryRecord]:
        return self.store.list_current(
            user_id, category=category, fingerprint=fingerprint,
            mode=normalize_mode(mode) if mode else None,
        )

    # --- Validate ---

    def guard_input(self, user_message: str, context: SessionContext | None = None) -> GuardResult:
        return self.validators.guard_input(user_message, context)

    def validate_response(
        self,
        response: str,
        selected_records: Sequence[MemoryRecord],
        query: str,
        session_context: SessionContext | None = None,
    ) -> PipelineResult:
        session = session_context or SessionContext(user_message=query)
        return self.validators.run(response, selected_records, query, session)

    # --- Maintenance ---

    async def backfill_embeddings(self, limit: int = 20, max_seconds: float = 20.0) -> dict[str, Any]:
        return await self.writer.backfill(limit=limit, max_seconds=max_seconds)

    def cleanup_duplicate_current(self) -> list[int]:
        return self.store.cleanup_duplicate_current()

    def create_supersession_constraint(self) -> list[int]:
        return self.store.create_supersession_constraint()

    def status(self, user_id: str | None = None) -> dict[str, Any]:
        return {
            "store": self.store.stats(user_id),
            "embedding_model": self.writer.model,
            "llm": self.chat.stats() if self.chat is not None else {},
            "degradations": self.policy.stats(),
            "validators": self.validators.stats(),
            "active_sessions": len(self.sessions),
        }

    def _ensure_sweeper(self) -> None:
        if not self.sweeper.running:
            self.sweeper.start()

    async def drain(self) -> None:
        await self.writer.drain()

    async def close(self) -> None:
        await self.writer.drain()
        await self.sweeper.stop()
        for client in (self.embedder, self.chat):
            closer = getattr(client, "close", None)
            if closer is not None:
                await closer()
        self.store.close()
