"""Retrieval ranking: hybrid vector scoring, keyword fallback, token budget."""

from __future__ import annotations

import math
import time
from typing import Any

import numpy as np
import structlog

from mce.anchors import detect_ordinals
from mce.config import RetrievalConfig
from mce.degrade import DegradePolicy
from mce.embeddings.backends import cosine_distances
from mce.storage.embedding_writer import EmbeddingWriter
from mce.storage.sqlite_store import MemoryStore
from mce.types import MemoryRecord, OrdinalAnchor, RetrievalResult
from mce.utils import normalize_mode, query_terms, utcnow

logger = structlog.get_logger(__name__)


def keyword_overlap(terms: list[str], content: str) -> float:
    """Share of query terms that also occur in ``content``."""
    if not terms:
        return 0.0
    content_terms = set(query_terms(content))
    return sum(1 for t in terms if t in content_terms) / len(terms)


def estimate_tokens(record: MemoryRecord) -> int:
    return record.token_count or math.ceil(len(record.content or "") / 4)


class RetrievalRanker:
    """Selects the current memories most useful for answering a query."""

    def __init__(
        self,
        store: MemoryStore,
        writer: EmbeddingWriter,
        config: RetrievalConfig | None = None,
        policy: DegradePolicy | None = None,
    ) -> None:
        self.store = store
        self.writer = writer
        self.config = config or RetrievalConfig()
        self.policy = policy or DegradePolicy()

    async def retrieve(
        self,
        user_id: str,
        query: str,
        *,
        category: str | None = None,
        mode: str | None = None,
        token_budget: int | None = None,
        top_k: int | None = None,
    ) -> RetrievalResult:
        started = time.monotonic()
        budget = self.config.token_budget if token_budget is None else max(0, int(token_budget))
        limit = self.config.top_k if top_k is None else max(0, int(top_k))
        telemetry: dict[str, Any] = {
            "method": "vector",
            "token_budget": budget,
            "candidates": 0,
            "above_threshold": 0,
            "selected": 0,
            "tokens_used": 0,
        }
        if not (query or "").strip() or not user_id:
            telemetry["method"] = "empty_query"
            return RetrievalResult(telemetry=telemetry)

        scope_mode = normalize_mode(mode) if mode else None
        candidates = self.store.candidates(
            user_id,
            category=category,
            mode=scope_mode,
            limit=self.config.max_candidates,
        )
        telemetry["candidates"] = len(candidates)
        telemetry["superseded_filtered"] = self.store.superseded_count(
            user_id, category=category, mode=scope_mode
        )

        outcome = await self.writer.embed_text(query)
        terms = query_terms(query)
        if outcome.ok and outcome.value is not None:
            ranked = self._rank_vector(outcome.value, candidates, terms, detect_ordinals(query))
            telemetry["vectors_compared"] = sum(1 for _, v in candidates if v is not None)
            fallback = False
        else:
            ranked = self._rank_keyword(candidates, terms)
            fallback = True
            telemetry["method"] = "keyword_fallback"
            telemetry["fallback_reason"] = outcome.reason
        telemetry["above_threshold"] = len(ranked)

        selected: list[MemoryRecord] = []
        used = 0
        for record in ranked:
            if len(selected) >= limit:
                break
            cost = estimate_tokens(record)
            if used + cost > budget:
                telemetry["budget_exhausted"] = True
                break
            selected.append(record)
            used += cost

        telemetry["selected"] = len(selected)
        telemetry["tokens_used"] = used
        telemetry["elapsed_ms"] = round((time.monotonic() - started) * 1000, 2)
        logger.info(
            "memories_retrieved",
            user_id=user_id,
            method=telemetry["method"],
            selected=len(selected),
            tokens=used,
        )
        return RetrievalResult(records=selected, fallback_used=fallback, telemetry=telemetry)

    def _boosts(self, record: MemoryRecord, ordinals: list[OrdinalAnchor]) -> float:
        cfg = self.config
        boost = cfg.explicit_boost if record.explicit else 0.0
        if ordinals and any(o in record.anchors.ordinal for o in ordinals):
            boost += cfg.ordinal_boost
        return boost

    def _hybrid(self, record: MemoryRecord, similarity: float) -> float:
        cfg = self.config
        score = similarity
        days_ago = (utcnow() - record.created_at).total_seconds() / 86400.0
        if days_ago < cfg.recency_boost_days:
            score += (1.0 - days_ago / cfg.recency_boost_days) * cfg.recency_boost_weight
        if record.fingerprint_confidence:
            score += record.fingerprint_confidence * cfg.confidence_weight
        return min(score, 1.0)

    def _rank_vector(
        self,
        query_vec: np.ndarray,
        candidates: list[tuple[MemoryRecord, np.ndarray | None]],
        terms: list[str],
        ordinals: list[OrdinalAnchor],
    ) -> list[MemoryRecord]:
        dims = np.asarray(query_vec).reshape(-1).shape[0]
        embedded = [(r, v) for r, v in candidates if v is not None and v.shape[0] == dims]
        scored: list[tuple[float, float, int, MemoryRecord]] = []
        if embedded:
            dists = cosine_distances(query_vec, np.stack([v for _, v in embedded]))
            for (record, _), dist in zip(embedded, dists):
                similarity = 1.0 - float(dist) + self._boosts(record, ordinals)
                if similarity < self.config.min_similarity:
                    continue
                record.score = self._hybrid(record, similarity)
                scored.append((-record.score, float(dist), -int(record.id or 0), record))
        scored.sort(key=lambda t: t[:3])
        out = [t[3] for t in scored]

        # Records still waiting on an embedding compete on keyword overlap only.
        unembedded = [(r, None) for r, v in candidates if v is None or v.shape[0] != dims]
        out.extend(self._rank_keyword(unembedded, terms))
        return out

    def _rank_keyword(
        self,
        candidates: list[tuple[MemoryRecord, np.ndarray | None]],
        terms: list[str],
    ) -> list[MemoryRecord]:
        scored: list[tuple[float, int, MemoryRecord]] = []
        for record, _ in candidates:
            ratio = keyword_overlap(terms, record.content)
            if ratio <= 0.0:
                continue
            record.score = ratio + (self.config.explicit_boost if record.explicit else 0.0)
            scored.append((-record.score, -int(record.id or 0), record))
        scored.sort(key=lambda t: t[:2])
        return [t[2] for t in scored]
