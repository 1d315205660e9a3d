"""Core data types."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from mce.utils import utcnow


class StorageVersion(str, Enum):
    COMPRESSED = "intelligent_v1"
    EXPLICIT = "explicit_v1"
    FALLBACK = "uncompressed_fallback"


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class StoreAction(str, Enum):
    CREATED = "created"
    BOOSTED = "boosted"
    SKIPPED = "skipped"
    FALLBACK = "fallback"


class FingerprintInfo(BaseModel):
    id: str | None = None
    confidence: float = 0.0
    method: str = "no_match"
    single_valued: bool = True

    @property
    def matched(self) -> bool:
        return self.id is not None

    def supersedes(self, min_confidence: float) -> bool:
        """True when this fingerprint names a one-value slot confidently enough."""
        return self.matched and self.single_valued and self.confidence >= min_confidence


class TemporalAnchor(BaseModel):
    end_year: int | None = None
    duration_years: int | None = None


class OrdinalAnchor(BaseModel):
    position: int
    item: str


class ExplicitToken(BaseModel):
    type: str
    value: str


class Anchors(BaseModel):
    """Validated payloads that must survive into generated answers."""

    pricing: list[str] = Field(default_factory=list)
    temporal: TemporalAnchor | None = None
    unicode: list[str] = Field(default_factory=list)
    ordinal: list[OrdinalAnchor] = Field(default_factory=list)
    explicit_token: list[ExplicitToken] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.pricing or self.temporal or self.unicode or self.ordinal or self.explicit_token)

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude_defaults=True)


class MemoryRecord(BaseModel):
    id: int | None = None
    user_id: str
    mode: str = "truth-general"
    category: str = "general"
    subcategory: str = "general"
    content: str
    embedding: list[float] | None = None
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    embedding_model: str = ""
    token_count: int = 0
    relevance_score: float = 0.5
    usage_frequency: int = 0
    is_current: bool = True
    superseded_at: datetime | None = None
    superseded_by: int | None = None
    fact_fingerprint: str | None = None
    fingerprint_confidence: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed: datetime = Field(default_factory=utcnow)
    # Set by retrieval; never persisted.
    score: float | None = Field(default=None, exclude=True)

    @property
    def anchors(self) -> Anchors:
        raw = self.metadata.get("anchors") or {}
        if not isinstance(raw, dict):
            return Anchors()
        return Anchors.model_validate(raw)

    @property
    def storage_version(self) -> str:
        return str(self.metadata.get("storage_version", ""))

    @property
    def explicit(self) -> bool:
        return self.metadata.get("explicit_storage_request") is True


class Neighbor(BaseModel):
    record: MemoryRecord
    distance: float


class StoreResult(BaseModel):
    action: StoreAction
    memory_id: int | None = None
    superseded: list[int] = Field(default_factory=list)
    fingerprint: str | None = None
    reason: str = ""
    compression_ratio: float | None = None


class RetrievalResult(BaseModel):
    records: list[MemoryRecord] = Field(default_factory=list)
    fallback_used: bool = False
    telemetry: dict[str, Any] = Field(default_factory=dict)

    @property
    def tokens_used(self) -> int:
        return int(self.telemetry.get("tokens_used", 0))
