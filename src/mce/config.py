"""Memory Consistency Engine configuration."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _default_data_dir() -> Path:
    return Path(os.environ.get("MCE_DATA_DIR", Path(__file__).resolve().parents[2] / "data"))


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class EmbeddingConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MCE_EMBED_PROVIDER", "openai"))
    model: str = Field(default_factory=lambda: os.environ.get("MCE_EMBED_MODEL", "text-embedding-3-small"))
    dims: int = 1536
    timeout: float = 5.0
    background_timeout: float = 3.0
    backfill_timeout: float = 10.0
    max_content_chars: int = 8000


class LLMConfig(BaseModel):
    provider: str = Field(default_factory=lambda: os.environ.get("MCE_LLM_PROVIDER", "openai"))
    model: str = Field(default_factory=lambda: os.environ.get("MCE_LLM_MODEL", ""))
    temperature: float = 0.0
    max_tokens: int = 300
    timeout: float = 5.0
    model_fingerprint: bool = True
    fingerprint_timeout: float = 2.0


class CompressionConfig(BaseModel):
    tokenizer: str = Field(default_factory=lambda: os.environ.get("MCE_TOKENIZER", "tiktoken"))
    encoding: str = "cl100k_base"
    max_lines: int = 3
    max_lines_with_identifiers: int = 5
    max_words: int = 5
    max_words_identifier: int = 8
    min_content_chars: int = 10
    raw_fallback_chars: int = 200
    redact_pii: bool = True


class ResolverConfig(BaseModel):
    distance_threshold: float = Field(
        default_factory=lambda: float(os.environ.get("MCE_DEDUP_DISTANCE", "0.15"))
    )
    max_neighbors: int = Field(
        default_factory=lambda: int(os.environ.get("MCE_DEDUP_NEIGHBORS", "5"))
    )
    update_detection: bool = True


class SupersessionConfig(BaseModel):
    min_confidence: float = 0.7
    max_retries: int = 3
    retry_delay: float = 0.1
    enforce_unique_current: bool = Field(
        default_factory=lambda: _env_flag("MCE_ENFORCE_UNIQUE_CURRENT", False)
    )


class RetrievalConfig(BaseModel):
    token_budget: int = Field(
        default_factory=lambda: int(os.environ.get("MCE_RETRIEVAL_TOKEN_BUDGET", "2000"))
    )
    top_k: int = 10
    max_candidates: int = 500
    min_similarity: float = 0.25
    recency_boost_days: float = 7.0
    recency_boost_weight: float = 0.1
    confidence_weight: float = 0.05
    explicit_boost: float = 0.7
    ordinal_boost: float = 0.2


class ValidatorConfig(BaseModel):
    refusal_ttl_seconds: float = Field(
        default_factory=lambda: float(os.environ.get("MCE_REFUSAL_TTL", "300"))
    )
    sweep_interval_seconds: float = 60.0
    history_size: int = 100


class LoggingConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.environ.get("MCE_LOG_LEVEL", "INFO"))
    json_output: bool = Field(default_factory=lambda: _env_flag("MCE_LOG_JSON", False))
    log_path: str = Field(default_factory=lambda: os.environ.get("MCE_LOG_PATH", ""))


class Config(BaseModel):
    data_dir: Path = Field(default_factory=_default_data_dir)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    supersession: SupersessionConfig = Field(default_factory=SupersessionConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    validators: ValidatorConfig = Field(default_factory=ValidatorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / "db" / "memories.db"

    @property
    def log_dir(self) -> Path:
        return self.data_dir / "logs"

    def ensure_dirs(self) -> None:
        for d in [self.data_dir, self.db_path.parent, self.log_dir]:
            d.mkdir(parents=True, exist_ok=True)
