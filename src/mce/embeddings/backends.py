"""Embedding backend abstraction."""

from __future__ import annotations

import hashlib
import os
import re
from typing import Protocol, runtime_checkable

import httpx
import numpy as np

from mce.config import EmbeddingConfig
from mce.exceptions import ConfigError, EmbeddingError


@runtime_checkable
class EmbeddingBackend(Protocol):
    async def embed(self, texts: list[str]) -> np.ndarray: ...
    async def embed_single(self, text: str) -> np.ndarray: ...
    async def close(self) -> None: ...


def cosine_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Row-wise cosine distance of ``matrix`` against ``query``."""
    if matrix.size == 0:
        return np.zeros((0,), dtype=np.float32)
    q = np.asarray(query, dtype=np.float32).reshape(-1)
    m = np.asarray(matrix, dtype=np.float32)
    qn = float(np.linalg.norm(q))
    mn = np.linalg.norm(m, axis=1)
    mn[mn == 0.0] = np.inf
    if qn == 0.0:
        return np.ones((m.shape[0],), dtype=np.float32)
    return (1.0 - (m @ q) / (mn * qn)).astype(np.float32)


class OpenAIEmbedder:
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        dims: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        self.model = model
        self.dims = dims
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise EmbeddingError("OPENAI_API_KEY is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        return self._client

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        client = await self._get_client()
        resp = await client.post(
            "/embeddings",
            json={"model": self.model, "input": texts},
        )
        resp.raise_for_status()
        data = resp.json()
        vecs = [x["embedding"] for x in data.get("data", [])]
        if len(vecs) != len(texts):
            raise EmbeddingError(f"expected {len(texts)} embeddings, got {len(vecs)}")
        return np.array(vecs, dtype=np.float32)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OllamaEmbedder:
    def __init__(
        self,
        model: str = "nomic-embed-text",
        dims: int = 768,
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 30.0,
    ) -> None:
        self.model = model
        self.dims = dims
        self.base_url = base_url
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        client = await self._get_client()
        out: list[list[float]] = []
        for text in texts:
            resp = await client.post("/api/embeddings", json={"model": self.model, "prompt": text})
            resp.raise_for_status()
            data = resp.json()
            vec = data.get("embedding") or []
            if not vec:
                raise EmbeddingError("ollama returned an empty embedding")
            out.append(vec)
        return np.array(out, dtype=np.float32)

    async def embed_single(self, text: str) -> np.ndarray:
        return (await self.embed([text]))[0]

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class HashEmbedder:
    """Offline embedder: signed feature hashing over words and adjacent word pairs.

    Vectors are deterministic and unit length, so no network or key is
    needed. Similarity is purely lexical.
    """

    _WORD_RE = re.compile(r"[a-z0-9_]+")

    def __init__(self, dims: int = 384) -> None:
        self.dims = max(32, int(dims))
        self.model = f"hash-{self.dims}"

    def features(self, text: str) -> list[str]:
        words = self._WORD_RE.findall((text or "").lower())
        return words + [f"{a} {b}" for a, b in zip(words, words[1:])]

    def _encode(self, text: str) -> np.ndarray:
        vec = np.zeros((self.dims,), dtype=np.float32)
        digests = [hashlib.blake2b(f.encode("utf-8"), digest_size=8).digest() for f in self.features(text)]
        if not digests:
            return vec
        slots = np.fromiter((int.from_bytes(d[:4], "little") % self.dims for d in digests), dtype=np.int64)
        signs = np.fromiter((-1.0 if d[4] & 1 else 1.0 for d in digests), dtype=np.float32)
        np.add.at(vec, slots, signs)
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0.0 else vec

    async def embed(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dims), dtype=np.float32)
        return np.stack([self._encode(t) for t in texts]).astype(np.float32, copy=False)

    async def embed_single(self, text: str) -> np.ndarray:
        return self._encode(text)

    async def close(self) -> None:
        return None


def create_embedder(config: EmbeddingConfig | None = None) -> EmbeddingBackend:
    cfg = config or EmbeddingConfig()
    provider = (cfg.provider or "openai").strip().lower()
    if provider in {"openai", "default"}:
        return OpenAIEmbedder(model=cfg.model, dims=cfg.dims)
    if provider in {"ollama", "local"}:
        model = cfg.model if cfg.model and cfg.model != "text-embedding-3-small" else "nomic-embed-text"
        return OllamaEmbedder(model=model, dims=cfg.dims)
    if provider in {"hash", "localhash"}:
        return HashEmbedder(dims=cfg.dims)
    raise ConfigError(f"Unsupported embedding provider: {cfg.provider}")
