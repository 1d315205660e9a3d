"""Embedding providers and abstractions."""

from mce.embeddings.backends import (
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    cosine_distances,
    create_embedder,
)

__all__ = [
    "EmbeddingBackend",
    "OpenAIEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "cosine_distances",
    "create_embedder",
]
