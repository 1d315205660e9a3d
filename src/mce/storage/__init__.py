from mce.storage.embedding_writer import EmbeddingWriter
from mce.storage.sqlite_store import MemoryStore

__all__ = ["EmbeddingWriter", "MemoryStore"]
