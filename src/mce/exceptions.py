"""Exception hierarchy for the memory consistency engine."""

from __future__ import annotations


class MCEError(Exception):
    """Base class for engine errors."""


class ConfigError(MCEError, ValueError):
    """Unknown provider names and other invalid settings."""


class StorageError(MCEError):
    pass


class SupersessionError(StorageError):
    """Raised when the supersede-and-insert transaction cannot be committed."""


class EmbeddingError(MCEError):
    pass


class ExtractionError(MCEError):
    """Raised when the language model returns no usable fact extraction."""
