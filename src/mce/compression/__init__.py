"""Fact extraction and the pattern tables it shares with the rest of the engine."""

from mce.compression.compressor import Compression, FactCompressor

__all__ = ["Compression", "FactCompressor"]
