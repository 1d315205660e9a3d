"""Memory Consistency Engine: fact dedup, supersession and answer validation for chat memory."""

__version__ = "0.1.0"

from mce.engine import MemoryEngine
from mce.types import MemoryRecord, RetrievalResult, StoreAction, StoreResult
from mce.validators import PipelineResult, SessionContext

__all__ = [
    "__version__",
    "MemoryEngine",
    "MemoryRecord",
    "PipelineResult",
    "RetrievalResult",
    "SessionContext",
    "StoreAction",
    "StoreResult",
]
