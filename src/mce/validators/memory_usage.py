"""Memory usage enforcement: no claiming ignorance when memory was supplied."""

from __future__ import annotations

import math
from typing import Any, Sequence

import structlog

from mce.types import MemoryRecord
from mce.validators.base import CorrectionHistory, SessionContext, ValidationResult

logger = structlog.get_logger(__name__)

# Matched against the response with apostrophes removed.
IGNORANCE_PHRASES = (
    "i dont have information",
    "i dont have any information",
    "i dont know",
    "you havent told me",
    "you didnt tell me",
    "im not aware",
    "i dont recall",
    "you didnt mention",
    "you havent mentioned",
    "i have no record",
    "i dont see any",
    "i dont have access to",
    "i dont have that information",
    "i wasnt told",
    "you havent shared",
    "i cant see any information about",
    "i dont have details about",
    "no information about",
)


def normalize(text: str) -> str:
    return (text or "").lower().replace("'", "").replace("’", "")


def correction_text(memory_tokens: int) -> str:
    count = max(1, math.ceil(memory_tokens / 10))
    return (
        "\n\n---\n\n**[System Correction]**\n\n"
        "I need to correct my previous statement. I DO have information from our previous "
        f"conversations ({count} relevant memories, ~{memory_tokens} tokens of context). "
        "Let me re-examine that context and answer based on what you shared with me before."
    )


class MemoryUsageEnforcer:
    name = "memory_usage"

    def __init__(self, history_size: int = 100) -> None:
        self.history = CorrectionHistory(history_size)

    def validate(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> ValidationResult:
        if session.memory_tokens <= 0:
            return ValidationResult.unchanged(response, reason="no_memory_provided")
        low = normalize(response)
        phrase = next((p for p in IGNORANCE_PHRASES if p in low), None)
        if phrase is None:
            return ValidationResult.unchanged(response, reason="memory_usage_compliant")
        self.history.record("claimed_ignorance", session, phrase=phrase, memory_tokens=session.memory_tokens)
        logger.warning("claimed_ignorance_with_memory", phrase=phrase, session_id=session.session_id)
        return ValidationResult(
            changed=True,
            response=response + correction_text(session.memory_tokens),
            details={"matched_phrase": phrase, "memory_tokens": session.memory_tokens},
        )

    def stats(self) -> dict[str, Any]:
        return self.history.summary()
