"""Character preservation: restore diacritics the model flattened to ASCII."""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Sequence

import structlog

from mce.types import MemoryRecord
from mce.validators.base import CorrectionHistory, SessionContext, ValidationResult

logger = structlog.get_logger(__name__)

_SPECIAL = {
    "ß": "ss", "Æ": "AE", "æ": "ae", "Œ": "OE", "œ": "oe", "Ø": "O", "ø": "o",
    "Đ": "D", "đ": "d", "Ł": "L", "ł": "l", "Þ": "Th", "þ": "th", "ı": "i",
}
_WORD_RE = re.compile(r"[^\W\d_][^\W\d_'’-]*")


def ascii_fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", "".join(_SPECIAL.get(ch, ch) for ch in text))
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


class CharacterPreservationValidator:
    name = "character_preservation"

    def __init__(self, history_size: int = 100) -> None:
        self.history = CorrectionHistory(history_size)

    def special_strings(self, records: Sequence[MemoryRecord]) -> list[str]:
        found: list[str] = []
        for record in records:
            candidates = list(record.anchors.unicode) + _WORD_RE.findall(record.content or "")
            for word in candidates:
                word = word.strip("'’-")
                if word and not word.isascii() and word not in found:
                    found.append(word)
        return found

    def validate(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> ValidationResult:
        specials = self.special_strings(records)
        if not specials:
            return ValidationResult.unchanged(response)
        adjusted = response
        corrections: list[dict[str, str]] = []
        for original in specials:
            folded = ascii_fold(original)
            if folded == original or not folded.isascii():
                continue
            pattern = re.compile(rf"(?<!\w){re.escape(folded)}(?!\w)")
            if original in adjusted or not pattern.search(adjusted):
                continue
            adjusted = pattern.sub(original, adjusted)
            corrections.append({"from": folded, "to": original})
        if not corrections:
            return ValidationResult.unchanged(response, checked=len(specials))
        self.history.record("flattened_characters", session, corrections=corrections)
        logger.info("characters_restored", count=len(corrections), session_id=session.session_id)
        return ValidationResult(changed=True, response=adjusted, details={"corrections": corrections})

    def stats(self) -> dict[str, Any]:
        return self.history.summary()
