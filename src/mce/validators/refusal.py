"""Refusal maintenance: a refusal holds when the user pushes back next turn."""

from __future__ import annotations

import re
import zlib
from typing import Any, Sequence

import structlog

from mce.types import MemoryRecord
from mce.validators.base import CorrectionHistory, SessionContext, ValidationResult
from mce.validators.session_store import InMemorySessionStore, SessionStore

logger = structlog.get_logger(__name__)

REFUSAL_PHRASES = (
    "i don't have", "i do not have", "i can't", "i cannot", "i am unable", "i'm unable",
    "i'm sorry", "unfortunately", "i apologize", "i maintain my principles",
    "i care too much about", "being honest", "i'm not certain", "i cannot predict",
)
REFUSAL_CONTEXT = (
    "information", "context", "access", "data", "details", "matters more", "principles",
    "help with", "provide",
)
PUSHBACK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"come\s+on",
        r"just\s+(?:do|tell|give|try)",
        r"\bplease\b",
        r"\bI\s+(?:really\s+)?need\b",
        r"why\s+(?:can'?t|won'?t)\s+you",
        r"\bbut\s+(?:I|you)\b",
        r"\bat\s+least\b",
        r"make\s+an?\s+exception",
        r"\bthis\s+(?:time|once)\b",
        r"it'?s\s+(?:important|urgent|critical)",
    )
)
_REASON_PATTERNS = (
    re.compile(r"(?:because|since)\s+([^.]+\.)", re.IGNORECASE),
    re.compile(r"I maintain my principles[^.]*\.\s*([^.]+\.)"),
    re.compile(r"I care too much[^.]*\.\s*([^.]+\.)"),
)
TEMPLATES = (
    "I understand you'd like me to help with this, but my position hasn't changed. {reason} "
    "Is there something else I can help you with?",
    "I appreciate that this matters to you, but I still can't do that. {reason} How else can I help?",
    "I hear that you need this, but my answer remains the same. {reason} What else can I assist with?",
)


def is_refusal(response: str) -> bool:
    head = (response or "").strip()[:260].lower().replace("’", "'")
    if "i maintain my principles" in head:
        return True
    if "as an ai" in head and any(p in head for p in ("can't", "cannot", "don't have")):
        return True
    return any(p in head for p in REFUSAL_PHRASES) and any(w in head for w in REFUSAL_CONTEXT)


def is_pushback(message: str) -> bool:
    return any(p.search(message or "") for p in PUSHBACK_PATTERNS)


def refusal_reason(response: str) -> str:
    for pattern in _REASON_PATTERNS:
        m = pattern.search(response or "")
        if m:
            reason = m.group(1).strip()
            return reason[:1].upper() + reason[1:]
    first = re.split(r"(?<=[.!?])\s", (response or "").strip(), maxsplit=1)[0].strip()
    return first if first[-1:] in ".!?" else f"{first}."


class RefusalMaintenanceValidator:
    """Keeps a refusal in place when the next user turn is pushback.

    State is per session and expires after the store's TTL. A non-pushback
    turn clears it; a refusal that holds under pushback is left untouched.
    """

    name = "refusal_maintenance"

    def __init__(self, session_store: SessionStore | None = None, history_size: int = 100) -> None:
        self.sessions: SessionStore = session_store if session_store is not None else InMemorySessionStore()
        self.history = CorrectionHistory(history_size)

    def validate(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> ValidationResult:
        if not session.session_id:
            return ValidationResult.unchanged(response, reason="no_session")
        state = self.sessions.get(session.session_id)

        if state is None:
            if is_refusal(response):
                self.sessions.put(session.session_id, refusal_reason(response))
            return ValidationResult.unchanged(response)

        if not is_pushback(session.user_message or query):
            self.sessions.delete(session.session_id)
            if is_refusal(response):
                self.sessions.put(session.session_id, refusal_reason(response))
            return ValidationResult.unchanged(response, reason="topic_changed")

        if is_refusal(response):
            return ValidationResult.unchanged(response, refusal_maintained=True)

        template = TEMPLATES[zlib.crc32(session.session_id.encode()) % len(TEMPLATES)]
        maintained = template.format(reason=state.reason)
        self.history.record("caved_to_pushback", session, user_message=(session.user_message or "")[:200])
        logger.info("refusal_maintained", session_id=session.session_id)
        return ValidationResult(
            changed=True,
            response=maintained,
            details={"original_reason": state.reason, "replaced": response[:200]},
        )

    def stats(self) -> dict[str, Any]:
        self.sessions.sweep()
        return {**self.history.summary(), "active_refusal_states": len(self.sessions)}
