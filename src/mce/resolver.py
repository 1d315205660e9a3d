"""Similarity resolution: is a new fact a duplicate, an update, or new?"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import numpy as np
import structlog

from mce.compression.patterns import EMAIL_RE, MONEY_RE, PHONE_RE, TIME_RE, identifier_tokens
from mce.config import LLMConfig, ResolverConfig
from mce.degrade import DegradePolicy
from mce.llm.backends import ChatBackend
from mce.llm.messages import Message
from mce.storage.sqlite_store import MemoryStore
from mce.types import MemoryRecord

logger = structlog.get_logger(__name__)

RELATIONSHIP_DESCRIPTORS = frozenset(
    "friend colleague coworker co-worker boss manager brother sister mother father mom dad son "
    "daughter wife husband spouse partner neighbor neighbour cousin uncle aunt roommate "
    "girlfriend boyfriend fiance fiancee grandmother grandfather grandma grandpa".split()
)
_WORD_RE = re.compile(r"[a-z][a-z-]*")
# Values checked by the merge guard.
VALUE_PATTERNS = (MONEY_RE, TIME_RE, EMAIL_RE, PHONE_RE)

UPDATE_PROMPT = """Compare two facts about the same user.

OLD: {old}
NEW: {new}

Does NEW replace OLD because the underlying value changed (a new salary, a new address, a moved meeting)?
Answer "yes" only if NEW makes OLD out of date. Answer "no" if they are the same fact, or different facts.
Answer with exactly one word: yes or no."""


@runtime_checkable
class UpdateDetector(Protocol):
    async def is_update(self, new_text: str, old_text: str) -> bool: ...


class LLMUpdateDetector:
    """Asks the chat backend whether NEW supersedes OLD."""

    def __init__(self, chat: ChatBackend, config: LLMConfig | None = None) -> None:
        self.chat = chat
        self.config = config or LLMConfig()

    async def is_update(self, new_text: str, old_text: str) -> bool:
        resp = await self.chat.chat(
            [Message(role="user", content=UPDATE_PROMPT.format(old=old_text, new=new_text))],
            temperature=0.0,
            max_tokens=5,
        )
        return (resp.content or "").strip().lower().startswith("yes")


def relationship_descriptors(text: str) -> set[str]:
    return {w for w in _WORD_RE.findall((text or "").lower()) if w in RELATIONSHIP_DESCRIPTORS}


def has_unique_identifier(new_text: str, old_text: str) -> bool:
    """True if ``new_text`` carries an identifier the old record does not."""
    existing = set(identifier_tokens(old_text))
    return any(tok not in existing for tok in identifier_tokens(new_text))


def descriptors_differ(new_text: str, old_text: str) -> bool:
    new_desc = relationship_descriptors(new_text)
    old_desc = relationship_descriptors(old_text)
    return bool(new_desc or old_desc) and new_desc != old_desc


def value_tokens(text: str) -> set[str]:
    """Amounts, times, emails and phone numbers, normalised for comparison."""
    out: set[str] = set()
    for pattern in VALUE_PATTERNS:
        for m in pattern.finditer(text or ""):
            out.add(re.sub(r"[\s,]", "", m.group(0).lower()))
    return out


def values_differ(new_text: str, old_text: str) -> bool:
    """True if ``new_text`` carries an amount, time, email or phone the old record does not."""
    return not value_tokens(new_text) <= value_tokens(old_text)


@dataclass
class Resolution:
    duplicate: MemoryRecord | None = None
    supersedes: list[int] = field(default_factory=list)
    distance: float | None = None
    reason: str = "no_match"

    @property
    def kind(self) -> str:
        if self.duplicate is not None:
            return "duplicate"
        return "supersession" if self.supersedes else "new"


class SimilarityResolver:
    """Walks the nearest current neighbors and classifies the new fact.

    For each neighbor under the distance threshold, in ascending distance:
    an LLM update check first (a yes means supersession), then the
    identifier, value and relationship-descriptor guards (any one of
    them moves on to the next neighbor), otherwise the neighbor is a duplicate.
    Any failure resolves to "new" so the fact is still stored.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: ResolverConfig | None = None,
        update_detector: UpdateDetector | None = None,
        policy: DegradePolicy | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.config = config or ResolverConfig()
        self.update_detector = update_detector
        self.policy = policy or DegradePolicy()
        self.timeout = timeout

    async def resolve(
        self,
        user_id: str,
        category: str,
        text: str,
        vector: np.ndarray | None,
    ) -> Resolution:
        if vector is None:
            return Resolution(reason="no_embedding")
        neighbors = self.policy.call(
            "resolver",
            lambda: self.store.nearest(user_id, category, vector, limit=self.config.max_neighbors),
            fallback=[],
        ).value or []

        for nb in neighbors:
            if nb.distance >= self.config.distance_threshold:
                break
            old = nb.record
            if await self._is_update(text, old.content):
                logger.info("resolver_update", memory_id=old.id, distance=round(nb.distance, 4))
                return Resolution(supersedes=[int(old.id)], distance=nb.distance, reason="update")  # type: ignore[arg-type]
            if has_unique_identifier(text, old.content):
                logger.debug("resolver_identifier_guard", memory_id=old.id)
                continue
            if values_differ(text, old.content):
                logger.debug("resolver_value_guard", memory_id=old.id)
                continue
            if descriptors_differ(text, old.content):
                logger.debug("resolver_descriptor_guard", memory_id=old.id)
                continue
            logger.info("resolver_duplicate", memory_id=old.id, distance=round(nb.distance, 4))
            return Resolution(duplicate=old, distance=nb.distance, reason="duplicate")
        return Resolution()

    async def find_duplicate(
        self, user_id: str, category: str, text: str, vector: np.ndarray | None
    ) -> MemoryRecord | None:
        return (await self.resolve(user_id, category, text, vector)).duplicate

    async def _is_update(self, new_text: str, old_text: str) -> bool:
        if not self.config.update_detection or self.update_detector is None:
            return False
        outcome = await self.policy.run(
            "update_detection",
            lambda: self.update_detector.is_update(new_text, old_text),  # type: ignore[union-attr]
            fallback=False,
            timeout=self.timeout,
        )
        return bool(outcome.value)
