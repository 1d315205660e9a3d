"""Conflict detection: surface a restriction that collides with a housemate's preference."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

import structlog

from mce.types import MemoryRecord
from mce.validators.base import CorrectionHistory, SessionContext, ValidationResult

logger = structlog.get_logger(__name__)

ITEM_GROUPS: dict[str, tuple[str, ...]] = {
    "cats": ("cat", "cats", "kitten", "kittens", "kitty", "feline"),
    "dogs": ("dog", "dogs", "puppy", "puppies", "canine"),
    "pets": ("pet", "pets", "animal", "animals"),
    "birds": ("bird", "birds", "parrot"),
    "seafood": ("seafood", "shellfish", "fish", "shrimp", "crab", "lobster", "clam", "oyster", "sushi"),
    "nuts": ("nut", "nuts", "peanut", "peanuts", "almond", "almonds", "cashew", "walnut"),
    "dairy": ("dairy", "milk", "cheese", "lactose"),
    "gluten": ("gluten", "wheat", "bread", "pasta"),
    "smoke": ("smoke", "smoking", "cigarette", "cigarettes", "cigar"),
    "alcohol": ("alcohol", "wine", "beer"),
}
# Specific animals also match the generic "pets" group.
PARENT_GROUPS = {"cats": "pets", "dogs": "pets", "birds": "pets"}

HOUSEHOLD = r"(?:wife|husband|spouse|partner|girlfriend|boyfriend|roommate|kids?|son|daughter|fianc[eé]e?)"
PREFERENCE_VERBS = r"(?:loves?|likes?|prefers?|wants?|enjoys?|adores?)"

TENSION_MARKERS = (
    "tradeoff", "trade-off", "trade off", "conflict", "tension", "dilemma",
    "difficult decision", "tough choice", "competing", "at odds",
)


@dataclass(frozen=True)
class ConflictRule:
    type: str
    restriction: re.Pattern[str]
    preference: re.Pattern[str]
    restriction_phrase: re.Pattern[str]


DEFAULT_RULES: tuple[ConflictRule, ...] = (
    ConflictRule(
        type="allergy_vs_preference",
        restriction=re.compile(r"\b(?:allerg(?:y|ies|ic)|intoleran(?:t|ce)|can'?t have|cannot have)\b", re.I),
        preference=re.compile(
            rf"\b{HOUSEHOLD}\b[^.\n]*\b{PREFERENCE_VERBS}\b|\b{PREFERENCE_VERBS}\b[^.\n]*\b{HOUSEHOLD}\b", re.I
        ),
        restriction_phrase=re.compile(
            r"\b(?:allergic to|allergy to|intolerant to|can'?t have|cannot have)\s+[a-z][a-z\s]*?(?=[.,;!]|$)",
            re.I,
        ),
    ),
    ConflictRule(
        type="phobia_vs_preference",
        restriction=re.compile(r"\b(?:afraid of|scared of|terrified of|phobia of)\b", re.I),
        preference=re.compile(
            rf"\b{HOUSEHOLD}\b[^.\n]*\b{PREFERENCE_VERBS}\b|\b{PREFERENCE_VERBS}\b[^.\n]*\b{HOUSEHOLD}\b", re.I
        ),
        restriction_phrase=re.compile(
            r"\b(?:afraid of|scared of|terrified of|phobia of)\s+[a-z][a-z\s]*?(?=[.,;!]|$)", re.I
        ),
    ),
)

_PREFERENCE_PHRASE = re.compile(
    rf"\b{HOUSEHOLD}\b[^.\n]*?\b{PREFERENCE_VERBS}\b\s+[a-z][a-z\s]*?(?=[.,;!]|$)", re.I
)


def item_groups(text: str) -> set[str]:
    words = set(re.findall(r"[a-z]+", (text or "").lower()))
    groups = {name for name, members in ITEM_GROUPS.items() if words.intersection(members)}
    groups.update(PARENT_GROUPS[g] for g in list(groups) if g in PARENT_GROUPS)
    return groups


def acknowledges_tension(response: str) -> bool:
    low = (response or "").lower()
    return any(marker in low for marker in TENSION_MARKERS)


@dataclass
class Conflict:
    type: str
    restriction: MemoryRecord
    preference: MemoryRecord
    items: set[str]


class ConflictDetectionValidator:
    name = "conflict_detection"

    def __init__(self, rules: Sequence[ConflictRule] | None = None, history_size: int = 100) -> None:
        self.rules = tuple(rules or DEFAULT_RULES)
        self.history = CorrectionHistory(history_size)

    def detect(self, records: Sequence[MemoryRecord]) -> list[Conflict]:
        conflicts: list[Conflict] = []
        for rule in self.rules:
            restrictions = [r for r in records if rule.restriction.search(r.content or "")]
            preferences = [
                r for r in records
                if rule.preference.search(r.content or "") and r not in restrictions
            ]
            for restriction in restrictions:
                r_items = item_groups(restriction.content)
                for preference in preferences:
                    shared = r_items & item_groups(preference.content)
                    if shared:
                        conflicts.append(Conflict(rule.type, restriction, preference, shared))
                        break
        return conflicts

    def acknowledgment(self, conflict: Conflict) -> str:
        rule = next(r for r in self.rules if r.type == conflict.type)
        restriction = _phrase(rule.restriction_phrase, conflict.restriction.content)
        preference = _phrase(_PREFERENCE_PHRASE, conflict.preference.content)
        return f"There's a real tradeoff here: {restriction}, but {preference}."

    def validate(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> ValidationResult:
        conflicts = self.detect(records)
        if not conflicts or acknowledges_tension(response):
            return ValidationResult.unchanged(response, conflicts=len(conflicts))
        lines = [self.acknowledgment(c) for c in conflicts]
        adjusted = f"{' '.join(lines)}\n\n{response}"
        self.history.record("unacknowledged_conflict", session, types=[c.type for c in conflicts])
        logger.info("conflict_acknowledged", conflicts=len(conflicts), session_id=session.session_id)
        return ValidationResult(
            changed=True,
            response=adjusted,
            details={"conflicts": [{"type": c.type, "items": sorted(c.items)} for c in conflicts]},
        )

    def stats(self) -> dict[str, Any]:
        return self.history.summary()


def _phrase(pattern: re.Pattern[str], content: str) -> str:
    m = pattern.search(content or "")
    text = (m.group(0) if m else (content or "")).strip().rstrip(".!?;,")
    return text[:1].lower() + text[1:] if text[1:2].islower() else text
