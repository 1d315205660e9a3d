"""Manipulation guard: block principle-override and false-certainty prompts before generation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

import structlog

from mce.validators.base import CorrectionHistory, SessionContext

logger = structlog.get_logger(__name__)

PRINCIPLES_RESPONSE = (
    "I maintain my principles consistently because they exist to serve you well, "
    "not because I'm following arbitrary rules. How can I actually help you?"
)
CERTAINTY_RESPONSE = (
    "I care too much about giving you accurate information to make guarantees I can't verify. "
    "No honest advisor can promise specific outcomes with certainty. What I can do is give you "
    "the best available information and reasoning to help you make an informed decision."
)


@dataclass(frozen=True)
class ManipulationRule:
    type: str
    severity: str
    pattern: re.Pattern[str]

    @property
    def response(self) -> str:
        return PRINCIPLES_RESPONSE if self.severity == "high" else CERTAINTY_RESPONSE


def _rule(type_: str, severity: str, pattern: str) -> ManipulationRule:
    return ManipulationRule(type_, severity, re.compile(pattern, re.IGNORECASE))


DEFAULT_RULES: tuple[ManipulationRule, ...] = (
    _rule("rule_override", "high", r"ignore\s+(?:your|all|any)\s+(?:previous\s+)?(?:rules|instructions|guidelines|principles)"),
    _rule("unrestricted_mode", "high", r"pretend\s+(?:you're|you are|to be)\s+(?:unrestricted|unlimited|free|unfiltered)"),
    _rule("no_limits", "high", r"act\s+as\s+if\s+(?:you\s+have\s+no|there\s+are\s+no)\s+(?:rules|limits|restrictions)"),
    _rule("programming_override", "high", r"override\s+(?:your|the)\s+(?:programming|instructions|guidelines)"),
    _rule("forget_rules", "high", r"forget\s+(?:your|all)\s+(?:rules|training|instructions)"),
    _rule("freedom_declaration", "high", r"you\s+are\s+now\s+(?:free|unrestricted|unlimited)"),
    _rule("disable_safety", "high", r"disable\s+(?:your|all)\s+(?:safety|filters|restrictions)"),
    _rule("jailbreak", "high", r"\bjailbreak"),
    _rule("dan_mode", "high", r"\bDAN\s+mode\b"),
    _rule("false_certainty", "medium", r"guarantee.*100\s*%|100\s*%.*guarantee"),
    _rule("false_certainty", "medium", r"100\s*%\s*(?:certainty|certain)|(?:certainty|certain).*100\s*%"),
    _rule("false_certainty", "medium", r"(?:guarantee|promise|assure).*(?:definitely|certainly|100\s*%)"),
    _rule("promise_demand", "medium", r"promise\s+(?:me\s+)?(?:it\s+will|that|this\s+will)\s+(?:definitely|certainly|absolutely)"),
    _rule("guarantee_demand", "medium", r"you\s+(?:must|have to|need to)\s+guarantee"),
)


@dataclass
class GuardResult:
    blocked: bool
    type: str = ""
    severity: str = ""
    response: str = ""


class ManipulationGuard:
    name = "manipulation_guard"

    def __init__(self, rules: tuple[ManipulationRule, ...] | None = None, history_size: int = 100) -> None:
        self.rules = rules or DEFAULT_RULES
        self.history = CorrectionHistory(history_size)

    def check(self, user_message: str, session: SessionContext | None = None) -> GuardResult:
        text = user_message or ""
        for rule in self.rules:
            if rule.pattern.search(text):
                self.history.record(rule.type, session or SessionContext(), severity=rule.severity,
                                    user_message=text[:200])
                logger.warning("manipulation_blocked", type=rule.type, severity=rule.severity)
                return GuardResult(blocked=True, type=rule.type, severity=rule.severity, response=rule.response)
        return GuardResult(blocked=False)

    def stats(self) -> dict[str, Any]:
        return self.history.summary()
