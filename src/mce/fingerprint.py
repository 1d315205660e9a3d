"""Canonical fact-type classification.

A fingerprint names the slot a fact fills ("user_salary", "user_email").
Rules are plain data: indicator phrases, optional value patterns and a
base confidence. The first rule whose indicator appears wins; when the
rule has value patterns and none of them match, confidence is scaled
down so the fact no longer qualifies for supersession.

When no rule matches, ``ModelFingerprinter`` can ask the chat model to
pick a slot from the same list.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from mce.config import LLMConfig
from mce.degrade import DegradePolicy
from mce.llm.backends import ChatBackend
from mce.llm.messages import Message
from mce.types import FingerprintInfo

logger = structlog.get_logger(__name__)

VALUE_MISS_FACTOR = 0.6
MODEL_CONFIDENCE = 0.75
# Single-valued slots only the model fallback can name.
MODEL_ONLY_SLOTS = ("user_favorite_color", "user_preferred_language", "user_dietary_preference")

_MONEY = [r"\$\s?[\d,]+", r"\b\d+(?:\.\d+)?[kK]\b", r"\b\d{1,3},\d{3}\b", r"\b\d{5,}\b"]
_TIME = [r"\b\d{1,2}:\d{2}\b", r"\b\d{1,2}\s?(?i:am|pm)\b"]


@dataclass(frozen=True)
class FingerprintRule:
    id: str
    indicators: tuple[str, ...]
    confidence: float
    value_patterns: tuple[str, ...] = ()
    single_valued: bool = True

    def indicator_re(self) -> re.Pattern[str]:
        return re.compile(r"\b(?:" + "|".join(self.indicators) + r")\b", re.IGNORECASE)

    def value_res(self) -> tuple[re.Pattern[str], ...]:
        return tuple(re.compile(p) for p in self.value_patterns)


DEFAULT_RULES: tuple[FingerprintRule, ...] = (
    FingerprintRule(
        "user_salary",
        ("salary", "income", "pay", "paid", "paying", "compensation", "earn", "earns", "earning",
         "wage", "wages", "make", "making", "raise", "bumped"),
        0.90,
        tuple(_MONEY),
    ),
    FingerprintRule(
        "user_job_title",
        ("job title", "title", "position", "role", "work as", "working as", "employed as",
         "promoted to"),
        0.85,
    ),
    FingerprintRule(
        "user_employer",
        ("employer", "work at", "working at", "work for", "working for", "employed by", "joined"),
        0.85,
    ),
    FingerprintRule(
        "user_phone_number",
        ("phone", "phone number", "mobile", "cell", "telephone", "reach me", "text me"),
        0.95,
        (r"\d{3}[-.\s]?\d{3}[-.\s]?\d{4}", r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"),
    ),
    FingerprintRule(
        "user_email",
        ("email", "e-mail", "mail"),
        0.95,
        (r"[\w.+-]+@[\w-]+\.[\w.]+",),
    ),
    FingerprintRule(
        "user_location_residence",
        ("address", "live in", "lives in", "living in", "reside", "moved to", "moving to",
         "based in", "i'm from", "i am from", "hometown"),
        0.85,
    ),
    FingerprintRule(
        "user_name",
        ("my name", "name is", "call me", "goes by", "i go by"),
        0.85,
        (r"(?i:name is|name:|call me|goes by|go by)\s*[A-Z][\w'-]+",),
    ),
    FingerprintRule(
        "user_allergy",
        ("allergy", "allergies", "allergic", "intolerant", "intolerance", "reaction to"),
        0.95,
        single_valued=False,
    ),
    FingerprintRule(
        "user_medical_condition",
        ("diagnosed", "diagnosis", "condition", "disease", "illness", "medical"),
        0.90,
        single_valued=False,
    ),
    FingerprintRule(
        "user_age",
        ("age", "aged", "years old", "year old", "born", "birthday"),
        0.90,
        (r"\d{1,3}\s*(?i:years?|yrs?)", r"\d{1,3}\s*old", r"(?i:age)\s*(?:is\s*)?\d+", r"(?:19|20)\d{2}"),
    ),
    FingerprintRule(
        "user_marital_status",
        ("married", "single", "divorced", "engaged", "widowed", "wife", "husband", "spouse"),
        0.90,
        (r"(?i)\b(?:married|single|divorced|engaged|widowed|separated)\b",),
    ),
    FingerprintRule(
        "user_pet",
        ("pets?", "dogs?", "cats?", "puppy", "kitten", "parrot", "hamster"),
        0.80,
        (r"\b(?i:named|called)\s+[A-Z]\w+", r"\b(?i:name is)\s+[A-Z]\w+"),
        single_valued=False,
    ),
    FingerprintRule(
        "user_meeting_time",
        ("meeting", "appointment", "scheduled", "rescheduled", "standup", "call"),
        0.90,
        tuple(_TIME),
    ),
    FingerprintRule(
        "quoted_price",
        ("price", "priced", "cost", "costs", "pricing", "fee", "subscription", "plan"),
        0.75,
        (r"[$€£]\s?\d[\d,]*",),
    ),
    FingerprintRule(
        "user_timezone",
        ("timezone", "time zone", "est", "pst", "cst", "mst", "utc", "gmt", "cet"),
        0.85,
    ),
)


class FingerprintClassifier:
    """Classifies text into a canonical fact slot using an ordered rule table."""

    def __init__(self, rules: tuple[FingerprintRule, ...] | list[FingerprintRule] | None = None) -> None:
        self.rules = tuple(rules or DEFAULT_RULES)
        self._compiled = [(r, r.indicator_re(), r.value_res()) for r in self.rules]

    def classify(self, text: str) -> FingerprintInfo:
        if not text or not text.strip():
            return FingerprintInfo(method="invalid_input")
        for rule, indicator, values in self._compiled:
            if not indicator.search(text):
                continue
            if not values:
                return FingerprintInfo(
                    id=rule.id,
                    confidence=rule.confidence,
                    method="indicator",
                    single_valued=rule.single_valued,
                )
            if any(v.search(text) for v in values):
                return FingerprintInfo(
                    id=rule.id,
                    confidence=rule.confidence,
                    method="indicator_with_value",
                    single_valued=rule.single_valued,
                )
            return FingerprintInfo(
                id=rule.id,
                confidence=round(rule.confidence * VALUE_MISS_FACTOR, 4),
                method="indicator_without_value",
                single_valued=rule.single_valued,
            )
        return FingerprintInfo()

    def classify_turn(self, facts: str, user_message: str) -> FingerprintInfo:
        """Classify the compressed facts, then the raw user message as a second pass."""
        info = self.classify(facts)
        if info.matched:
            return info
        info = self.classify(user_message)
        if info.matched:
            info = info.model_copy(update={"method": f"{info.method}:user_message"})
            logger.debug("fingerprint_from_user_message", fingerprint=info.id)
        return info


FINGERPRINT_PROMPT = """Name the personal-fact slot this statement fills.

Statement: {text}

Slots:
{slots}

Answer with exactly one slot name from the list.
Answer "null" if the statement is not a lasting personal fact about the user (an opinion, a question or a request)."""


class ModelFingerprinter:
    """Chat-model fallback for facts the rule table does not recognise.

    The answer is only accepted when it names a known slot. Unknown
    answers, timeouts and errors all come back unmatched, so a model
    outage never blocks the write.
    """

    def __init__(
        self,
        chat: ChatBackend,
        rules: tuple[FingerprintRule, ...] | list[FingerprintRule] | None = None,
        config: LLMConfig | None = None,
        policy: DegradePolicy | None = None,
    ) -> None:
        self.chat = chat
        self.config = config or LLMConfig()
        self.policy = policy or DegradePolicy()
        self.slots: dict[str, bool] = {r.id: r.single_valued for r in (rules or DEFAULT_RULES)}
        for slot in MODEL_ONLY_SLOTS:
            self.slots.setdefault(slot, True)

    async def classify(self, text: str) -> FingerprintInfo:
        if not text or not text.strip():
            return FingerprintInfo(method="invalid_input")
        outcome = await self.policy.run(
            "fingerprint_model",
            lambda: self._ask(text),
            timeout=self.config.fingerprint_timeout,
        )
        if not outcome.ok:
            return FingerprintInfo(method="model_timeout" if outcome.reason.startswith("timeout") else "model_error")
        answer = outcome.value or ""
        if answer not in self.slots:
            if answer != "null":
                logger.debug("fingerprint_model_unknown", answer=answer[:40])
            return FingerprintInfo(method="model")
        logger.debug("fingerprint_from_model", fingerprint=answer)
        return FingerprintInfo(
            id=answer,
            confidence=MODEL_CONFIDENCE,
            method="model",
            single_valued=self.slots[answer],
        )

    async def _ask(self, text: str) -> str:
        prompt = FINGERPRINT_PROMPT.format(
            text=text.strip(),
            slots="\n".join(f"- {slot}" for slot in self.slots),
        )
        resp = await self.chat.chat(
            [Message(role="user", content=prompt)],
            temperature=0.0,
            max_tokens=20,
        )
        return (resp.content or "").strip().strip("\"'`.").lower()
