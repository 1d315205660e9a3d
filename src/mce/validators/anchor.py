"""Anchor preservation: answers must carry the payloads their memories hold."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Sequence

import structlog

from mce.anchors import valid_price, valid_token, valid_unicode_name, valid_year
from mce.types import MemoryRecord
from mce.validators.base import CorrectionHistory, SessionContext, ValidationResult

logger = structlog.get_logger(__name__)

PRICE_WORDS = ("price", "cost", "pricing", "plan", "tier", "fee", "charge", "rate", "pay", "how much")
DATE_WORDS = ("date", "when", "year", "how long", "duration", "since", "until")
IDENTIFIER_WORDS = ("code", "id", "identifier", "number", "serial", "account", "plate", "email", "phone")
NAME_WORDS = ("name", "called", "who", "spell")

_LABELS = {"price": "Pricing", "date": "Dates", "identifier": "Identifiers", "name": "Names"}


@dataclass(frozen=True)
class Anchor:
    type: str
    value: str


def _wants(query: str, words: tuple[str, ...]) -> bool:
    return any(re.search(rf"\b{re.escape(w)}\b", query) for w in words)


class AnchorPreservationValidator:
    name = "anchor_preservation"

    def __init__(self, history_size: int = 100) -> None:
        self.history = CorrectionHistory(history_size)

    def validate(
        self,
        response: str,
        records: Sequence[MemoryRecord],
        query: str,
        session: SessionContext,
    ) -> ValidationResult:
        anchors = self.collect(records)
        if not anchors:
            return ValidationResult.unchanged(response, anchors_checked=0)
        relevant = self.relevant(anchors, query)
        missing = [a for a in relevant if not self.present(response, a)]
        if not missing:
            return ValidationResult.unchanged(response, anchors_checked=len(relevant))

        grouped: dict[str, list[str]] = {}
        for a in missing:
            grouped.setdefault(a.type, []).append(a.value)
        parts = [f"{_LABELS[kind]}: {', '.join(values)}" for kind, values in grouped.items()]
        adjusted = f"{response}\n\n(Key details: {'; '.join(parts)})"
        self.history.record("missing_anchor", session, missing=[a.value for a in missing])
        logger.info("anchors_injected", count=len(missing), session_id=session.session_id)
        return ValidationResult(
            changed=True,
            response=adjusted,
            details={"anchors_checked": len(relevant), "injected": [a.value for a in missing]},
        )

    def collect(self, records: Sequence[MemoryRecord]) -> list[Anchor]:
        """Typed anchors from record metadata; entries failing type checks are dropped."""
        out: list[Anchor] = []
        for record in records:
            anchors = record.anchors
            for price in anchors.pricing:
                if valid_price(price):
                    out.append(Anchor("price", price))
            if anchors.temporal and anchors.temporal.end_year and valid_year(anchors.temporal.end_year):
                out.append(Anchor("date", str(anchors.temporal.end_year)))
            if anchors.temporal and anchors.temporal.duration_years:
                out.append(Anchor("date", f"{anchors.temporal.duration_years} years"))
            for name in anchors.unicode:
                if valid_unicode_name(name):
                    out.append(Anchor("name", name))
            for token in anchors.explicit_token:
                if valid_token(token):
                    out.append(Anchor("identifier", token.value))
        deduped: list[Anchor] = []
        for a in out:
            if a not in deduped:
                deduped.append(a)
        return deduped

    def relevant(self, anchors: list[Anchor], query: str) -> list[Anchor]:
        q = (query or "").lower()
        wanted = {
            kind
            for kind, words in (
                ("price", PRICE_WORDS),
                ("date", DATE_WORDS),
                ("identifier", IDENTIFIER_WORDS),
                ("name", NAME_WORDS),
            )
            if _wants(q, words)
        }
        if not wanted:
            return anchors
        return [a for a in anchors if a.type in wanted]

    @staticmethod
    def present(response: str, anchor: Anchor) -> bool:
        if anchor.value in response:
            return True
        if anchor.type == "price":
            m = re.search(r"\d[\d,]*(?:\.\d+)?", anchor.value)
            if not m:
                return False
            numeric = m.group(0).replace(",", "")
            flat = response.replace(",", "")
            return re.search(rf"(?<![\d.]){re.escape(numeric)}(?:\.0+)?(?!\d)", flat) is not None
        if anchor.type in {"identifier", "name"}:
            return anchor.value.lower() in response.lower()
        return False

    def stats(self) -> dict[str, Any]:
        return self.history.summary()
