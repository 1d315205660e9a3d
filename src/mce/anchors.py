"""Anchor extraction: typed payloads pulled from the raw user message.

Anchors live in ``metadata.anchors`` and are what the anchor-preservation
validator later re-injects into answers, so every candidate is checked
against its declared type before it is kept.
"""

from __future__ import annotations

import re
import unicodedata

import structlog

from mce.compression import patterns
from mce.types import Anchors, ExplicitToken, OrdinalAnchor, TemporalAnchor
from mce.utils import utcnow

logger = structlog.get_logger(__name__)

ORDINAL_WORDS: dict[str, int] = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
    "1st": 1, "2nd": 2, "3rd": 3, "4th": 4, "5th": 5,
    "6th": 6, "7th": 7, "8th": 8, "9th": 9, "10th": 10,
}
_ORDINAL_RE = re.compile(
    r"\b(?:my|the)\s+(" + "|".join(ORDINAL_WORDS) + r")\s+([a-z][a-z'-]*)", re.IGNORECASE
)
_PRICE_RE = re.compile(
    r"[$€£]\s?\d[\d,]*(?:\.\d{1,2})?(?:\s?[kKmM]\b)?"
    r"(?:\s?(?:/|per\s)\s?(?:month|mo|year|yr|week|wk|hour|hr|day|user|seat))?"
    r"|\b\d[\d,]*(?:\.\d{1,2})?\s?(?:dollars|usd|euros?|gbp)\b",
    re.IGNORECASE,
)
_END_YEAR_RE = re.compile(
    r"\b(?:left|until|ended|quit|retired|graduated|finished|stopped)\b[^.\n]{0,40}?\b((?:19|20)\d{2})\b",
    re.IGNORECASE,
)
_DURATION_RE = re.compile(r"\b(\d{1,2})\+?\s*(?:years?|yrs?)\b", re.IGNORECASE)
_WORD_RE = re.compile(r"[^\W\d_][^\W\d_'’-]*", re.UNICODE)
_STOP_ITEMS = frozenset("a an the and or of to in on at for is was it".split())


def detect_ordinals(text: str) -> list[OrdinalAnchor]:
    out: list[OrdinalAnchor] = []
    for m in _ORDINAL_RE.finditer(text or ""):
        anchor = OrdinalAnchor(position=ORDINAL_WORDS[m.group(1).lower()], item=m.group(2).lower())
        if valid_ordinal(anchor) and anchor not in out:
            out.append(anchor)
    return out


def valid_price(value: str) -> bool:
    has_currency = bool(re.search(r"[$€£]|dollars|usd|euros?|gbp", value, re.IGNORECASE))
    return has_currency and bool(re.search(r"\d", value))


def valid_year(year: int) -> bool:
    return 1900 <= year <= utcnow().year + 50


def valid_duration(years: int) -> bool:
    return 1 <= years <= 80


def valid_unicode_name(value: str) -> bool:
    if len(value) < 2 or value.isascii():
        return False
    return all(unicodedata.category(ch).startswith("L") or ch in "'’-" for ch in value)


def valid_ordinal(anchor: OrdinalAnchor) -> bool:
    return 1 <= anchor.position <= 10 and anchor.item.isalpha() and anchor.item not in _STOP_ITEMS


def valid_token(token: ExplicitToken) -> bool:
    if token.type == "identifier":
        return patterns.IDENTIFIER_RE.fullmatch(token.value) is not None
    if token.type == "email":
        return patterns.EMAIL_RE.fullmatch(token.value) is not None
    if token.type == "phone":
        return 10 <= len(re.sub(r"\D", "", token.value)) <= 15
    return False


class AnchorExtractor:
    """Pulls pricing, temporal, unicode, ordinal and explicit-token anchors."""

    def extract(self, text: str) -> Anchors:
        source = text or ""
        anchors = Anchors(
            pricing=self._pricing(source),
            temporal=self._temporal(source),
            unicode=self._unicode(source),
            ordinal=detect_ordinals(source),
            explicit_token=self._tokens(source),
        )
        if not anchors.is_empty():
            logger.debug("anchors_extracted", kinds=sorted(anchors.to_metadata()))
        return anchors

    def _pricing(self, text: str) -> list[str]:
        out: list[str] = []
        for m in _PRICE_RE.finditer(text):
            value = m.group(0).strip()
            if valid_price(value) and value not in out:
                out.append(value)
        return out

    def _temporal(self, text: str) -> TemporalAnchor | None:
        end_year = None
        m = _END_YEAR_RE.search(text)
        if m and valid_year(int(m.group(1))):
            end_year = int(m.group(1))
        duration = None
        m = _DURATION_RE.search(text)
        if m and valid_duration(int(m.group(1))):
            duration = int(m.group(1))
        if end_year is None and duration is None:
            return None
        return TemporalAnchor(end_year=end_year, duration_years=duration)

    def _unicode(self, text: str) -> list[str]:
        out: list[str] = []
        for word in _WORD_RE.findall(text):
            word = word.strip("'’-")
            if valid_unicode_name(word) and word not in out:
                out.append(word)
        return out

    def _tokens(self, text: str) -> list[ExplicitToken]:
        found: list[ExplicitToken] = []
        for m in patterns.IDENTIFIER_RE.finditer(text):
            found.append(ExplicitToken(type="identifier", value=m.group(0)))
        for m in patterns.EMAIL_RE.finditer(text):
            found.append(ExplicitToken(type="email", value=m.group(0)))
        for m in patterns.PHONE_RE.finditer(text):
            found.append(ExplicitToken(type="phone", value=m.group(0).strip()))
        out: list[ExplicitToken] = []
        for token in found:
            if valid_token(token) and token not in out:
                out.append(token)
        return out
