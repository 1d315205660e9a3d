"""Pattern tables shared by extraction, anchoring and merge guards."""

from __future__ import annotations

import re

# Identifier-shaped tokens: ZULU-55-Q, ALPHA-001, ALPHA-1767213514286,
# Dr. FOXTROT-123, long alphanumeric serials.
IDENTIFIER_RE = re.compile(
    r"\bDr\.\s*[A-Z]+-\d+\b"
    r"|\b[A-Z][A-Z0-9]*-\d+(?:-[A-Z0-9]+)*\b"
    r"|\b[A-Z]+-\d{10,}\b"
    r"|\b(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{12,}\b"
)

MONEY_RE = re.compile(
    r"[$€£]\s?\d[\d,]*(?:\.\d+)?(?:\s?[kKmM]\b)?(?:\s?/\s?(?:month|mo|year|yr|week|wk|hour|hr|day))?"
    r"|\b\d+(?:\.\d+)?[kK]\b"
    r"|\b\d[\d,]*(?:\.\d+)?\s?(?:dollars|usd|euros?|eur|gbp)\b",
    re.IGNORECASE,
)
YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
DURATION_RE = re.compile(
    r"\b\d+\+?\s*(?:years?|yrs?|months?|weeks?|days?|hours?)\b", re.IGNORECASE
)
TIME_RE = re.compile(r"\b\d{1,2}(?::\d{2})?\s?(?:am|pm)\b|\b\d{1,2}:\d{2}\b", re.IGNORECASE)
EMAIL_RE = re.compile(r"\b[\w.+-]+@[\w-]+(?:\.[\w-]+)+\b")
PHONE_RE = re.compile(r"(?:\+\d{1,3}[\s.-]?)?(?:\(\d{3}\)\s?|\b\d{3}[\s.-]?)\d{3}[\s.-]?\d{4}\b")
# iPhone, PlayStation, MacBook, and "Model 3" / "Galaxy S24" style product names.
BRAND_RE = re.compile(
    r"\b[a-z]+[A-Z][A-Za-z]+\b"
    r"|\b[A-Z][a-z]+[A-Z][A-Za-z]*\b"
    r"|\b[A-Z][a-z]+\s(?:[A-Z]?\d+[A-Za-z]*)\b"
)

PROTECTED_PATTERNS: tuple[re.Pattern[str], ...] = (
    IDENTIFIER_RE,
    EMAIL_RE,
    PHONE_RE,
    MONEY_RE,
    TIME_RE,
    DURATION_RE,
    YEAR_RE,
    BRAND_RE,
)

# "Car: Tesla Model 3 (aka: car, vehicle, ride)" or "Synonyms: ..."
SYNONYM_ANNOTATION_RE = re.compile(r"\((?:aka|also|synonyms?)\b[^)]*\)|\bsynonyms?:", re.IGNORECASE)

BOILERPLATE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"I don't retain memory",
        r"session-based memory",
        r"this appears to be our first interaction",
        r"I'm an AI(?: assistant)?",
        r"as an AI(?: language model)?",
        r"confidence is lower than ideal",
        r"I should clarify",
        r"I cannot access previous conversations",
        r"I don't have access to",
    )
)

HISTORICAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bpreviously\b",
        r"\bused to\b",
        r"\bold (?:salary|address|number|job|email)\b",
        r"\bformerly\b",
        r"\bno longer\b",
        r"\bback then\b",
        r"\bat the time\b",
    )
)

MEANINGLESS_MARKERS: tuple[str, ...] = (
    "no essential facts",
    "no key facts",
    "nothing to extract",
    "no facts",
)

EXPLICIT_REQUEST_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bremember\s+(?:this|that)\b",
        r"\bplease\s+remember\b",
        r"\bstore\s+(?:this|that)\b",
        r"\bsave\s+(?:this|that)\b",
        r"\bdon'?t\s+forget\b",
        r"\bkeep\s+(?:this|that)\s+in\s+mind\b",
        r"\bnote\s+(?:this|that)\s+down\b",
        r"\bmake\s+a\s+note\b",
    )
)

PRIORITY_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"(?:i |my )(?:priority|priorities|most important|care most about)",
        r"(?:always|never) (?:want|need|prefer)",
        r"(?:this is|that's) (?:important|critical|essential)",
        r"(?:don't|do not) ever",
        r"(?:make sure|ensure|remember that)",
    )
)

PII_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b"), "[CARD PROTECTED]"),
    (re.compile(r"\b\d{3}[-.]?\d{2}[-.]?\d{4}\b"), "[SSN PROTECTED]"),
)

FILLER_WORDS = frozenset(
    "the a an this that these those is are was were has have had".split()
)


def identifier_tokens(text: str) -> list[str]:
    """Identifier-shaped tokens in order of appearance, uppercased and deduped."""
    out: list[str] = []
    for m in IDENTIFIER_RE.finditer(text or ""):
        tok = m.group(0).upper()
        if tok not in out:
            out.append(tok)
    return out


def protected_tokens(text: str) -> list[str]:
    """Tokens extraction must carry through verbatim (ids, amounts, dates, brands)."""
    spans: list[tuple[int, int]] = []
    found: list[tuple[int, str]] = []
    for pattern in PROTECTED_PATTERNS:
        for m in pattern.finditer(text or ""):
            start, end = m.span()
            if any(start < e and end > s for s, e in spans):
                continue
            spans.append((start, end))
            found.append((start, m.group(0).strip()))
    out: list[str] = []
    for _, tok in sorted(found):
        if tok and tok not in out:
            out.append(tok)
    return out


def has_protected(line: str) -> bool:
    return bool(SYNONYM_ANNOTATION_RE.search(line)) or any(
        p.search(line) for p in PROTECTED_PATTERNS
    )


def token_present(token: str, text: str) -> bool:
    """Case, comma and whitespace tolerant containment check."""

    def _norm(s: str) -> str:
        return re.sub(r"[\s,]", "", s.lower())

    return _norm(token) in _norm(text)


def is_boilerplate(text: str) -> bool:
    return any(p.search(text or "") for p in BOILERPLATE_PATTERNS)


def is_historical(text: str) -> bool:
    return any(p.search(text or "") for p in HISTORICAL_PATTERNS)


def is_meaningless(text: str) -> bool:
    low = (text or "").strip().lower()
    return not low or any(marker in low for marker in MEANINGLESS_MARKERS)


def is_explicit_request(text: str) -> bool:
    return any(p.search(text or "") for p in EXPLICIT_REQUEST_PATTERNS)


def is_priority(text: str) -> bool:
    return any(p.search(text or "") for p in PRIORITY_PATTERNS)


def strip_boilerplate(text: str) -> str:
    out = text or ""
    for pattern in BOILERPLATE_PATTERNS:
        out = pattern.sub("", out)
    return re.sub(r"[ \t]{2,}", " ", out).strip()


def redact_pii(text: str) -> str:
    out = text or ""
    for pattern, label in PII_PATTERNS:
        out = pattern.sub(label, out)
    return out
