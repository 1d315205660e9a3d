"""Shared utilities."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any

import orjson
import structlog
import tiktoken

logger = structlog.get_logger(__name__)

_TERM_RE = re.compile(r"[\w$][\w$'\-.,]*", re.UNICODE)
_STOPWORDS = frozenset(
    "a an and are as at be but by do does did for from had has have how i i'm in is it "
    "its me my of on or our so that the their them there these they this those to "
    "up was we were what when where which who why will with you your".split()
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


def json_loads(data: str | bytes) -> Any:
    return orjson.loads(data)


def iso_str(dt: datetime) -> str:
    return dt.isoformat()


def parse_iso(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_mode(mode: str | None) -> str:
    return (mode or "truth-general").strip().replace("_", "-") or "truth-general"


def query_terms(text: str) -> list[str]:
    """Lowercased content terms used for keyword overlap scoring."""
    out: list[str] = []
    seen: set[str] = set()
    for raw in _TERM_RE.findall((text or "").lower()):
        term = raw.strip(".,'-")
        if not term or term in _STOPWORDS or term in seen:
            continue
        seen.add(term)
        out.append(term)
    return out


class TokenCounter:
    """Counts model tokens with tiktoken, or len/4 when the encoding is unavailable."""

    def __init__(self, tokenizer: str = "tiktoken", encoding: str = "cl100k_base") -> None:
        self.tokenizer = (tokenizer or "tiktoken").strip().lower()
        self.encoding_name = encoding
        self._encoding = None
        self._load_failed = self.tokenizer != "tiktoken"

    def _get_encoding(self):
        if self._encoding is not None or self._load_failed:
            return self._encoding
        try:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        except Exception as exc:
            self._load_failed = True
            logger.warning("tokenizer_unavailable", encoding=self.encoding_name, error=str(exc))
        return self._encoding

    def count(self, text: str) -> int:
        payload = text or ""
        if not payload:
            return 0
        enc = self._get_encoding()
        if enc is not None:
            return len(enc.encode(payload))
        return max(1, math.ceil(len(payload) / 4))
