"""Fact compression: LLM extraction followed by a deterministic repair pass."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

import structlog

from mce.compression import patterns
from mce.config import CompressionConfig, LLMConfig
from mce.degrade import DegradePolicy
from mce.exceptions import ExtractionError
from mce.llm.backends import ChatBackend
from mce.llm.messages import Message
from mce.observability import preview

logger = structlog.get_logger(__name__)

EXTRACTION_PROMPT = """Extract ONLY the essential facts the USER stated in this exchange. Be extremely brief but PRESERVE all identifiers and numeric values.

Rules:
1. Preserve alphanumeric identifiers exactly (e.g. ECHO-123-ABC, ALPHA-456).
2. Preserve names, codes, serial numbers, prices, salaries, dates and times verbatim.
3. Never generalize an identifier into a description like "identifier" or "code".
4. If the user says "My X is Y", the output must contain Y exactly.
5. Only facts the user stated. Ignore the assistant's explanations, disclaimers and questions.
6. At most 3-5 facts, one per line, 3-8 words each.

Examples:
"My license plate is ABC-123-XYZ" -> License plate: ABC-123-XYZ
"I got a raise! They're now paying me $250,000" -> Salary: $250,000
"Meeting moved to 4pm" -> Meeting: 4pm

User: {user}
Assistant: {assistant}

Facts:"""

_BULLET_RE = re.compile(r"^(?:[-•*]+|\d+[.)\]])\s*")
_LINE_SPLIT_RE = re.compile(r"\n|(?<!\bDr)(?<!\bMr)(?<!\bMs)(?<!\bMrs)(?<!\bSt)\.(?=\s+[A-Z]|$)")
_CONTEXT_WORD = r"[\w.'$:]+"


@dataclass
class Compression:
    facts: str
    method: str
    fallback: bool = False
    reason: str = ""
    injected: list[str] = field(default_factory=list)


class FactCompressor:
    """Turns a (user message, assistant reply) exchange into a few terse facts.

    Extraction is delegated to a chat backend; everything after that is
    deterministic: historical or boilerplate output is rejected, the
    length policy is applied, and any protected token from the user
    message that the model dropped is re-injected with a little context.
    """

    def __init__(
        self,
        chat: ChatBackend | None,
        config: CompressionConfig | None = None,
        llm_config: LLMConfig | None = None,
        policy: DegradePolicy | None = None,
    ) -> None:
        self.chat = chat
        self.config = config or CompressionConfig()
        self.llm_config = llm_config or LLMConfig()
        self.policy = policy or DegradePolicy()

    async def compress(self, user_message: str, assistant_reply: str) -> Compression:
        user = (user_message or "").strip()
        assistant = patterns.strip_boilerplate(assistant_reply or "")
        if self.chat is None:
            return self._fallback(user, assistant, "no_chat_backend")

        outcome = await self.policy.run(
            "extraction",
            lambda: self._extract(user, assistant),
            timeout=self.llm_config.timeout,
        )
        if not outcome.ok or outcome.value is None:
            return self._fallback(user, assistant, outcome.reason)
        raw = outcome.value

        if patterns.is_boilerplate(raw) or patterns.is_historical(raw):
            logger.info("extraction_rejected", preview=preview(raw))
            facts = self._redact(user)
            return Compression(facts=facts, method="rejected", fallback=True, reason="historical_or_boilerplate")

        if patterns.is_meaningless(raw):
            facts = self._redact(user[: self.config.raw_fallback_chars].strip())
            return Compression(facts=facts, method="user_message", reason="meaningless_extraction")

        lines = self.post_process(raw)
        lines, injected = self.repair(user, lines)
        facts = self._redact("\n".join(lines))
        if not facts:
            facts = self._redact(user[: self.config.raw_fallback_chars].strip())
            return Compression(facts=facts, method="user_message", reason="empty_after_policy")
        if injected:
            logger.info("protected_tokens_injected", tokens=injected)
        return Compression(facts=facts, method="llm", injected=injected)

    async def _extract(self, user: str, assistant: str) -> str:
        prompt = EXTRACTION_PROMPT.format(user=user, assistant=assistant)
        resp = await self.chat.chat(  # type: ignore[union-attr]
            [Message(role="user", content=prompt)],
            temperature=self.llm_config.temperature,
            max_tokens=self.llm_config.max_tokens,
        )
        text = (resp.content or "").strip()
        if not text:
            raise ExtractionError("empty extraction")
        return text

    def post_process(self, raw: str) -> list[str]:
        """Apply the line/word length policy to raw extraction output."""
        cfg = self.config
        lines = [_BULLET_RE.sub("", ln.strip()).strip() for ln in _LINE_SPLIT_RE.split(raw)]
        lines = [ln for ln in lines if ln]

        protected = [ln for ln in lines if patterns.has_protected(ln)]
        plain = [ln for ln in lines if not patterns.has_protected(ln)]
        max_lines = cfg.max_lines_with_identifiers if protected else cfg.max_lines
        plain = plain[: max(0, max_lines - len(protected))]

        out: list[str] = []
        seen: set[str] = set()
        for line in protected:
            line = self._trim_protected(line)
            key = line.lower().rstrip(".!?")
            if key not in seen:
                seen.add(key)
                out.append(line)
        for line in plain:
            tokens = line.split()
            # Filler goes first so the word cap keeps content words.
            tokens = tokens[:1] + [w for w in tokens[1:] if w.lower() not in patterns.FILLER_WORDS]
            if len(tokens) < 3:
                continue
            line = " ".join(tokens[: cfg.max_words])
            key = line.lower().rstrip(".!?")
            if key not in seen:
                seen.add(key)
                out.append(line)
        return [ln if ln[-1] in ".!?" else ln + "." for ln in out]

    def _trim_protected(self, line: str) -> str:
        tokens = line.split()
        limit = self.config.max_words_identifier
        if len(tokens) <= limit:
            return line
        slim = tokens[:1] + [w for w in tokens[1:] if w.lower() not in patterns.FILLER_WORDS]
        if len(slim) <= limit:
            return " ".join(slim)
        cut = " ".join(slim[:limit])
        if all(patterns.token_present(t, cut) for t in patterns.protected_tokens(line)):
            return cut
        return " ".join(slim)

    def repair(self, source: str, lines: list[str]) -> tuple[list[str], list[str]]:
        """Re-inject protected tokens of ``source`` missing from ``lines``."""
        text = "\n".join(lines)
        injected: list[str] = []
        out = list(lines)
        for token in patterns.protected_tokens(source):
            if patterns.token_present(token, text):
                continue
            m = re.search(rf"(?:{_CONTEXT_WORD}\s+){{0,3}}{re.escape(token)}", source, re.IGNORECASE)
            line = m.group(0).strip() if m and m.group(0).strip() != token else f"Identifier: {token}"
            line = line if line[-1] in ".!?" else line + "."
            out.append(line)
            text += "\n" + line
            injected.append(token)
        return out, injected

    def _fallback(self, user: str, assistant: str, reason: str) -> Compression:
        facts = f"User: {user}\nAssistant: {assistant}".strip()
        return Compression(facts=self._redact(facts), method="fallback", fallback=True, reason=reason)

    def _redact(self, text: str) -> str:
        return patterns.redact_pii(text) if self.config.redact_pii else text
