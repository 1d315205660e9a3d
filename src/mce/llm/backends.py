"""LLM backend abstraction layer."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from mce.llm.messages import ChatResponse, Message


@runtime_checkable
class ChatBackend(Protocol):
    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> ChatResponse: ...

    def stats(self) -> dict[str, Any]: ...
