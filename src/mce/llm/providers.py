"""Chat backend providers (OpenAI, Anthropic, Ollama) over httpx."""

from __future__ import annotations

import os
from typing import Any

import httpx

from mce.llm.messages import ChatResponse, Message


class _HTTPChatBackend:
    """Shared client lifecycle and usage accounting for HTTP chat providers."""

    endpoint = ""
    api_key_env = ""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "",
        base_url: str = "",
        timeout: float = 30.0,
        temperature: float = 0.0,
        max_tokens: int = 300,
    ) -> None:
        self.api_key = api_key or (os.environ.get(self.api_key_env, "") if self.api_key_env else "")
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: httpx.AsyncClient | None = None
        self._stats = {"calls": 0, "input_tokens": 0, "output_tokens": 0}

    def _headers(self) -> dict[str, str]:
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self.api_key_env and not self.api_key:
            raise RuntimeError(f"{self.api_key_env} is required")
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )
        return self._client

    def _body(
        self,
        messages: list[Message],
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        raise NotImplementedError

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
    ) -> ChatResponse:
        client = await self._get_client()
        body = self._body(
            messages,
            temperature if temperature is not None else self.temperature,
            max_tokens if max_tokens is not None else self.max_tokens,
            json_mode,
        )
        resp = await client.post(self.endpoint, json=body)
        resp.raise_for_status()
        out = self._parse(resp.json())
        self._stats["calls"] += 1
        return out

    def stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "total_tokens": self._stats["input_tokens"] + self._stats["output_tokens"],
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


class OpenAIBackend(_HTTPChatBackend):
    endpoint = "/chat/completions"
    api_key_env = "OPENAI_API_KEY"

    def __init__(self, model: str = "gpt-4o-mini", base_url: str = "https://api.openai.com/v1", **kwargs: Any) -> None:
        super().__init__(model=model or "gpt-4o-mini", base_url=base_url, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def _body(self, messages, temperature, max_tokens, json_mode):  # noqa: ANN001
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        choice = data["choices"][0]
        usage = data.get("usage", {})
        self._stats["input_tokens"] += int(usage.get("prompt_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("completion_tokens", 0))
        return ChatResponse(
            content=str(choice["message"]["content"] or ""),
            model=str(data.get("model", self.model)),
            usage=usage,
            finish_reason=str(choice.get("finish_reason", "")),
            raw=data,
        )


class AnthropicBackend(_HTTPChatBackend):
    endpoint = "/messages"
    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(
        self,
        model: str = "claude-3-5-haiku-latest",
        base_url: str = "https://api.anthropic.com/v1",
        **kwargs: Any,
    ) -> None:
        super().__init__(model=model or "claude-3-5-haiku-latest", base_url=base_url, **kwargs)

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}

    def _body(self, messages, temperature, max_tokens, json_mode):  # noqa: ANN001
        system = "\n".join(m.content for m in messages if m.role == "system").strip()
        if json_mode:
            system = (system + "\nRespond with strict JSON.").strip()
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "assistant" if m.role == "assistant" else "user", "content": m.content}
                for m in messages
                if m.role != "system"
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if system:
            body["system"] = system
        return body

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        text = "".join(
            str(blk.get("text", ""))
            for blk in data.get("content", [])
            if isinstance(blk, dict) and blk.get("type") == "text"
        )
        usage = data.get("usage", {})
        self._stats["input_tokens"] += int(usage.get("input_tokens", 0))
        self._stats["output_tokens"] += int(usage.get("output_tokens", 0))
        return ChatResponse(
            content=text,
            model=self.model,
            usage=usage,
            finish_reason=str(data.get("stop_reason", "")),
            raw=data,
        )


class OllamaBackend(_HTTPChatBackend):
    endpoint = "/api/chat"

    def __init__(
        self,
        model: str = "llama3.1:8b-instruct",
        base_url: str = "http://127.0.0.1:11434",
        **kwargs: Any,
    ) -> None:
        kwargs.pop("api_key", None)
        super().__init__(model=model or "llama3.1:8b-instruct", base_url=base_url, **kwargs)

    def _body(self, messages, temperature, max_tokens, json_mode):  # noqa: ANN001
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if json_mode:
            body["format"] = "json"
        return body

    def _parse(self, data: dict[str, Any]) -> ChatResponse:
        msg = data.get("message", {})
        return ChatResponse(
            content=str(msg.get("content", "")),
            model=self.model,
            usage={},
            finish_reason=str(data.get("done_reason", "")),
            raw=data,
        )
