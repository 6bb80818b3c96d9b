"""Chat backend providers (OpenAI, Anthropic, Ollama)."""

from __future__ import annotations

import os
from typing import Any

import httpx

from chatmem.llm.backends import ChatResponse, Message


class _HTTPChatBackend:
    """Client lifecycle and token accounting shared by the HTTP providers."""

    def __init__(
        self,
        model: str,
        base_url: str,
        timeout: float,
        temperature: float,
        max_tokens: int,
    ) -> None:
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
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
            )
        return self._client

    def _record(self, input_tokens: Any, output_tokens: Any) -> None:
        self._stats["calls"] += 1
        self._stats["input_tokens"] += int(input_tokens or 0)
        self._stats["output_tokens"] += int(output_tokens or 0)

    @property
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
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> None:
        super().__init__(model, base_url, timeout, temperature, max_tokens)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY", "")

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY is required")
        return await super()._get_client()

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        model: str | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        resp = await client.post("/chat/completions", json=body)
        resp.raise_for_status()
        data = resp.json()
        choice = data["choices"][0]
        usage = data.get("usage", {})
        self._record(usage.get("prompt_tokens"), usage.get("completion_tokens"))
        return ChatResponse(
            content=str(choice["message"]["content"] or ""),
            model=str(data.get("model", body["model"])),
            usage=usage,
            finish_reason=str(choice.get("finish_reason", "")),
            raw=data,
        )


class AnthropicBackend(_HTTPChatBackend):
    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-3-5-haiku-latest",
        base_url: str = "https://api.anthropic.com/v1",
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> None:
        super().__init__(model, base_url, timeout, temperature, max_tokens)
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": "2023-06-01"}

    async def _get_client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise RuntimeError("ANTHROPIC_API_KEY is required")
        return await super()._get_client()

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        model: str | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        system = ""
        chat_msgs: list[dict[str, str]] = []
        for m in messages:
            if m.role == "system":
                system += (m.content + "\n")
            else:
                role = "assistant" if m.role == "assistant" else "user"
                chat_msgs.append({"role": role, "content": m.content})
        if json_mode:
            system += "Respond with strict JSON only."
        body: dict[str, Any] = {
            "model": model or self.model,
            "system": system.strip() or None,
            "messages": chat_msgs,
            "temperature": temperature if temperature is not None else self.temperature,
            "max_tokens": max_tokens if max_tokens is not None else self.max_tokens,
        }
        resp = await client.post("/messages", json={k: v for k, v in body.items() if v is not None})
        resp.raise_for_status()
        data = resp.json()
        text = ""
        for blk in data.get("content", []):
            if isinstance(blk, dict) and blk.get("type") == "text":
                text += str(blk.get("text", ""))
        usage = data.get("usage", {})
        self._record(usage.get("input_tokens"), usage.get("output_tokens"))
        return ChatResponse(
            content=text,
            model=str(data.get("model", body["model"])),
            usage=usage,
            finish_reason=str(data.get("stop_reason", "")),
            raw=data,
        )


class OllamaBackend(_HTTPChatBackend):
    def __init__(
        self,
        model: str = "llama3.1:8b-instruct",
        base_url: str = "http://127.0.0.1:11434",
        timeout: float = 120.0,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> None:
        super().__init__(model, base_url, timeout, temperature, max_tokens)

    async def chat(
        self,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_mode: bool = False,
        model: str | None = None,
    ) -> ChatResponse:
        client = await self._get_client()
        body: dict[str, Any] = {
            "model": model or self.model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "stream": False,
            "options": {
                "temperature": temperature if temperature is not None else self.temperature,
                "num_predict": max_tokens if max_tokens is not None else self.max_tokens,
            },
        }
        if json_mode:
            body["format"] = "json"
        resp = await client.post("/api/chat", json=body)
        resp.raise_for_status()
        data = resp.json()
        msg = data.get("message", {})
        usage = {
            "prompt_tokens": int(data.get("prompt_eval_count", 0) or 0),
            "completion_tokens": int(data.get("eval_count", 0) or 0),
        }
        self._record(usage["prompt_tokens"], usage["completion_tokens"])
        return ChatResponse(
            content=str(msg.get("content", "")),
            model=str(body["model"]),
            usage=usage,
            finish_reason=str(data.get("done_reason", "")),
            raw=data,
        )
