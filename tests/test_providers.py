from __future__ import annotations

import asyncio

import httpx
import numpy as np
import orjson
import pytest

from chatmem.config import EmbeddingConfig
from chatmem.embeddings.backends import HashEmbedder, OpenAIEmbedder, create_embedder
from chatmem.llm import AnthropicBackend, Message, OpenAIBackend, create_chat_backend


def _mock_client(base_url: str, reply: dict, seen: list[dict]) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append({"path": request.url.path, "body": orjson.loads(request.content)})
        return httpx.Response(200, json=reply)

    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


def test_create_chat_backend():
    assert isinstance(create_chat_backend("openai", api_key="k"), OpenAIBackend)
    assert isinstance(create_chat_backend("Anthropic", api_key="k"), AnthropicBackend)
    with pytest.raises(ValueError):
        create_chat_backend("venice")


def test_openai_chat_requests_json_mode():
    async def _run() -> None:
        seen: list[dict] = []
        backend = OpenAIBackend(api_key="k", model="gpt-test")
        backend._client = _mock_client(
            "https://api.openai.com/v1",
            {
                "model": "gpt-test",
                "choices": [{"message": {"content": '{"facts": []}'}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
            },
            seen,
        )
        try:
            resp = await backend.chat([Message(role="user", content="hi")], json_mode=True, model="gpt-other")
        finally:
            await backend.close()
        assert resp.content == '{"facts": []}'
        assert resp.total_tokens == 15
        assert seen[0]["path"] == "/v1/chat/completions"
        assert seen[0]["body"]["response_format"] == {"type": "json_object"}
        assert seen[0]["body"]["model"] == "gpt-other"
        assert backend.stats["total_tokens"] == 15

    asyncio.run(_run())


def test_anthropic_chat_moves_system_prompt():
    async def _run() -> None:
        seen: list[dict] = []
        backend = AnthropicBackend(api_key="k")
        backend._client = _mock_client(
            "https://api.anthropic.com/v1",
            {
                "content": [{"type": "text", "text": "ok"}],
                "usage": {"input_tokens": 4, "output_tokens": 1},
                "stop_reason": "end_turn",
            },
            seen,
        )
        try:
            resp = await backend.chat(
                [Message(role="system", content="be brief"), Message(role="user", content="hi")],
                json_mode=True,
            )
        finally:
            await backend.close()
        assert resp.content == "ok"
        assert resp.total_tokens == 5
        body = seen[0]["body"]
        assert body["system"].startswith("be brief")
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    asyncio.run(_run())


def test_openai_chat_requires_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    async def _run() -> None:
        with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
            await OpenAIBackend().chat([Message(role="user", content="hi")])

    asyncio.run(_run())


def test_openai_embedder_orders_rows_by_index():
    async def _run() -> None:
        seen: list[dict] = []
        embedder = OpenAIEmbedder(api_key="k", dims=3)
        embedder._client = _mock_client(
            "https://api.openai.com/v1",
            {"data": [{"index": 1, "embedding": [0, 1, 0]}, {"index": 0, "embedding": [1, 0, 0]}]},
            seen,
        )
        try:
            vectors = await embedder.embed(["a", "b"])
        finally:
            await embedder.close()
        assert vectors.dtype == np.float32
        assert vectors.tolist() == [[1, 0, 0], [0, 1, 0]]
        assert seen[0]["body"]["dimensions"] == 3

    asyncio.run(_run())


def test_create_embedder_and_hash_determinism():
    embedder = create_embedder(EmbeddingConfig(provider="hash", dims=64))
    assert isinstance(embedder, HashEmbedder)
    assert embedder.dims == 64
    with pytest.raises(ValueError):
        create_embedder(EmbeddingConfig(provider="nope", dims=64))

    async def _run() -> None:
        a = await embedder.embed_single("User prefers TypeScript")
        b = await embedder.embed_single("User prefers TypeScript")
        assert np.array_equal(a, b)
        assert float(np.linalg.norm(a)) == pytest.approx(1.0, abs=1e-5)
        assert (await embedder.embed([])).shape == (0, 64)

    asyncio.run(_run())
