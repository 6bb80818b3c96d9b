"""LLM client interfaces and provider implementations."""

from chatmem.llm.backends import ChatBackend, ChatResponse, Message
from chatmem.llm.providers import AnthropicBackend, OllamaBackend, OpenAIBackend


def create_chat_backend(provider: str = "openai", **kwargs):
    p = (provider or "openai").strip().lower()
    if p in {"openai", "default"}:
        return OpenAIBackend(**kwargs)
    if p in {"anthropic"}:
        return AnthropicBackend(**kwargs)
    if p in {"ollama", "local"}:
        return OllamaBackend(**kwargs)
    raise ValueError(f"Unsupported provider: {provider}")


__all__ = [
    "ChatBackend",
    "OpenAIBackend",
    "AnthropicBackend",
    "OllamaBackend",
    "Message",
    "ChatResponse",
    "create_chat_backend",
]
