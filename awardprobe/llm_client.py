"""OpenAI-compatible chat completion client."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from awardprobe.config import settings
from awardprobe.services.env_safety import sanitize_tls_environment


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class Completion:
    text: str
    usage: Usage


class ChatCompletionsClient:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _temperature_for_model(model: str, requested: float) -> float:
        # Some GPT-5-compatible gateways reject temperature=0.
        lowered = (model or "").lower()
        if "gpt-5" in lowered:
            return 1
        return requested

    @staticmethod
    def _from_openai_response(response: Any) -> Completion:
        choices = getattr(response, "choices", None) or []
        text = ""
        if choices:
            message = getattr(choices[0], "message", None)
            text = getattr(message, "content", None) or ""

        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            usage=Usage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
        )

    async def complete(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float = 0,
        json_mode: bool = False,
        max_tokens: int | None = None,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self._temperature_for_model(model, temperature),
            "max_tokens": max_tokens or settings.llm_max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        response = await self._client.chat.completions.create(**kwargs)
        return self._from_openai_response(response)


def get_client() -> ChatCompletionsClient:
    """Build a client against the configured OpenAI-compatible endpoint."""
    from openai import AsyncOpenAI

    sanitize_tls_environment()
    base_url = settings.openai_base_url.strip() or "https://api.openai.com/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=base_url,
    )
    return ChatCompletionsClient(openai_client)


def get_model() -> str:
    return settings.default_model


_client: ChatCompletionsClient | None = None


def client() -> ChatCompletionsClient:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
