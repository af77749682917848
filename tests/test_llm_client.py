from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from awardprobe.llm_client import ChatCompletionsClient


def _openai_response(text: str, prompt_tokens: int = 11, completion_tokens: int = 7):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def _client_returning(response) -> tuple[ChatCompletionsClient, AsyncMock]:
    create = AsyncMock(return_value=response)
    openai_client = MagicMock()
    openai_client.chat.completions.create = create
    return ChatCompletionsClient(openai_client), create


@pytest.mark.asyncio
async def test_complete_returns_text_and_usage():
    client, create = _client_returning(_openai_response("hello"))

    completion = await client.complete(
        model="gpt-4-turbo-preview",
        messages=[{"role": "user", "content": "hi"}],
    )

    assert completion.text == "hello"
    assert completion.usage.input_tokens == 11
    assert completion.usage.output_tokens == 7
    kwargs = create.await_args.kwargs
    assert kwargs["temperature"] == 0
    assert "response_format" not in kwargs


@pytest.mark.asyncio
async def test_complete_json_mode_requests_json_object():
    client, create = _client_returning(_openai_response('{"a": 1}'))

    await client.complete(
        model="gpt-4-turbo-preview",
        messages=[{"role": "user", "content": "hi"}],
        json_mode=True,
    )

    assert create.await_args.kwargs["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_complete_handles_empty_choices():
    client, _ = _client_returning(SimpleNamespace(choices=[], usage=None))

    completion = await client.complete(model="m", messages=[])

    assert completion.text == ""
    assert completion.usage.input_tokens == 0


def test_temperature_override_for_gpt5_models():
    assert ChatCompletionsClient._temperature_for_model("openai/gpt-5-mini", 0) == 1
    assert ChatCompletionsClient._temperature_for_model("gpt-4-turbo-preview", 0) == 0
