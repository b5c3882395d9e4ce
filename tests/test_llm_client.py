from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from citeloop import llm_client
from citeloop.llm_client import OpenRouterClientAdapter


def _openai_response(text: str | None):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=34),
    )


@pytest.mark.asyncio
async def test_messages_adapter_maps_request_and_response():
    openai_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace()))
    openai_client.chat.completions.create = AsyncMock(return_value=_openai_response("hello"))
    adapter = OpenRouterClientAdapter(openai_client)

    response = await adapter.messages.create(
        model="openai/gpt-4o-mini",
        max_tokens=100,
        system="be brief",
        messages=[{"role": "user", "content": "hi"}],
        response_format={"type": "json_object"},
    )

    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
    ]
    assert kwargs["temperature"] == 0
    assert kwargs["response_format"] == {"type": "json_object"}
    assert response.text == "hello"
    assert (response.usage.input_tokens, response.usage.output_tokens) == (12, 34)


@pytest.mark.asyncio
async def test_empty_completion_yields_no_blocks():
    openai_client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace()))
    openai_client.chat.completions.create = AsyncMock(return_value=_openai_response(None))
    response = await OpenRouterClientAdapter(openai_client).messages.create(
        model="openai/gpt-5", max_tokens=10, system="s", messages=[{"role": "user", "content": "u"}]
    )
    assert response.content == []
    assert openai_client.chat.completions.create.call_args.kwargs["temperature"] == 1


def test_planner_model_falls_back_to_default():
    with patch.object(llm_client.settings, "planner_model", ""), patch.object(
        llm_client.settings, "openrouter_model", "vendor/model-a"
    ):
        assert llm_client.get_planner_model() == "vendor/model-a"
    with patch.object(llm_client.settings, "planner_model", "vendor/planner"):
        assert llm_client.get_planner_model() == "vendor/planner"
