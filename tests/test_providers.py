"""
Tests for provider clients — request shaping and SDK error wrapping.
"""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from ai_governance.config import ProviderEndpoint
from ai_governance.errors import ProviderError, ProviderTimeoutError
from ai_governance.models import CompletionRequest, Provider
from ai_governance.providers import OpenAICompatibleClient, build_clients


def _sdk(create) -> MagicMock:
    sdk = MagicMock()
    sdk.chat.completions.create = create
    sdk.close = AsyncMock()
    return sdk


def _completion(text="hi", prompt_tokens=12, completion_tokens=3):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


@pytest.mark.asyncio
async def test_invoke_maps_response_and_usage():
    create = AsyncMock(return_value=_completion("answer"))
    client = OpenAICompatibleClient(Provider.OPENAI, "k", client=_sdk(create))
    response = await client.invoke("gpt-4o", CompletionRequest(prompt="q", system="be brief"))

    assert response.text == "answer"
    assert response.total_tokens == 15
    kwargs = create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}
    assert "response_format" not in kwargs


@pytest.mark.asyncio
async def test_schema_requests_json_mode():
    create = AsyncMock(return_value=_completion('{"a": 1}'))
    client = OpenAICompatibleClient(Provider.GOOGLE, "k", client=_sdk(create))
    await client.invoke("gemini-2.5-pro", CompletionRequest(prompt="q", response_schema={}))
    assert create.await_args.kwargs["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_sdk_timeout_is_wrapped():
    request = httpx.Request("POST", "https://api.example.test/v1/chat/completions")
    create = AsyncMock(side_effect=openai.APITimeoutError(request=request))
    client = OpenAICompatibleClient(Provider.OPENAI, "k", client=_sdk(create))
    with pytest.raises(ProviderTimeoutError):
        await client.invoke("gpt-4o", CompletionRequest(prompt="q"))


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", [RuntimeError("boom"), ConnectionError("reset")])
async def test_other_failures_are_provider_errors(failure):
    client = OpenAICompatibleClient(Provider.OPENAI, "k", client=_sdk(AsyncMock(side_effect=failure)))
    with pytest.raises(ProviderError) as exc:
        await client.invoke("gpt-4o", CompletionRequest(prompt="q"))
    assert not isinstance(exc.value, ProviderTimeoutError)
    assert exc.value.provider == "openai"


@pytest.mark.asyncio
async def test_empty_choices_is_an_error():
    create = AsyncMock(return_value=SimpleNamespace(choices=[], usage=None))
    client = OpenAICompatibleClient(Provider.OPENAI, "k", client=_sdk(create))
    with pytest.raises(ProviderError):
        await client.invoke("gpt-4o", CompletionRequest(prompt="q"))


def test_build_clients_skips_missing_keys(monkeypatch):
    monkeypatch.setenv("TEST_OPENAI_KEY", "sk-test")
    monkeypatch.delenv("TEST_GEMINI_KEY", raising=False)
    clients = build_clients({
        Provider.OPENAI: ProviderEndpoint("TEST_OPENAI_KEY"),
        Provider.GOOGLE: ProviderEndpoint("TEST_GEMINI_KEY", "https://example.test/v1/"),
    })
    assert list(clients) == [Provider.OPENAI]
    assert clients[Provider.OPENAI].provider == Provider.OPENAI
