"""
Provider clients — one async invoke() per provider
==================================================
The router only sees ProviderClient.invoke(model, request) → ProviderResponse.
SDK exceptions are wrapped here so nothing provider-specific leaks upward:

  openai.APITimeoutError  → ProviderTimeoutError
  openai.APIError         → ProviderError
  anything else           → ProviderError

OpenAI, Google (Gemini) and Anthropic all expose OpenAI-compatible chat
completion endpoints, so a single AsyncOpenAI-based client with a per-provider
base_url covers the closed Provider set. A provider whose API key is absent
from the environment gets no client and its arms are skipped by the router.
"""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from typing import Optional

import openai
from openai import AsyncOpenAI

from .errors import ProviderError, ProviderTimeoutError
from .models import CompletionRequest, Provider, ProviderResponse

logger = logging.getLogger("ai_governance.providers")


class ProviderClient(ABC):
    """Async completion interface implemented once per provider."""

    provider: Provider

    @abstractmethod
    async def invoke(self, model: str, request: CompletionRequest) -> ProviderResponse:
        ...

    async def close(self) -> None:
        return None


class OpenAICompatibleClient(ProviderClient):
    """Chat-completions client for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        provider: Provider,
        api_key: str,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.provider = provider
        # Retries are the router's job (fallback to the next arm).
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    async def invoke(self, model: str, request: CompletionRequest) -> ProviderResponse:
        messages = []
        if request.system:
            messages.append({"role": "system", "content": request.system})
        messages.append({"role": "user", "content": request.prompt})

        kwargs = {
            "model": model,
            "messages": messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
        }
        if request.response_schema is not None:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APITimeoutError as e:
            raise ProviderTimeoutError(self.provider.value, str(e)) from e
        except openai.APIError as e:
            raise ProviderError(self.provider.value, f"{type(e).__name__}: {e}") from e
        except Exception as e:
            raise ProviderError(self.provider.value, f"{type(e).__name__}: {e}") from e

        if not response.choices:
            raise ProviderError(self.provider.value, "empty response (no choices)")
        choice = response.choices[0]
        usage = response.usage
        return ProviderResponse(
            text=choice.message.content or "",
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )

    async def close(self) -> None:
        await self._client.close()


def build_clients(endpoints: dict) -> dict[Provider, ProviderClient]:
    """
    Create a client for every provider whose API key is set.

    `endpoints` maps Provider → ProviderEndpoint (see config.py). Missing keys
    make the provider unavailable rather than failing start-up.
    """
    clients: dict[Provider, ProviderClient] = {}
    for provider, endpoint in endpoints.items():
        api_key = os.environ.get(endpoint.api_key_env)
        if not api_key:
            logger.info("%s unavailable: %s not set", provider.value, endpoint.api_key_env)
            continue
        clients[provider] = OpenAICompatibleClient(provider, api_key, endpoint.base_url)
        logger.info("%s client initialized", provider.value)
    return clients
