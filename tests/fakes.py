"""
Shared test doubles: a controllable clock and scripted provider clients.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from ai_governance.errors import ProviderError, ProviderTimeoutError
from ai_governance.models import (
    CallOutcome,
    CompletionRequest,
    Provider,
    ProviderResponse,
    RoutingLogEntry,
)
from ai_governance.providers import ProviderClient


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeClient(ProviderClient):
    """
    Scripted provider. Each entry of `script` is consumed per invoke():
      "ok"      → returns `text`
      "error"   → raises ProviderError
      "timeout" → raises ProviderTimeoutError
      "hang"    → sleeps far past any test timeout
    The last entry repeats once the script is exhausted.
    """

    def __init__(self, provider: Provider, script=("ok",), text: str = "hello",
                 prompt_tokens: int = 100, completion_tokens: int = 50) -> None:
        self.provider = provider
        self.script = list(script)
        self.text = text
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls: list[str] = []

    async def invoke(self, model: str, request: CompletionRequest) -> ProviderResponse:
        self.calls.append(model)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if step == "hang":
            await asyncio.sleep(60)
        if step == "error":
            raise ProviderError(self.provider.value, "HTTP 500")
        if step == "timeout":
            raise ProviderTimeoutError(self.provider.value, "read timeout")
        return ProviderResponse(
            text=self.text,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )


async def log_spend(store, tenant_id: str, cost: float, when: datetime,
                    arm_id: Optional[str] = None, success: bool = True,
                    duration_ms: float = 100.0) -> None:
    """Append one routing-log row directly, bypassing the router."""
    outcome = CallOutcome(
        tenant_id=tenant_id, feature="f", scope="default",
        arm_id=arm_id or f"{tenant_id}:default:openai:gpt-4o",
        provider=Provider.OPENAI, model="gpt-4o", request_id="r", attempt=1,
        success=success, duration_ms=duration_ms, prompt_tokens=10,
        completion_tokens=10, cost=cost, timestamp=when,
    )
    await store.append_routing_log(RoutingLogEntry.from_outcome(outcome))
