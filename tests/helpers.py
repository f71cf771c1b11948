"""
Helpers de teste: relógio/sleep falsos, profiles e cliente OpenAI falso.
"""
import asyncio
import json
from types import SimpleNamespace

import httpx

from narrative_dispatch.services.llm.provider_registry import (
    ProviderProfile,
    RetryPolicy,
    TokenCost,
)


class FakeClock:
    """Relógio monotônico controlado pelo teste."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Sleep que avança o FakeClock e registra as esperas pedidas."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


def make_profile(
    provider_id: str = "test-provider",
    rpm: int = 60,
    concurrent: int = 3,
    prompt_cost: float = 0.00001,
    completion_cost: float = 0.00003,
    max_tokens: int = 128000,
    max_retries: int = 3,
    backoff_multiplier: float = 2.0,
    base_delay_ms: int = 1000,
    **kwargs,
) -> ProviderProfile:
    return ProviderProfile(
        id=provider_id,
        name=kwargs.pop("name", provider_id),
        max_requests_per_minute=rpm,
        max_concurrent=concurrent,
        cost_per_token=TokenCost(prompt=prompt_cost, completion=completion_cost),
        max_tokens_per_request=max_tokens,
        retry_policy=RetryPolicy(
            max_retries=max_retries,
            backoff_multiplier=backoff_multiplier,
            base_delay_ms=base_delay_ms,
        ),
        **kwargs,
    )


def make_completion(content, prompt_tokens: int = 100, completion_tokens: int = 50):
    """Resposta no formato de chat.completions.create."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def make_client(create):
    """Cliente com a mesma forma de AsyncOpenAI (client.chat.completions.create)."""
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def api_status_error(error_cls, status_code: int):
    """Instancia uma exceção de status do openai SDK com resposta httpx real."""
    request = httpx.Request("POST", "https://api.test/v1/chat/completions")
    response = httpx.Response(status_code, request=request)
    return error_cls(message=f"HTTP {status_code}", response=response, body=None)


PLOT_HOLES_EMPTY = {"plotHoles": []}
