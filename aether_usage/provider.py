"""Provider adapter for OpenAI-compatible text-generation APIs.

Supports a real mode (forwarding to OpenRouter or another compatible endpoint)
and a stub mode that returns a canned response when no API key is configured.
"""

import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from aether_usage.config import ProviderConfig


@dataclass
class ProviderResult:
    """Result returned by the provider adapter."""

    content: str
    model: str
    total_tokens: int = 0
    provider_request_id: Optional[str] = None


_STUB_RESPONSE = (
    "Your recent conversations show steady, thoughtful engagement. "
    "Configure a valid API key to get generated insights."
)


async def call_provider(
    provider: ProviderConfig,
    model: str,
    messages: List[Dict[str, str]],
    *,
    temperature: float = 0.7,
    max_tokens: int = 300,
    timeout: float = 45.0,
) -> ProviderResult:
    """Call the text-generation provider and return the result.

    If the provider's API key is not set in the environment, falls back to a
    stub response so the service can run without real credentials.

    Args:
        provider: Provider configuration (base URL, API key env, etc.).
        model: The concrete model identifier to request.
        messages: Chat messages as ``{"role", "content"}`` dicts.
        temperature: Sampling temperature.
        max_tokens: Completion length cap.
        timeout: HTTP timeout in seconds.

    Returns:
        A ProviderResult with the generated text.

    Raises:
        httpx.HTTPStatusError: If the provider returns a non-2xx response.
        httpx.TransportError: If the provider cannot be reached.
    """
    api_key = provider.api_key

    if not api_key:
        return _stub_response(model)

    return await _real_request(
        provider, model, messages, api_key, temperature, max_tokens, timeout
    )


def _stub_response(model: str) -> ProviderResult:
    """Return a canned response for running without real API keys."""
    return ProviderResult(
        content=_STUB_RESPONSE,
        model=model,
        total_tokens=len(_STUB_RESPONSE.split()),
        provider_request_id="stub-{}".format(uuid.uuid4().hex[:8]),
    )


async def _real_request(
    provider: ProviderConfig,
    model: str,
    messages: List[Dict[str, str]],
    api_key: str,
    temperature: float,
    max_tokens: int,
    timeout: float,
) -> ProviderResult:
    """Forward the request to an OpenAI-compatible chat completions endpoint."""
    url = "{}/chat/completions".format(provider.base_url.rstrip("/"))
    headers = {
        "Authorization": "Bearer {}".format(api_key),
        "Content-Type": "application/json",
        "HTTP-Referer": provider.referer,
        "X-Title": provider.title,
    }
    payload = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
        "stream": False,
    }

    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()

    data = resp.json()

    choice = (data.get("choices") or [{}])[0]
    msg = choice.get("message") or {}

    return ProviderResult(
        content=msg.get("content") or "",
        model=data.get("model", model),
        total_tokens=(data.get("usage") or {}).get("total_tokens", 0),
        provider_request_id=data.get("id"),
    )
