from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Protocol

from .errors import TranslatorError
from .pricing import PricingTable

logger = logging.getLogger(__name__)

ANY_PROVIDER = "*"


@dataclass(frozen=True)
class LLMRequest:
    text: str
    provider: str
    model: str
    temperature: float = 0.0
    system_prompt: str = ""


@dataclass(frozen=True)
class LLMResponse:
    translated_text: str
    cost: float | None = None
    model: str | None = None


class LLMClient(Protocol):
    providers: tuple[str, ...]

    def translate(self, request: LLMRequest) -> LLMResponse: ...


def supports_provider(client: LLMClient, provider: str | None) -> bool:
    if not provider:
        return False
    providers = tuple(getattr(client, "providers", ()) or ())
    return ANY_PROVIDER in providers or provider.strip().lower() in providers


def _messages(request: LLMRequest) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    messages.append({"role": "user", "content": request.text})
    return messages


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout_s: float, label: str) -> Any:
    req = urllib.request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else ""
        raise TranslatorError(f"{label} HTTPError {e.code}: {body}", provider=label.lower()) from e
    except Exception as e:
        raise TranslatorError(f"{label} request failed: {e}", provider=label.lower()) from e


@dataclass(frozen=True)
class MockLLMClient:
    """Deterministic offline client.

    Returns ``response_text`` for every request; the default reports no markers,
    which the pipeline completes to all-grey ``no-change``.
    """

    response_text: str = '{"markers": []}'
    providers: tuple[str, ...] = (ANY_PROVIDER,)

    def translate(self, request: LLMRequest) -> LLMResponse:
        return LLMResponse(translated_text=self.response_text, cost=0.0, model=request.model)


@dataclass(frozen=True)
class OpenAIChatCompletionsClient:
    """OpenAI-compatible Chat Completions client with JSON response mode.

    Serves OpenAI itself and OpenRouter; the API key is read from
    ``api_key_env`` at call time.
    """

    provider: str = "openai"
    base_url: str = "https://api.openai.com"
    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float = 60.0
    max_output_tokens: int = 4000
    pricing: PricingTable = field(default_factory=PricingTable.empty)

    @property
    def providers(self) -> tuple[str, ...]:
        return (self.provider,)

    def translate(self, request: LLMRequest) -> LLMResponse:
        api_key = os.environ.get(self.api_key_env)
        if not api_key:
            raise TranslatorError(f"{self.api_key_env} is not set", provider=self.provider, model=request.model)
        payload = {
            "model": request.model,
            "temperature": request.temperature,
            "max_tokens": self.max_output_tokens,
            "messages": _messages(request),
            "response_format": {"type": "json_object"},
        }
        data = _post_json(
            f"{self.base_url.rstrip('/')}/v1/chat/completions",
            payload,
            {"Authorization": f"Bearer {api_key}"},
            self.timeout_s,
            self.provider,
        )
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise TranslatorError(
                f"Unexpected {self.provider} response schema: {data}", provider=self.provider, model=request.model
            ) from e

        served_model = str(data.get("model") or request.model)
        usage = data.get("usage") or {}
        cost = self.pricing.estimate_cost_usd(
            self.provider,
            request.model,
            int(usage.get("prompt_tokens", 0) or 0),
            int(usage.get("completion_tokens", 0) or 0),
        )
        logger.debug(
            "%s response: model=%s chars=%d cost=%s", self.provider, served_model, len(content), cost
        )
        return LLMResponse(translated_text=content, cost=cost, model=served_model)


@dataclass(frozen=True)
class OllamaChatClient:
    base_url: str = "http://localhost:11434"
    timeout_s: float = 60.0
    max_output_tokens: int = 4000
    providers: tuple[str, ...] = ("ollama",)

    def translate(self, request: LLMRequest) -> LLMResponse:
        payload = {
            "model": request.model,
            "stream": False,
            "format": "json",
            "messages": _messages(request),
            "options": {"num_predict": self.max_output_tokens, "temperature": request.temperature},
        }
        data = _post_json(f"{self.base_url.rstrip('/')}/api/chat", payload, {}, self.timeout_s, "Ollama")
        try:
            content = data["message"]["content"] or ""
        except (KeyError, TypeError) as e:
            raise TranslatorError(
                f"Unexpected Ollama response schema: {data}", provider="ollama", model=request.model
            ) from e
        return LLMResponse(translated_text=content, cost=0.0, model=str(data.get("model") or request.model))


class LLMRouter:
    """Dispatches each request to the client registered for its provider."""

    def __init__(self, clients: dict[str, LLMClient]) -> None:
        self._clients = {name.strip().lower(): client for name, client in clients.items()}

    @property
    def providers(self) -> tuple[str, ...]:
        return tuple(self._clients)

    def translate(self, request: LLMRequest) -> LLMResponse:
        client = self._clients.get(request.provider.strip().lower())
        if client is None:
            raise TranslatorError(
                f"Unsupported provider: {request.provider}", provider=request.provider, model=request.model
            )
        return client.translate(request)


def build_llm_client(
    provider: str,
    *,
    timeout_s: float = 60.0,
    max_output_tokens: int = 4000,
    base_url: str | None = None,
    pricing: PricingTable | None = None,
    mock_response: str | None = None,
) -> LLMClient:
    provider_norm = provider.strip().lower()
    pricing = pricing or PricingTable.empty()
    if provider_norm == "mock":
        if mock_response is not None:
            return MockLLMClient(response_text=mock_response)
        return MockLLMClient()
    if provider_norm == "openai":
        return OpenAIChatCompletionsClient(
            provider="openai",
            base_url=base_url or os.environ.get("OPENAI_BASE_URL", "https://api.openai.com"),
            api_key_env="OPENAI_API_KEY",
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
            pricing=pricing,
        )
    if provider_norm == "openrouter":
        return OpenAIChatCompletionsClient(
            provider="openrouter",
            base_url=base_url or "https://openrouter.ai/api",
            api_key_env="OPENROUTER_API_KEY",
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
            pricing=pricing,
        )
    if provider_norm == "ollama":
        return OllamaChatClient(
            base_url=base_url or os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
        )
    raise ValueError(f"Unknown LLM provider: {provider}")


def build_llm_router(
    providers: list[str] | tuple[str, ...],
    *,
    timeout_s: float = 60.0,
    max_output_tokens: int = 4000,
    base_urls: dict[str, str] | None = None,
    pricing: PricingTable | None = None,
) -> LLMRouter:
    base_urls = base_urls or {}
    clients: dict[str, LLMClient] = {}
    for name in providers:
        key = name.strip().lower()
        clients[key] = build_llm_client(
            key,
            timeout_s=timeout_s,
            max_output_tokens=max_output_tokens,
            base_url=base_urls.get(key),
            pricing=pricing,
        )
    return LLMRouter(clients)
