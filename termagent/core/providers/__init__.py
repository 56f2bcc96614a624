"""Provider registry: one adapter class per vendor name."""

from __future__ import annotations

import logging
from typing import Any

from ..config import PROVIDER_DEFAULTS, Config, get_api_key, get_config
from .anthropic import AnthropicProvider
from .base import (
    Provider,
    ProviderBusyError,
    ProviderConfigError,
    ProviderError,
    ProviderProtocolError,
    StreamEvent,
    StreamEventType,
)
from .google import GoogleProvider
from .ollama import OllamaProvider
from .openai import GroqProvider, OpenAIProvider, OpenRouterProvider, ZAIProvider

logger = logging.getLogger("termagent.providers")

PROVIDERS: dict[str, type] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "groq": GroqProvider,
    "openrouter": OpenRouterProvider,
    "zai": ZAIProvider,
    "ollama": OllamaProvider,
}

KEYLESS_PROVIDERS = frozenset({"ollama"})


def available_providers(config: Config | None = None) -> list[dict[str, Any]]:
    """Every known provider with its default model and whether a key is set."""
    cfg = config or get_config()
    rows = []
    for name in PROVIDERS:
        rows.append({
            "name": name,
            "default_model": PROVIDER_DEFAULTS[name]["default_model"],
            "configured": name in KEYLESS_PROVIDERS or bool(get_api_key(name, cfg)),
        })
    return rows


def create_provider(
    name: str,
    model: str | None = None,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    config: Config | None = None,
) -> Provider:
    """Build an adapter for ``name``. Raises ProviderConfigError before any request."""
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ProviderConfigError(f"Unknown provider: {name}. Available: {', '.join(PROVIDERS)}")
    cfg = config or get_config()
    key = api_key or get_api_key(name, cfg)
    if not key and name not in KEYLESS_PROVIDERS:
        env_key = PROVIDER_DEFAULTS[name]["env_key"]
        raise ProviderConfigError(f"No API key for {name}. Set {env_key} or add it to api_keys in the config.")
    return cls(
        api_key=key,
        model=model,
        base_url=base_url or cfg.base_url_for(name),
        timeout=cfg.request_timeout,
        temperature=cfg.temperature,
    )


class ProviderCache:
    """Keeps one adapter alive while the (provider, model) pair is unchanged."""

    def __init__(self, config: Config | None = None) -> None:
        self._config = config
        self._key: tuple[str, str | None] | None = None
        self._provider: Provider | None = None

    @property
    def current(self) -> Provider | None:
        return self._provider

    async def get(self, name: str, model: str | None = None) -> Provider:
        key = (name, model)
        if self._provider is not None and self._key == key:
            return self._provider
        provider = create_provider(name, model, config=self._config)
        if self._provider is not None:
            logger.info(f"Switching provider {self._key} -> {key}")
            await self._provider.aclose()
        self._provider, self._key = provider, key
        return provider

    async def aclose(self) -> None:
        if self._provider is not None:
            await self._provider.aclose()
        self._provider, self._key = None, None


__all__ = [
    "PROVIDERS",
    "Provider",
    "ProviderBusyError",
    "ProviderCache",
    "ProviderConfigError",
    "ProviderError",
    "ProviderProtocolError",
    "StreamEvent",
    "StreamEventType",
    "available_providers",
    "create_provider",
]
