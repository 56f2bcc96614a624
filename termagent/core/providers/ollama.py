"""Adapter for a local Ollama server using the official Python SDK."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Sequence

import httpx
import ollama

from ..config import PROVIDER_DEFAULTS
from ..conversation import Message, Role
from .base import (
    DEFAULT_MAX_TOKENS,
    StreamEvent,
    ToolCallAccumulator,
    TurnGuard,
    as_dict,
    describe_status,
)

logger = logging.getLogger("termagent.providers.ollama")

_TRANSIENT_MARKERS = (
    "connection reset", "connection refused", "eof", "broken pipe",
    "timeout", "timed out", "network", "connection error",
)


def _is_transient(exc: Exception) -> bool:
    err_str = str(exc).lower()
    return any(k in err_str for k in _TRANSIENT_MARKERS)


def format_tools(tools: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


def convert_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role is Role.TOOL:
            converted.append({"role": "tool", "content": msg.content or "", "tool_name": msg.tool_name or ""})
        elif msg.has_tool_calls:
            # Ollama wants arguments as an object, not a JSON string
            converted.append({
                "role": "assistant",
                "content": "",
                "tool_calls": [
                    {"function": {
                        "name": tc.name,
                        "arguments": tc.arguments if isinstance(tc.arguments, dict) else {},
                    }}
                    for tc in msg.tool_calls
                ],
            })
        else:
            converted.append({"role": msg.role.value, "content": msg.content or ""})
    return converted


class OllamaProvider:
    """Wrapper around ``ollama.AsyncClient`` speaking the StreamEvent protocol."""

    name = "ollama"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        temperature: float | None = None,
        client: ollama.AsyncClient | None = None,
        max_retries: int = 2,
    ) -> None:
        defaults = PROVIDER_DEFAULTS[self.name]
        host = (base_url or defaults["base_url"]).rstrip("/")
        self.model = model or defaults["default_model"]
        self.temperature = temperature
        self.max_retries = max_retries
        self._guard = TurnGuard(self.name)
        logger.info(f"Initializing Ollama SDK client for host: {host}, model: {self.model}, timeout: {timeout}s")
        # ollama.AsyncClient forwards extra kwargs to httpx.AsyncClient
        self._transport: httpx.AsyncHTTPTransport | None = None
        if client is None:
            self._transport = httpx.AsyncHTTPTransport()
            client = ollama.AsyncClient(host=host, timeout=timeout, transport=self._transport)
        self._client = client

    async def aclose(self) -> None:
        """Release the connection pool this adapter created; injected clients belong to the caller."""
        if self._transport is not None:
            await self._transport.aclose()

    async def stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        with self._guard:
            options: dict[str, Any] = {"num_predict": max_tokens or DEFAULT_MAX_TOKENS}
            if self.temperature is not None:
                options["temperature"] = self.temperature
            kwargs: dict[str, Any] = {
                "model": self.model,
                "messages": convert_messages(messages),
                "stream": True,
                "options": options,
            }
            if tools:
                kwargs["tools"] = format_tools(tools)

            calls = ToolCallAccumulator()
            prompt_tokens = completion_tokens = None
            produced = False

            for attempt in range(self.max_retries + 1):
                try:
                    async for raw in await self._client.chat(**kwargs):
                        chunk = as_dict(raw)
                        message = chunk.get("message") or {}
                        if message.get("content"):
                            produced = True
                            yield StreamEvent.content_delta(message["content"])
                        for tc in message.get("tool_calls") or []:
                            fn = tc.get("function") or {}
                            calls.add_complete(fn.get("name"), fn.get("arguments"))
                        if chunk.get("done"):
                            prompt_tokens = chunk.get("prompt_eval_count")
                            completion_tokens = chunk.get("eval_count")
                    break

                except ollama.ResponseError as e:
                    logger.error(f"Ollama ResponseError (attempt {attempt + 1}): {e.error}")
                    yield StreamEvent.error(describe_status(self.name, e.status_code, str(e.error)))
                    return

                except (OSError, httpx.TransportError, asyncio.TimeoutError) as e:
                    # Retrying after output was shown would duplicate it
                    if _is_transient(e) and not produced and not len(calls) and attempt < self.max_retries:
                        wait = 1.5 * (attempt + 1)
                        logger.warning(
                            f"Transient Ollama error (attempt {attempt + 1}/{self.max_retries + 1}), "
                            f"retrying in {wait:.1f}s: {e}"
                        )
                        await asyncio.sleep(wait)
                        continue
                    logger.error(f"Ollama connection failed: {e}")
                    yield StreamEvent.error(f"ollama: connection failed: {e}")
                    return

            if len(calls):
                yield StreamEvent.tool_calls(calls.close_all())
            if prompt_tokens is not None or completion_tokens is not None:
                yield StreamEvent.usage(prompt_tokens, completion_tokens)
            yield StreamEvent.done()
