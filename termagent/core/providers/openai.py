"""OpenAI Chat Completions adapters (OpenAI, Groq, OpenRouter, Z.AI)."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Any, AsyncIterator, Mapping, Sequence

import openai
from openai import AsyncOpenAI

from ..config import PROVIDER_DEFAULTS
from ..conversation import Message, Role
from .base import (
    DEFAULT_MAX_TOKENS,
    StreamEvent,
    ToolCallAccumulator,
    TurnGuard,
    as_dict,
    close_stream,
    describe_status,
)

logger = logging.getLogger("termagent.providers.openai")


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
            converted.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.content or "",
            })
        elif msg.has_tool_calls:
            converted.append({
                "role": "assistant",
                "content": None,
                "tool_calls": [tc.to_wire() for tc in msg.tool_calls],
            })
        else:
            converted.append({"role": msg.role.value, "content": msg.content or ""})
    return converted


class OpenAIProvider:
    """Streams one turn from any OpenAI-compatible endpoint."""

    name = "openai"
    include_usage = True
    default_headers: Mapping[str, str] = MappingProxyType({})

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        temperature: float | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        defaults = PROVIDER_DEFAULTS[self.name]
        self.model = model or defaults["default_model"]
        self.base_url = base_url or defaults["base_url"]
        self.temperature = temperature
        self._guard = TurnGuard(self.name)
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=timeout,
            default_headers=dict(self.default_headers) or None,
        )
        logger.info(f"Initialized {self.name} client for {self.base_url}, model: {self.model}")

    async def aclose(self) -> None:
        await self._client.close()

    def _build_params(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model,
            "messages": convert_messages(messages),
            "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.include_usage:
            params["stream_options"] = {"include_usage": True}
        if tools:
            params["tools"] = format_tools(tools)
            params["tool_choice"] = "auto"
        return params

    async def stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        with self._guard:
            params = self._build_params(messages, tools, max_tokens)
            calls = ToolCallAccumulator()
            usage: dict[str, Any] = {}
            flushed = False
            last_key: Any = None
            response = None

            logger.debug(f"{self.name}: streaming {len(params['messages'])} messages")
            try:
                response = await self._client.chat.completions.create(**params)
                async for chunk in response:
                    data = as_dict(chunk)

                    # OpenRouter reports upstream failures inside a 200 stream
                    if data.get("error"):
                        err = data["error"]
                        detail = err.get("message", err) if isinstance(err, dict) else err
                        yield StreamEvent.error(f"{self.name}: {detail}")
                        return

                    if data.get("usage"):
                        usage = data["usage"]

                    for choice in data.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamEvent.content_delta(delta["content"])

                        for tc in delta.get("tool_calls") or []:
                            fn = tc.get("function") or {}
                            key = tc.get("index")
                            if key is None:
                                key = tc.get("id") or last_key
                            last_key = key
                            calls.feed(key, tc.get("id"), fn.get("name"), fn.get("arguments"))

                        if choice.get("finish_reason") and len(calls) and not flushed:
                            yield StreamEvent.tool_calls(calls.close_all())
                            flushed = True

            except openai.APIStatusError as e:
                logger.error(f"{self.name} API error: {e.status_code} {e.message}")
                yield StreamEvent.error(describe_status(self.name, e.status_code, e.message))
                return
            except openai.APIConnectionError as e:
                logger.error(f"{self.name} connection error: {e}")
                yield StreamEvent.error(f"{self.name}: cannot reach {self.base_url}: {e}")
                return
            finally:
                if response is not None:
                    await close_stream(response)

            if len(calls) and not flushed:
                logger.warning(f"{self.name}: stream ended without finish_reason; flushing {len(calls)} tool calls")
                yield StreamEvent.tool_calls(calls.close_all())
            if usage:
                yield StreamEvent.usage(usage.get("prompt_tokens"), usage.get("completion_tokens"))
            yield StreamEvent.done()


class GroqProvider(OpenAIProvider):
    name = "groq"


class OpenRouterProvider(OpenAIProvider):
    name = "openrouter"
    default_headers = MappingProxyType({
        "HTTP-Referer": "https://github.com/termagent",
        "X-Title": "TermAgent",
    })


class ZAIProvider(OpenAIProvider):
    name = "zai"
    include_usage = False
