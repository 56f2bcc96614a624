"""Anthropic Messages API adapter."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Sequence

import anthropic
from anthropic import AsyncAnthropic

from ..config import PROVIDER_DEFAULTS
from ..conversation import Message, Role
from .base import (
    DEFAULT_MAX_TOKENS,
    OMITTED_HISTORY,
    StreamEvent,
    ToolCallAccumulator,
    TurnGuard,
    as_dict,
    close_stream,
    describe_status,
)

logger = logging.getLogger("termagent.providers.anthropic")


def format_tools(tools: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {
            "name": tool["name"],
            "description": tool.get("description", ""),
            "input_schema": tool.get("parameters") or {"type": "object", "properties": {}},
        }
        for tool in tools
    ]


def convert_messages(messages: Sequence[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Split out the system prompt and fold tool results into user turns.

    Consecutive same-role entries are merged into one message of content
    blocks, so every ``tool_result`` sits in the user turn that directly
    follows the assistant ``tool_use`` blocks it answers.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    def push(role: str, blocks: list[dict[str, Any]]) -> None:
        if converted and converted[-1]["role"] == role:
            converted[-1]["content"].extend(blocks)
        else:
            converted.append({"role": role, "content": blocks})

    for msg in messages:
        if msg.role is Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
        elif msg.role is Role.USER:
            if msg.content:
                push("user", [{"type": "text", "text": msg.content}])
        elif msg.role is Role.TOOL:
            push("user", [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content or "",
            }])
        elif msg.has_tool_calls:
            push("assistant", [
                {
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": tc.arguments if isinstance(tc.arguments, dict) else {},
                }
                for tc in msg.tool_calls
            ])
        elif msg.content:
            # Empty assistant text is rejected by the API
            push("assistant", [{"type": "text", "text": msg.content}])

    # A pruned view can open on an assistant turn; the API wants a user turn first.
    if converted and converted[0]["role"] != "user":
        converted.insert(0, {"role": "user", "content": [{"type": "text", "text": OMITTED_HISTORY}]})
    return "\n".join(system_parts), converted


class AnthropicProvider:
    name = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        temperature: float | None = None,
        client: AsyncAnthropic | None = None,
    ) -> None:
        defaults = PROVIDER_DEFAULTS[self.name]
        self.model = model or defaults["default_model"]
        self.temperature = temperature
        self._guard = TurnGuard(self.name)
        self._client = client or AsyncAnthropic(
            api_key=api_key,
            base_url=base_url or defaults["base_url"],
            timeout=timeout,
        )
        logger.info(f"Initialized anthropic client, model: {self.model}")

    async def aclose(self) -> None:
        await self._client.close()

    async def stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        with self._guard:
            system, converted = convert_messages(messages)
            params: dict[str, Any] = {
                "model": self.model,
                "max_tokens": max_tokens or DEFAULT_MAX_TOKENS,
                "messages": converted,
                "stream": True,
            }
            if system:
                params["system"] = system
            if self.temperature is not None:
                params["temperature"] = self.temperature
            if tools:
                params["tools"] = format_tools(tools)

            calls = ToolCallAccumulator()
            finished: list[Any] = []
            prompt_tokens = completion_tokens = None
            response = None

            try:
                response = await self._client.messages.create(**params)
                async for raw in response:
                    event = as_dict(raw)
                    kind = event.get("type")

                    if kind == "message_start":
                        usage = (event.get("message") or {}).get("usage") or {}
                        prompt_tokens = usage.get("input_tokens")

                    elif kind == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            calls.start(event.get("index"), block.get("id"), block.get("name"))

                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield StreamEvent.content_delta(delta["text"])
                        elif delta.get("type") == "input_json_delta":
                            calls.feed(event.get("index"), arguments=delta.get("partial_json"))

                    elif kind == "content_block_stop":
                        call = calls.close(event.get("index"))
                        if call is not None:
                            finished.append(call)

                    elif kind == "message_delta":
                        usage = event.get("usage") or {}
                        completion_tokens = usage.get("output_tokens", completion_tokens)

                    elif kind == "error":
                        err = event.get("error") or {}
                        yield StreamEvent.error(f"anthropic: {err.get('type', 'error')}: {err.get('message', '')}")
                        return

                    elif kind == "message_stop":
                        break

            except anthropic.APIStatusError as e:
                logger.error(f"Anthropic API error: {e.status_code} {e.message}")
                yield StreamEvent.error(describe_status(self.name, e.status_code, e.message))
                return
            except anthropic.APIConnectionError as e:
                logger.error(f"Anthropic connection error: {e}")
                yield StreamEvent.error(f"anthropic: connection failed: {e}")
                return
            finally:
                if response is not None:
                    await close_stream(response)

            if calls.open_keys:
                logger.warning(f"anthropic: {len(calls.open_keys)} tool_use blocks never closed; dropping them")
            if finished:
                yield StreamEvent.tool_calls(finished)
            if prompt_tokens is not None or completion_tokens is not None:
                yield StreamEvent.usage(prompt_tokens, completion_tokens)
            yield StreamEvent.done()
