"""Gemini adapter over the REST streamGenerateContent endpoint (SSE via httpx)."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from ..config import PROVIDER_DEFAULTS
from ..conversation import Message, Role
from .base import (
    DEFAULT_MAX_TOKENS,
    OMITTED_HISTORY,
    ProviderProtocolError,
    StreamEvent,
    ToolCallAccumulator,
    TurnGuard,
    describe_status,
    result_payload,
)

logger = logging.getLogger("termagent.providers.google")


def format_tools(tools: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{
        "functionDeclarations": [
            {
                "name": tool["name"],
                "description": tool.get("description", ""),
                "parameters": tool.get("parameters") or {"type": "object", "properties": {}},
            }
            for tool in tools
        ]
    }]


def convert_messages(messages: Sequence[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Map the log onto Gemini ``contents``.

    Assistant turns use the ``model`` role, tool results become
    ``functionResponse`` parts in a ``user`` turn, and adjacent turns with the
    same role are merged because the API requires alternation.
    """
    system_parts: list[str] = []
    contents: list[dict[str, Any]] = []

    def push(role: str, parts: list[dict[str, Any]]) -> None:
        if contents and contents[-1]["role"] == role:
            contents[-1]["parts"].extend(parts)
        else:
            contents.append({"role": role, "parts": parts})

    for msg in messages:
        if msg.role is Role.SYSTEM:
            if msg.content:
                system_parts.append(msg.content)
        elif msg.role is Role.USER:
            if msg.content:
                push("user", [{"text": msg.content}])
        elif msg.role is Role.TOOL:
            payload = result_payload(msg.content)
            push("user", [{
                "functionResponse": {
                    "name": msg.tool_name or "",
                    "response": payload if isinstance(payload, dict) else {"result": payload},
                }
            }])
        elif msg.has_tool_calls:
            push("model", [
                {
                    "functionCall": {
                        "name": tc.name,
                        "args": tc.arguments if isinstance(tc.arguments, dict) else {},
                    }
                }
                for tc in msg.tool_calls
            ])
        elif msg.content:
            push("model", [{"text": msg.content}])

    if contents and contents[0]["role"] != "user":
        contents.insert(0, {"role": "user", "parts": [{"text": OMITTED_HISTORY}]})
    return "\n".join(system_parts), contents


def iter_sse_data(line: str) -> dict[str, Any] | None:
    """Decode one SSE line; ``None`` for anything that is not a data line."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    raw = line[len("data:"):].strip()
    if not raw or raw == "[DONE]":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProviderProtocolError(f"google: undecodable stream line: {raw[:200]!r}") from e


class GoogleProvider:
    name = "google"

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 600.0,
        temperature: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        defaults = PROVIDER_DEFAULTS[self.name]
        self.model = model or defaults["default_model"]
        self.base_url = (base_url or defaults["base_url"]).rstrip("/")
        self.temperature = temperature
        self._api_key = api_key
        self._guard = TurnGuard(self.name)
        self._client = client or httpx.AsyncClient(timeout=timeout)
        logger.info(f"Initialized google client, model: {self.model}")

    async def aclose(self) -> None:
        await self._client.aclose()

    def _build_body(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        system, contents = convert_messages(messages)
        generation: dict[str, Any] = {"maxOutputTokens": max_tokens or DEFAULT_MAX_TOKENS}
        if self.temperature is not None:
            generation["temperature"] = self.temperature
        body: dict[str, Any] = {"contents": contents, "generationConfig": generation}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            body["tools"] = format_tools(tools)
        return body

    async def stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        with self._guard:
            url = f"{self.base_url}/models/{self.model}:streamGenerateContent"
            body = self._build_body(messages, tools, max_tokens)
            calls = ToolCallAccumulator()
            usage: dict[str, Any] = {}

            try:
                async with self._client.stream(
                    "POST",
                    url,
                    params={"alt": "sse"},
                    headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
                    json=body,
                ) as response:
                    if response.status_code >= 400:
                        detail = (await response.aread()).decode("utf-8", errors="replace")
                        logger.error(f"Gemini API error: {response.status_code} {detail[:500]}")
                        yield StreamEvent.error(describe_status(self.name, response.status_code, detail[:500]))
                        return

                    async for line in response.aiter_lines():
                        chunk = iter_sse_data(line)
                        if chunk is None:
                            continue
                        if chunk.get("error"):
                            err = chunk["error"]
                            detail = err.get("message", err) if isinstance(err, dict) else err
                            yield StreamEvent.error(f"google: {detail}")
                            return
                        if chunk.get("usageMetadata"):
                            usage = chunk["usageMetadata"]
                        for candidate in chunk.get("candidates") or []:
                            for part in (candidate.get("content") or {}).get("parts") or []:
                                if part.get("text"):
                                    yield StreamEvent.content_delta(part["text"])
                                elif "functionCall" in part:
                                    fc = part["functionCall"] or {}
                                    calls.add_complete(fc.get("name"), fc.get("args"), fc.get("id"))

            except httpx.TransportError as e:
                logger.error(f"Gemini transport error: {e}")
                yield StreamEvent.error(f"google: cannot reach {self.base_url}: {e}")
                return

            if len(calls):
                yield StreamEvent.tool_calls(calls.close_all())
            if usage:
                yield StreamEvent.usage(usage.get("promptTokenCount"), usage.get("candidatesTokenCount"))
            yield StreamEvent.done()
