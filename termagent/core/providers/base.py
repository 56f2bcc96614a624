"""Vendor-neutral streaming protocol shared by every provider adapter."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Protocol, Sequence, runtime_checkable

from ..conversation import Message, ToolCallRef

logger = logging.getLogger("termagent.providers")

DEFAULT_MAX_TOKENS = 4096
OMITTED_HISTORY = "(earlier conversation omitted)"


class ProviderError(Exception):
    """Base class for provider failures."""


class ProviderConfigError(ProviderError):
    """Unknown provider name or missing credentials."""


class ProviderBusyError(ProviderError):
    """A second stream was started on an adapter that is still streaming."""


class ProviderProtocolError(ProviderError):
    """The vendor sent something that cannot be decoded at all."""


class StreamEventType(str, Enum):
    CONTENT = "content"
    TOOL_CALLS = "tool_calls"
    USAGE = "usage"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class StreamEvent:
    type: StreamEventType
    content: str = ""
    calls: tuple[ToolCallRef, ...] = ()
    prompt_tokens: int = 0
    completion_tokens: int = 0
    message: str = ""

    @classmethod
    def content_delta(cls, text: str) -> StreamEvent:
        return cls(StreamEventType.CONTENT, content=text)

    @classmethod
    def tool_calls(cls, calls: Sequence[ToolCallRef]) -> StreamEvent:
        return cls(StreamEventType.TOOL_CALLS, calls=tuple(calls))

    @classmethod
    def usage(cls, prompt_tokens: int | None, completion_tokens: int | None) -> StreamEvent:
        return cls(
            StreamEventType.USAGE,
            prompt_tokens=prompt_tokens or 0,
            completion_tokens=completion_tokens or 0,
        )

    @classmethod
    def error(cls, message: str) -> StreamEvent:
        return cls(StreamEventType.ERROR, message=message)

    @classmethod
    def done(cls) -> StreamEvent:
        return cls(StreamEventType.DONE)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.DONE, StreamEventType.ERROR)


@runtime_checkable
class Provider(Protocol):
    """What the agent loop needs from a vendor adapter.

    ``stream`` yields StreamEvents for exactly one model turn and always ends
    with DONE or ERROR. At most one stream may be open per instance.
    """

    name: str
    model: str

    def stream(
        self,
        messages: Sequence[Message],
        tools: Sequence[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def aclose(self) -> None: ...


class TurnGuard:
    """Enforces one in-flight stream per adapter instance."""

    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def __enter__(self) -> TurnGuard:
        if self._active:
            raise ProviderBusyError(
                f"{self._owner}: stream() called while a previous stream is still open"
            )
        self._active = True
        return self

    def __exit__(self, *exc: Any) -> None:
        self._active = False


@dataclass
class _PartialCall:
    id: str | None = None
    name: str = ""
    fragments: list[str] = field(default_factory=list)
    closed: bool = False


class ToolCallAccumulator:
    """Reassembles streamed tool calls keyed by vendor index or block id.

    Argument text arrives as arbitrary partial-JSON fragments; it is parsed
    only when the call is closed, so chunk boundaries never matter.
    """

    def __init__(self, id_factory: Callable[[int], str] | None = None) -> None:
        turn = uuid.uuid4().hex[:8]
        self._id_factory = id_factory or (lambda n: f"call_{turn}_{n}")
        self._calls: dict[Any, _PartialCall] = {}
        self._order: list[Any] = []
        self._synthesized = 0

    def __len__(self) -> int:
        return len(self._order)

    @property
    def open_keys(self) -> list[Any]:
        return [k for k in self._order if not self._calls[k].closed]

    def _slot(self, key: Any) -> _PartialCall:
        if key not in self._calls:
            self._calls[key] = _PartialCall()
            self._order.append(key)
        return self._calls[key]

    def start(self, key: Any, call_id: str | None = None, name: str | None = None) -> None:
        slot = self._slot(key)
        if call_id:
            slot.id = call_id
        if name:
            slot.name = name

    def feed(
        self,
        key: Any,
        call_id: str | None = None,
        name: str | None = None,
        arguments: str | None = None,
    ) -> None:
        slot = self._slot(key)
        if call_id and not slot.id:
            slot.id = call_id
        if name:
            # Most vendors send the name once; some resend it whole on each delta.
            if not slot.name:
                slot.name = name
            elif name != slot.name:
                slot.name += name
        if arguments:
            slot.fragments.append(arguments)

    def add_complete(self, name: Any, arguments: Any, call_id: str | None = None) -> None:
        """Record a call that the vendor delivered in one piece."""
        key = ("complete", len(self._order))
        slot = self._slot(key)
        slot.id = call_id
        slot.name = name if isinstance(name, str) else ""
        if isinstance(arguments, str):
            slot.fragments.append(arguments)
        elif arguments is not None:
            slot.fragments.append(json.dumps(arguments))

    def close(self, key: Any) -> ToolCallRef | None:
        slot = self._calls.get(key)
        if slot is None or slot.closed:
            return None
        slot.closed = True
        return self._finish(slot)

    def close_all(self) -> list[ToolCallRef]:
        """Close everything still open and return *all* calls in emission order."""
        for key in self.open_keys:
            self._calls[key].closed = True
        return [self._finish(self._calls[k]) for k in self._order]

    def _finish(self, slot: _PartialCall) -> ToolCallRef:
        if not slot.id:
            slot.id = self._id_factory(self._synthesized)
            self._synthesized += 1
        return ToolCallRef(id=slot.id, name=slot.name, arguments=parse_arguments(slot))


def parse_arguments(slot: _PartialCall) -> Any:
    raw = "".join(slot.fragments)
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Tool call {slot.name or '?'} ({slot.id}) sent unparsable arguments: {raw[:200]!r}")
        return {}


def as_dict(obj: Any) -> dict[str, Any]:
    """Normalize SDK model objects and plain mappings to a dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    try:
        return dict(obj)
    except (TypeError, ValueError) as e:
        raise ProviderProtocolError(f"Cannot decode stream chunk of type {type(obj).__name__}") from e


def result_payload(content: str | None) -> Any:
    """Tool message content back to a JSON value where it was one."""
    if not content:
        return {}
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        return content


_STATUS_HINTS = {
    400: "request rejected",
    401: "authentication rejected; check the API key",
    403: "access denied for this key or model",
    404: "model or endpoint not found",
    413: "request too large; the conversation may exceed the model's context",
    429: "rate limited",
    500: "server error",
    503: "service unavailable",
}


def describe_status(provider: str, status: int | None, detail: str) -> str:
    hint = _STATUS_HINTS.get(status or 0, "request failed")
    return f"{provider}: HTTP {status} {hint}: {detail}".strip()


async def close_stream(stream: Any) -> None:
    """Release a vendor stream object, whatever its closing method is called."""
    closer = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if closer is None:
        return
    result = closer()
    if hasattr(result, "__await__"):
        await result
