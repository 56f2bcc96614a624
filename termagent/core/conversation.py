"""Conversation store: the ordered message log and its budgeted view.

The store is the only writer of the message sequence. Everything handed to a
provider goes through :meth:`ConversationStore.build_view`, which keeps the
view inside the token budget and never splits a tool call from its result.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

logger = logging.getLogger("termagent.conversation")

# Pruning defaults (mirrored by the context_* keys in DEFAULT_CONFIG)
CHARS_PER_TOKEN = 4.0
MESSAGE_OVERHEAD_TOKENS = 4
MAX_MESSAGES = 100
MAX_TOOL_MESSAGES = 20
KEEP_TOOL_TURNS = 20
MAX_TOOL_RESULT_CHARS = 4000
FALLBACK_MESSAGES = 10
TRUNCATION_MARKER = "\n... [truncated]"


def _now() -> str:
    return datetime.now().isoformat()


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRef:
    """A model-issued request to run a named tool. Identity is ``id``."""

    id: str
    name: str
    arguments: Any = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        args = self.arguments if isinstance(self.arguments, str) else json.dumps(self.arguments)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": args},
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> ToolCallRef:
        fn = data.get("function") or {}
        name = fn.get("name", data.get("name", ""))
        args: Any = fn.get("arguments", data.get("arguments", {}))
        if isinstance(args, str):
            try:
                args = json.loads(args) if args.strip() else {}
            except json.JSONDecodeError:
                logger.warning(f"Stored arguments for call {data.get('id')} are not JSON; keeping raw text")
        return cls(id=str(data.get("id", "")), name=name, arguments=args)


@dataclass(frozen=True)
class Message:
    role: Role
    content: str | None
    timestamp: str = field(default_factory=_now)
    tool_calls: tuple[ToolCallRef, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return self.role is Role.ASSISTANT and bool(self.tool_calls)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.tool_calls:
            data["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
            data["name"] = self.tool_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=Role(data["role"]),
            content=data.get("content"),
            timestamp=data.get("timestamp") or _now(),
            tool_calls=tuple(ToolCallRef.from_wire(tc) for tc in data.get("tool_calls") or ()),
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("name"),
        )


@dataclass
class ConversationMetadata:
    session_id: str = field(default_factory=lambda: f"session_{int(time.time() * 1000)}")
    started_at: str = field(default_factory=_now)
    last_updated: str = field(default_factory=_now)
    provider: str | None = None
    model: str | None = None
    working_directory: str = field(default_factory=os.getcwd)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "startedAt": self.started_at,
            "lastUpdated": self.last_updated,
            "provider": self.provider,
            "model": self.model,
            "workingDirectory": self.working_directory,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMetadata:
        meta = cls()
        meta.session_id = data.get("sessionId") or meta.session_id
        meta.started_at = data.get("startedAt") or meta.started_at
        meta.last_updated = data.get("lastUpdated") or meta.last_updated
        meta.provider = data.get("provider")
        meta.model = data.get("model")
        meta.working_directory = data.get("workingDirectory") or meta.working_directory
        return meta


@dataclass
class PruneReport:
    """What the last build_view() call did to produce its view."""

    pruned: bool = False
    tool_turns_dropped: int = 0
    tool_results_dropped: int = 0
    tool_results_truncated: int = 0
    incomplete_turns_dropped: int = 0
    orphan_results_dropped: int = 0
    fallback_used: bool = False
    messages_in: int = 0
    messages_out: int = 0
    estimated_tokens: int = 0


# ─── Chain integrity ──────────────────────────────────────────────────────────

def find_chain_violations(messages: Iterable[Message]) -> list[str]:
    """Return a description of every tool call/result mismatch in ``messages``.

    An empty list means every call id has exactly one later result and every
    result answers an earlier call.
    """
    problems: list[str] = []
    issued: dict[str, int] = {}
    answered: dict[str, int] = {}
    for pos, msg in enumerate(messages):
        if msg.role is Role.ASSISTANT:
            for tc in msg.tool_calls:
                if tc.id in issued:
                    problems.append(f"duplicate call id {tc.id!r} at {pos}")
                issued[tc.id] = pos
        elif msg.role is Role.TOOL:
            cid = msg.tool_call_id
            if cid is None or cid not in issued:
                problems.append(f"orphan result {cid!r} at {pos}")
            elif cid in answered:
                problems.append(f"second result for {cid!r} at {pos}")
            else:
                answered[cid] = pos
    for cid, pos in issued.items():
        if cid not in answered:
            problems.append(f"call {cid!r} at {pos} has no result")
    return problems


def repair_chain(messages: list[Message], report: PruneReport | None = None) -> list[Message]:
    """Drop whatever would break chain integrity, always as whole pairs.

    A result is kept only if it is the first answer to a call issued earlier.
    An assistant turn whose calls are not all answered is dropped together with
    the results it did get.
    """
    issued: set[str] = set()
    answered: set[str] = set()
    keep_result: list[bool] = []
    for msg in messages:
        if msg.role is Role.ASSISTANT:
            issued.update(tc.id for tc in msg.tool_calls)
            keep_result.append(True)
        elif msg.role is Role.TOOL:
            cid = msg.tool_call_id
            ok = cid is not None and cid in issued and cid not in answered
            if ok:
                answered.add(cid)
            keep_result.append(ok)
        else:
            keep_result.append(True)

    incomplete: set[str] = set()
    for msg in messages:
        if msg.has_tool_calls and any(tc.id not in answered for tc in msg.tool_calls):
            incomplete.update(tc.id for tc in msg.tool_calls)

    out: list[Message] = []
    for msg, ok in zip(messages, keep_result):
        if msg.role is Role.TOOL:
            if not ok:
                if report:
                    report.orphan_results_dropped += 1
                continue
            if msg.tool_call_id in incomplete:
                continue
        elif msg.has_tool_calls and msg.tool_calls[0].id in incomplete:
            if report:
                report.incomplete_turns_dropped += 1
            continue
        out.append(msg)
    return out


# ─── Store ───────────────────────────────────────────────────────────────────

class ConversationStore:
    """Owns the message log for one session. Not safe for concurrent writers."""

    def __init__(
        self,
        *,
        token_budget: int = 100000,
        chars_per_token: float = CHARS_PER_TOKEN,
        max_messages: int = MAX_MESSAGES,
        max_tool_messages: int = MAX_TOOL_MESSAGES,
        keep_tool_turns: int = KEEP_TOOL_TURNS,
        max_tool_result_chars: int = MAX_TOOL_RESULT_CHARS,
        fallback_messages: int = FALLBACK_MESSAGES,
        metadata: ConversationMetadata | None = None,
    ) -> None:
        self.token_budget = token_budget
        self.chars_per_token = chars_per_token
        self.max_messages = max_messages
        self.max_tool_messages = max_tool_messages
        self.keep_tool_turns = keep_tool_turns
        self.max_tool_result_chars = max_tool_result_chars
        self.fallback_messages = fallback_messages
        self.metadata = metadata or ConversationMetadata()
        self.last_prune = PruneReport()
        self._messages: list[Message] = []

    @classmethod
    def from_config(cls, config: Any, metadata: ConversationMetadata | None = None) -> ConversationStore:
        return cls(
            token_budget=config.context_token_budget,
            chars_per_token=config.context_chars_per_token,
            max_messages=config.context_max_messages,
            max_tool_messages=config.context_max_tool_messages,
            keep_tool_turns=config.context_keep_tool_turns,
            max_tool_result_chars=config.context_max_tool_result_chars,
            fallback_messages=config.context_fallback_messages,
            metadata=metadata,
        )

    # ── read access ──────────────────────────────────────────────────────────

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def system_message(self) -> Message | None:
        for msg in self._messages:
            if msg.role is Role.SYSTEM:
                return msg
        return None

    def __len__(self) -> int:
        return len(self._messages)

    def last_messages(self, n: int) -> list[Message]:
        return self._messages[-n:] if n > 0 else []

    def summary(self) -> dict[str, Any]:
        counts = {role: 0 for role in Role}
        for msg in self._messages:
            counts[msg.role] += 1
        return {
            "sessionId": self.metadata.session_id,
            "total": len(self._messages),
            "userMessages": counts[Role.USER],
            "assistantMessages": counts[Role.ASSISTANT],
            "toolCalls": counts[Role.TOOL],
            "startedAt": self.metadata.started_at,
            "lastUpdated": self.metadata.last_updated,
            "workingDirectory": self.metadata.working_directory,
        }

    # ── mutation (append-only, plus system/clear) ────────────────────────────

    def _append(self, message: Message) -> Message:
        self._messages.append(message)
        self.metadata.last_updated = message.timestamp
        return message

    def add_message(self, role: Role | str, content: str) -> Message:
        role = Role(role)
        if role is Role.TOOL:
            raise ValueError("tool messages must be added with add_tool_result()")
        if role is Role.ASSISTANT:
            return self.add_assistant_message(content)
        return self._append(Message(role=role, content=content))

    def add_assistant_message(
        self,
        content: str | None,
        tool_calls: Iterable[ToolCallRef] | None = None,
    ) -> Message:
        calls = tuple(tool_calls or ())
        if calls:
            known = self._issued_call_ids()
            seen: set[str] = set()
            for tc in calls:
                if not tc.id or tc.id in known or tc.id in seen:
                    raise ValueError(f"tool call id {tc.id!r} is empty or already used")
                seen.add(tc.id)
            # Vendors reject text alongside tool calls in history; content is null exactly here.
            return self._append(Message(role=Role.ASSISTANT, content=None, tool_calls=calls))
        return self._append(Message(role=Role.ASSISTANT, content=content or ""))

    def add_tool_result(self, tool_call_id: str, tool_name: str, result: Any) -> Message:
        if tool_call_id not in self._pending_call_ids():
            raise ValueError(f"no pending tool call with id {tool_call_id!r}")
        content = result if isinstance(result, str) else json.dumps(result, default=str)
        return self._append(
            Message(role=Role.TOOL, content=content, tool_call_id=tool_call_id, tool_name=tool_name)
        )

    def set_system_message(self, content: str) -> Message:
        message = Message(role=Role.SYSTEM, content=content)
        for i, msg in enumerate(self._messages):
            if msg.role is Role.SYSTEM:
                self._messages[i] = message
                return message
        self._messages.insert(0, message)
        return message

    def clear(self) -> None:
        system = self.system_message
        self._messages = [system] if system else []
        self.metadata.last_updated = _now()

    def resolve_pending_calls(self, result: Any, call_ids: Iterable[str] | None = None) -> list[str]:
        """Answer unanswered tool calls (all, or only ``call_ids``) with ``result``; returns the ids closed."""
        pending = self._pending_call_ids()
        if call_ids is not None:
            pending &= set(call_ids)
        closed: list[str] = []
        for msg in list(self._messages):
            for tc in msg.tool_calls:
                if tc.id in pending:
                    self.add_tool_result(tc.id, tc.name, result)
                    closed.append(tc.id)
        return closed

    def _issued_call_ids(self) -> set[str]:
        return {tc.id for m in self._messages for tc in m.tool_calls}

    def _pending_call_ids(self) -> set[str]:
        answered = {m.tool_call_id for m in self._messages if m.role is Role.TOOL}
        return self._issued_call_ids() - answered

    # ── budgeting ────────────────────────────────────────────────────────────

    def estimate_tokens(self, message: Message) -> int:
        """Fixed-ratio estimate over the serialized message."""
        size = len(message.content or "")
        for tc in message.tool_calls:
            size += len(tc.name) + len(json.dumps(tc.arguments, default=str))
        if message.tool_name:
            size += len(message.tool_name)
        return int(size / self.chars_per_token) + MESSAGE_OVERHEAD_TOKENS

    def estimate_total(self, messages: Iterable[Message]) -> int:
        return sum(self.estimate_tokens(m) for m in messages)

    def build_view(self, reserved_tokens: int = 0) -> list[Message]:
        """Return the transmit-ready view. The stored log is never modified."""
        report = PruneReport(messages_in=len(self._messages))
        view = repair_chain(list(self._messages), report)
        if report.orphan_results_dropped or report.incomplete_turns_dropped:
            logger.warning(
                f"Stored log breaks chain integrity: dropped {report.incomplete_turns_dropped} "
                f"incomplete turns and {report.orphan_results_dropped} orphan results from the view"
            )

        budget = max(self.token_budget - reserved_tokens, 0)
        if self._within_limits(view, budget) and self._tool_count(view) <= self.max_tool_messages:
            report.messages_out = len(view)
            report.estimated_tokens = self.estimate_total(view)
            self.last_prune = report
            return view

        report.pruned = True
        if self._tool_count(view) > self.max_tool_messages:
            view = self._drop_old_tool_turns(view, report)
        view = self._truncate_tool_results(view, report)

        if not self._within_limits(view, budget):
            view = self._collapse_to_tail(view, report)
            if not self._within_limits(view, budget):
                logger.warning(
                    f"Fallback view still exceeds budget (~{self.estimate_total(view)} > {budget} tokens)"
                )

        report.messages_out = len(view)
        report.estimated_tokens = self.estimate_total(view)
        self.last_prune = report
        logger.info(
            f"Pruned view: {report.messages_in} -> {report.messages_out} messages, "
            f"{report.tool_turns_dropped} tool turns dropped, "
            f"{report.tool_results_truncated} results truncated, "
            f"fallback={report.fallback_used}, ~{report.estimated_tokens} tokens"
        )
        return view

    def _within_limits(self, view: list[Message], budget: int) -> bool:
        return len(view) <= self.max_messages and self.estimate_total(view) <= budget

    @staticmethod
    def _tool_count(view: list[Message]) -> int:
        return sum(1 for m in view if m.role is Role.TOOL)

    def _drop_old_tool_turns(self, view: list[Message], report: PruneReport) -> list[Message]:
        tool_turns = [m for m in view if m.has_tool_calls]
        kept_turns = tool_turns[-self.keep_tool_turns:] if self.keep_tool_turns > 0 else []
        kept_ids = {tc.id for m in kept_turns for tc in m.tool_calls}
        out: list[Message] = []
        for msg in view:
            if msg.has_tool_calls and msg.tool_calls[0].id not in kept_ids:
                report.tool_turns_dropped += 1
                continue
            if msg.role is Role.TOOL and msg.tool_call_id not in kept_ids:
                report.tool_results_dropped += 1
                continue
            out.append(msg)
        return out

    def _truncate_tool_results(self, view: list[Message], report: PruneReport) -> list[Message]:
        limit = self.max_tool_result_chars
        out: list[Message] = []
        for msg in view:
            if msg.role is Role.TOOL and msg.content and len(msg.content) > limit:
                msg = replace(msg, content=msg.content[:limit] + TRUNCATION_MARKER)
                report.tool_results_truncated += 1
            out.append(msg)
        return out

    def _collapse_to_tail(self, view: list[Message], report: PruneReport) -> list[Message]:
        report.fallback_used = True
        system = [m for m in view if m.role is Role.SYSTEM][:1]
        rest = [m for m in view if m.role is not Role.SYSTEM]
        start = max(0, len(rest) - self.fallback_messages)
        # Never open the window on a result: walk back to the call that owns it.
        while start > 0 and rest[start].role is Role.TOOL:
            start -= 1
        return system + repair_chain(rest[start:], report)

    # ── persistence shape ────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "messages": [m.to_dict() for m in self._messages],
        }

    def load_dict(self, data: dict[str, Any]) -> None:
        """Replace state with a session document ``{metadata, messages}``."""
        self.metadata = ConversationMetadata.from_dict(data.get("metadata") or {})
        self._messages = [Message.from_dict(m) for m in data.get("messages") or []]
        problems = find_chain_violations(self._messages)
        if problems:
            logger.warning(
                f"Session {self.metadata.session_id} has {len(problems)} chain problems "
                f"(first: {problems[0]}); they are excluded from transmitted views"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs: Any) -> ConversationStore:
        store = cls(**kwargs)
        store.load_dict(data)
        return store
