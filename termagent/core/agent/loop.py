from __future__ import annotations

import logging
import os
from contextlib import aclosing
from typing import Any, AsyncIterator

from ..config import Config, get_config
from ..conversation import ConversationStore, ToolCallRef
from ..prompts import generate_system_prompt
from ..providers.base import Provider, StreamEventType
from ..tools import ToolRegistry
from .models import AgentEvent, AgentState, LoopPhase
from .safety import ConfirmationPolicy, ConfirmCallback

logger = logging.getLogger("termagent.agent")

ABANDONED_ERROR = "Turn was abandoned before this tool ran"


class AgentLoop:
    """Drives one conversation: model turn -> tool dispatch -> model turn, bounded.

    The provider adapter is injected and may be swapped between turns with
    :meth:`set_provider`. ``chat()`` must be drained before it is called again.
    """

    def __init__(
        self,
        provider: Provider,
        tools: ToolRegistry,
        conversation: ConversationStore,
        config: Config | None = None,
        confirm_callback: ConfirmCallback | None = None,
        policy: ConfirmationPolicy | None = None,
        working_directory: str | None = None,
    ) -> None:
        cfg = config or get_config()
        self.config = cfg
        self.provider = provider
        self.tools = tools
        self.conversation = conversation
        self.confirm_callback = confirm_callback
        self.policy = policy or ConfirmationPolicy.from_config(cfg)
        self.max_iterations = cfg.agent_max_iterations
        self.working_directory = working_directory or conversation.metadata.working_directory or os.getcwd()
        self.state = AgentState(max_iterations=self.max_iterations)

    # ── lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Install the system prompt and record provider/model on the session."""
        prompt = generate_system_prompt(self.working_directory, self.tools.names)
        self.conversation.set_system_message(prompt)
        meta = self.conversation.metadata
        meta.provider = self.provider.name
        meta.model = self.provider.model
        meta.working_directory = str(self.working_directory)
        logger.info(f"Agent initialized with {len(self.tools.names)} tools ({self.provider.name}/{self.provider.model})")

    def clear_history(self) -> None:
        self.conversation.clear()
        self.initialize()

    def set_provider(self, provider: Provider) -> None:
        if self.state.running:
            raise RuntimeError("Cannot switch provider while a turn is running")
        self.provider = provider
        self.conversation.metadata.provider = provider.name
        self.conversation.metadata.model = provider.model
        logger.info(f"Provider switched to {provider.name}/{provider.model}")

    def get_summary(self) -> dict[str, Any]:
        summary = self.conversation.summary()
        summary["usage"] = self.state.usage.to_dict()
        return summary

    # ── main loop ────────────────────────────────────────────────────────────

    async def chat(self, message: str) -> AsyncIterator[AgentEvent]:
        if self.state.running:
            raise RuntimeError("chat() called while the previous turn is still running")

        self.conversation.add_message("user", message)
        self.state.begin_turn(self.max_iterations)
        tool_defs = self.tools.definitions()
        valid: list[ToolCallRef] = []

        try:
            while self.state.iteration < self.state.max_iterations:
                self.state.increment_iteration()
                self.state.phase = LoopPhase.AWAITING_MODEL

                view = self.conversation.build_view(reserved_tokens=self.config.max_tokens)
                content_parts: list[str] = []
                calls: list[ToolCallRef] = []
                usage_seen = False

                try:
                    async with aclosing(
                        self.provider.stream(view, tools=tool_defs, max_tokens=self.config.max_tokens)
                    ) as stream:
                        async for event in stream:
                            if event.type is StreamEventType.CONTENT:
                                content_parts.append(event.content)
                                yield AgentEvent(type="content", data={"content": event.content})
                            elif event.type is StreamEventType.TOOL_CALLS:
                                calls.extend(event.calls)
                            elif event.type is StreamEventType.USAGE:
                                self.state.usage.add(event.prompt_tokens, event.completion_tokens)
                                usage_seen = True
                            elif event.type is StreamEventType.ERROR:
                                logger.error(f"Provider error: {event.message}")
                                self.state.phase = LoopPhase.ERROR
                                yield AgentEvent(type="error", data={"message": event.message})
                                return
                            elif event.type is StreamEventType.DONE:
                                break
                except Exception as e:
                    logger.exception("Provider stream failed")
                    self.state.phase = LoopPhase.ERROR
                    yield AgentEvent(type="error", data={"message": f"{type(e).__name__}: {e}"})
                    return

                content = "".join(content_parts)
                if not usage_seen:
                    self._estimate_usage(view, content, calls)

                valid = self._valid_calls(calls)
                if not valid:
                    self.conversation.add_assistant_message(content or "")
                    self.state.phase = LoopPhase.DONE
                    yield AgentEvent(type="done", data={
                        "iterations": self.state.iteration,
                        "usage": self.state.usage.to_dict(),
                    })
                    return

                # Text emitted alongside tool calls was already streamed to the caller.
                self.conversation.add_assistant_message(None, valid)

                self.state.phase = LoopPhase.TOOL_DISPATCH
                for call in valid:
                    self.state.tool_call_count += 1
                    yield AgentEvent(type="tool_call", data={
                        "id": call.id,
                        "tool": call.name,
                        "arguments": call.arguments,
                    })
                    result = await self._dispatch(call)
                    self.conversation.add_tool_result(call.id, call.name, result)
                    yield AgentEvent(type="tool_result", data={
                        "id": call.id,
                        "tool": call.name,
                        "result": result,
                    })

            self.state.phase = LoopPhase.MAX_ITERATIONS
            logger.warning(f"Reached maximum iterations ({self.state.max_iterations})")
            yield AgentEvent(type="max_iterations", data={
                "message": f"Reached maximum iterations ({self.state.max_iterations})",
                "iterations": self.state.iteration,
                "usage": self.state.usage.to_dict(),
            })

        finally:
            # Every stored call keeps exactly one result, even when the turn stops early
            closed = self.conversation.resolve_pending_calls(
                {"success": False, "error": ABANDONED_ERROR}, [c.id for c in valid]
            )
            if closed:
                logger.warning(f"Closed {len(closed)} unanswered tool calls: {', '.join(closed)}")
            if self.state.running:
                # Caller stopped draining mid-turn
                logger.warning(f"Turn abandoned in phase {self.state.phase.value}")
                self.state.phase = LoopPhase.IDLE

    async def process(self, message: str) -> dict[str, Any]:
        """Drain ``chat()`` and collect the text, tool results and final outcome."""
        content: list[str] = []
        tool_results: list[dict[str, Any]] = []
        events: list[AgentEvent] = []
        async for event in self.chat(message):
            events.append(event)
            if event.type == "content":
                content.append(event.data["content"])
            elif event.type == "tool_result":
                tool_results.append(event.data)
        return {
            "content": "".join(content),
            "tool_results": tool_results,
            "outcome": events[-1].type if events else "done",
            "events": events,
        }

    # ── helpers ──────────────────────────────────────────────────────────────

    def _valid_calls(self, calls: list[ToolCallRef]) -> list[ToolCallRef]:
        """Drop nameless calls and give every survivor a usable, unique id."""
        used = {tc.id for m in self.conversation.messages for tc in m.tool_calls}
        valid: list[ToolCallRef] = []
        for n, call in enumerate(calls):
            if not isinstance(call.name, str) or not call.name:
                self.state.discarded_calls += 1
                logger.warning(f"Discarding tool call without a name: {call!r}")
                continue
            if not call.id or call.id in used:
                new_id = f"call_{self.state.iteration}_{n}_{len(used)}"
                logger.warning(f"Tool call id {call.id!r} is empty or reused; using {new_id}")
                call = ToolCallRef(id=new_id, name=call.name, arguments=call.arguments)
            used.add(call.id)
            valid.append(call)
        return valid

    async def _dispatch(self, call: ToolCallRef) -> dict[str, Any]:
        try:
            blocked = await self.policy.gate(call.name, call.arguments, self.confirm_callback)
        except Exception as e:
            logger.error(f"Confirmation for {call.name} failed: {e!r}")
            return {"success": False, "error": f"Confirmation failed: {type(e).__name__}: {e}"}
        if blocked is not None:
            return blocked

        try:
            result = await self.tools.execute(
                call.name,
                call.arguments if isinstance(call.arguments, dict) else {},
                confirm_callback=self.confirm_callback,
            )
        except Exception as e:
            logger.error(f"Tool {call.name} raised: {e}")
            return {"success": False, "error": str(e)}

        if not isinstance(result, dict):
            return {"success": True, "result": result}
        return result

    def _estimate_usage(self, view: list, content: str, calls: list[ToolCallRef]) -> None:
        ratio = self.conversation.chars_per_token
        completion_chars = len(content) + sum(len(c.name or "") + len(str(c.arguments)) for c in calls)
        self.state.usage.add(
            self.conversation.estimate_total(view),
            int(completion_chars / ratio),
            estimated=True,
        )
