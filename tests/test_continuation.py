"""Tests for the optional auto-continue layer."""

import asyncio
from dataclasses import replace

import pytest

from termagent.core.agent import AgentLoop, AutoContinue
from termagent.core.agent.continuation import CONTINUE_MESSAGE, should_auto_continue
from termagent.core.config import DEFAULT_CONFIG, Config
from termagent.core.conversation import ConversationStore, Role, ToolCallRef
from termagent.core.providers.base import StreamEvent
from termagent.core.tools import ToolRegistry


class ScriptedProvider:
    name = "scripted"
    model = "scripted-1"

    def __init__(self, turns):
        self.turns = list(turns)

    async def stream(self, messages, tools=None, max_tokens=None):
        for event in self.turns.pop(0):
            yield event

    async def aclose(self):
        pass


def text_turn(text):
    return [StreamEvent.content_delta(text), StreamEvent.done()]


def make_runner(turns, max_attempts=8, enabled=True, max_iterations=10):
    registry = ToolRegistry()
    registry.register("list_directory", "List", {"type": "object", "properties": {}}, lambda: {"success": True})
    store = ConversationStore()
    store.set_system_message("sys")
    config = replace(Config(**DEFAULT_CONFIG), agent_max_iterations=max_iterations)
    agent = AgentLoop(ScriptedProvider(turns), registry, store, config=config)
    return AutoContinue(agent, max_attempts=max_attempts, enabled=enabled), store


def collect(runner, message):
    async def _run():
        return [e async for e in runner.chat(message)]
    return asyncio.run(_run())


# ═══════════════════════════════════════════════════════════════
# Heuristic
# ═══════════════════════════════════════════════════════════════

class TestShouldAutoContinue:

    @pytest.mark.parametrize("text", [
        "I created the file. Let me continue with the tests.",
        "Now I'll update the README",
        "Next, we wire up the CLI",
        "Working on it...",
        "Selanjutnya saya akan menulis test",
    ])
    def test_incomplete_phrases(self, text):
        assert should_auto_continue(text, 0) is True

    def test_finished_answer(self):
        assert should_auto_continue("All tests pass. The refactor is complete.", 1) is False

    def test_empty_turn_without_tools(self):
        assert should_auto_continue("", 0) is False

    def test_busy_turn_with_little_prose(self):
        assert should_auto_continue("ok", 3) is True
        assert should_auto_continue("ok", 2) is False


# ═══════════════════════════════════════════════════════════════
# Wrapper
# ═══════════════════════════════════════════════════════════════

class TestAutoContinue:

    def test_resends_continue_until_finished(self):
        runner, store = make_runner([
            text_turn("Step one done. Let me continue..."),
            text_turn("All finished."),
        ])
        events = collect(runner, "do the thing")

        types = [e.type for e in events]
        assert types == ["content", "done", "auto_continue", "content", "done"]
        assert events[2].data == {"attempt": 1, "max": 8}
        users = [m.content for m in store.messages if m.role is Role.USER]
        assert users == ["do the thing", CONTINUE_MESSAGE]

    def test_disabled_passes_through(self):
        runner, _ = make_runner([text_turn("Let me continue...")], enabled=False)
        assert [e.type for e in collect(runner, "go")] == ["content", "done"]

    def test_limit_event(self):
        runner, _ = make_runner([text_turn("Let me continue...")] * 3, max_attempts=2)
        types = [e.type for e in collect(runner, "go")]
        assert types.count("auto_continue") == 2
        assert types[-1] == "auto_continue_limit"

    def test_error_outcome_is_not_continued(self):
        runner, _ = make_runner([[StreamEvent.content_delta("Let me continue..."), StreamEvent.error("boom")]])
        assert [e.type for e in collect(runner, "go")] == ["content", "error"]

    def test_iteration_ceiling_is_not_continued(self):
        call = ToolCallRef("c1", "list_directory", {})
        runner, _ = make_runner(
            [[StreamEvent.content_delta("Now I'll look..."), StreamEvent.tool_calls([call]), StreamEvent.done()]],
            max_iterations=1,
        )
        events = collect(runner, "go")
        assert events[-1].type == "max_iterations"
        assert "auto_continue" not in [e.type for e in events]
