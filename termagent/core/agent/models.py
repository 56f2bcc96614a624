from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("termagent.agent")

MAX_ITERATIONS = 10


class LoopPhase(str, Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOL_DISPATCH = "tool_dispatch"
    DONE = "done"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (LoopPhase.DONE, LoopPhase.MAX_ITERATIONS, LoopPhase.ERROR)


@dataclass
class AgentEvent:
    type: str  # "content", "tool_call", "tool_result", "error", "done", "max_iterations"
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, prompt_tokens: int, completion_tokens: int, estimated: bool = False) -> None:
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        self.estimated = self.estimated or estimated

    def to_dict(self) -> dict[str, Any]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
            "estimated": self.estimated,
        }


@dataclass
class AgentState:
    phase: LoopPhase = LoopPhase.IDLE
    iteration: int = 0
    max_iterations: int = MAX_ITERATIONS
    tool_call_count: int = 0
    discarded_calls: int = 0
    usage: Usage = field(default_factory=Usage)

    @property
    def running(self) -> bool:
        return self.phase in (LoopPhase.AWAITING_MODEL, LoopPhase.TOOL_DISPATCH)

    def begin_turn(self, max_iterations: int) -> None:
        self.phase = LoopPhase.AWAITING_MODEL
        self.iteration = 0
        self.max_iterations = max_iterations
        self.tool_call_count = 0
        self.discarded_calls = 0

    def increment_iteration(self) -> None:
        self.iteration += 1
