"""Optional auto-continue layer on top of AgentLoop.chat().

Some models stop mid-task with phrases like "let me continue...". This
wrapper re-sends "continue" when a finished turn looks like that. It is a
text heuristic only; the loop's outcome events are never altered.
"""

from __future__ import annotations

import logging
import re
from typing import AsyncIterator

from .loop import AgentLoop
from .models import AgentEvent

logger = logging.getLogger("termagent.agent.continuation")

CONTINUE_MESSAGE = "continue"

INCOMPLETE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"mari (kita )?lanjut",
        r"selanjutnya",
        r"let('s| me) continue",
        r"next,? (I('ll| will)|we)",
        r"sekarang (saya|kita) akan",
        r"now (I('ll| will)|let me)",
        r"\.{3}\s*$",
    )
)


def should_auto_continue(response: str, tool_call_count: int) -> bool:
    if not response and tool_call_count == 0:
        return False
    if any(p.search(response) for p in INCOMPLETE_PATTERNS):
        return True
    # Busy turn with almost no prose usually means the model is mid-task
    return tool_call_count > 2 and len(response) < 50


class AutoContinue:
    def __init__(self, agent: AgentLoop, max_attempts: int = 8, enabled: bool = True) -> None:
        self.agent = agent
        self.max_attempts = max_attempts
        self.enabled = enabled
        self.attempts = 0

    async def chat(self, message: str) -> AsyncIterator[AgentEvent]:
        self.attempts = 0
        while True:
            response: list[str] = []
            tool_calls = 0
            outcome = None
            async for event in self.agent.chat(message):
                if event.type == "content":
                    response.append(event.data["content"])
                elif event.type == "tool_call":
                    tool_calls += 1
                outcome = event.type
                yield event

            # Only a normal finish is eligible; errors and the ceiling go back to the user.
            if not self.enabled or outcome != "done":
                return
            if not should_auto_continue("".join(response), tool_calls):
                return
            if self.attempts >= self.max_attempts:
                logger.info(f"Auto-continue limit reached ({self.max_attempts})")
                yield AgentEvent(type="auto_continue_limit", data={"max": self.max_attempts})
                return

            self.attempts += 1
            logger.info(f"Auto-continuing ({self.attempts}/{self.max_attempts})")
            yield AgentEvent(type="auto_continue", data={"attempt": self.attempts, "max": self.max_attempts})
            message = CONTINUE_MESSAGE
