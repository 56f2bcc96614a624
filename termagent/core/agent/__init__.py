"""Agent package.

Public API:
    from termagent.core.agent import AgentLoop, AgentEvent, AgentState

Internal layout:
    models.py       AgentEvent, AgentState, LoopPhase, Usage
    safety.py       command classifier and ConfirmationPolicy
    loop.py         AgentLoop (the bounded tool-call loop)
    continuation.py AutoContinue (optional re-prompt layer)
"""

from .continuation import AutoContinue
from .loop import AgentLoop
from .models import AgentEvent, AgentState, LoopPhase
from .safety import ConfirmationPolicy, check_command_safety

__all__ = [
    "AgentEvent",
    "AgentLoop",
    "AgentState",
    "AutoContinue",
    "ConfirmationPolicy",
    "LoopPhase",
    "check_command_safety",
]
