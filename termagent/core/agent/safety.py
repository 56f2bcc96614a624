"""Shell command classification and the confirmation gate around it."""

from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

logger = logging.getLogger("termagent.agent.safety")

ConfirmCallback = Callable[[str, str], Union[bool, Awaitable[bool]]]

# Read-only commands that run without asking
SAFE_COMMANDS = (
    "ls", "cat", "head", "tail", "pwd", "echo", "which", "whoami", "date", "cal",
    "env", "printenv", "uname", "hostname", "df", "du", "free", "uptime", "wc",
    "sort", "uniq", "grep", "find", "tree", "file", "stat",
    "git status", "git log", "git diff", "git branch", "git remote",
    "node --version", "npm --version", "npm list", "python --version", "pip list",
)

DANGEROUS_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\brm\s+(-rf?|--recursive)",
        r"\bsudo\b",
        r"\bsu\b",
        r"\bchmod\b.*777",
        r"\bchown\b",
        r"\bmkfs\b",
        r"\bdd\s+if=",
        r">\s*/dev/",
        r"\bcurl\b.*\|\s*(ba)?sh",
        r"\bwget\b.*\|\s*(ba)?sh",
        r"\bnpm\s+(install|i)\s+-g",
        r"\bpip\s+install\b",
        r"\bapt\b",
        r"\bpkg\s+(install|remove)",
    )
)

REASON_DANGEROUS = "Command matches a dangerous pattern"
REASON_UNKNOWN = "Unknown command - requires confirmation"

REJECTED_ERROR = "Command was rejected by user"
NO_CALLBACK_ERROR = "Command requires confirmation but no callback provided"


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    reason: str = ""


def check_command_safety(command: str) -> SafetyVerdict:
    """Deny-list first, then allow-list prefixes; anything else is unsafe."""
    for pattern in DANGEROUS_PATTERNS:
        if pattern.search(command):
            return SafetyVerdict(False, REASON_DANGEROUS)

    trimmed = command.strip().lower()
    for safe in SAFE_COMMANDS:
        if trimmed.startswith(safe):
            return SafetyVerdict(True)

    return SafetyVerdict(False, REASON_UNKNOWN)


async def ask(callback: ConfirmCallback, command: str, reason: str) -> bool:
    """Invoke a sync or async confirmation callback."""
    answer = callback(command, reason)
    if inspect.isawaitable(answer):
        answer = await answer
    return bool(answer)


class ConfirmationPolicy:
    """Decides whether a proposed tool call may run.

    Only tools listed in ``shell_tools`` whose arguments carry a string
    ``command`` are classified. ``gate`` returns ``None`` when the call may
    proceed, or the failed ToolResult to record instead of executing it.
    """

    def __init__(
        self,
        *,
        confirm_commands: bool = True,
        auto_approve: bool = False,
        shell_tools: frozenset[str] = frozenset({"run_command"}),
        classifier: Callable[[str], SafetyVerdict] = check_command_safety,
    ) -> None:
        self.confirm_commands = confirm_commands
        self.auto_approve = auto_approve
        self.shell_tools = shell_tools
        self.classifier = classifier

    @classmethod
    def from_config(cls, config: Any) -> ConfirmationPolicy:
        return cls(
            confirm_commands=config.agent_confirm_commands,
            auto_approve=config.agent_auto_approve,
        )

    def command_for(self, tool_name: str, arguments: Any) -> str | None:
        if tool_name not in self.shell_tools or not isinstance(arguments, dict):
            return None
        command = arguments.get("command")
        return command if isinstance(command, str) else None

    async def gate(
        self,
        tool_name: str,
        arguments: Any,
        callback: ConfirmCallback | None,
    ) -> dict[str, Any] | None:
        command = self.command_for(tool_name, arguments)
        if command is None or not self.confirm_commands:
            return None

        verdict = self.classifier(command)
        if verdict.safe:
            return None

        if callback is not None:
            if await ask(callback, command, verdict.reason):
                return None
            logger.info(f"User rejected command: {command}")
            return {"success": False, "error": REJECTED_ERROR, "command": command}

        if self.auto_approve:
            logger.info(f"Auto-approving unsafe command ({verdict.reason}): {command}")
            return None

        logger.warning(f"Blocked unconfirmed command ({verdict.reason}): {command}")
        return {
            "success": False,
            "error": NO_CALLBACK_ERROR,
            "command": command,
            "reason": verdict.reason,
        }
