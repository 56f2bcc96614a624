"""Tool registry: name -> handler with a JSON-schema parameter contract."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable

from . import filesystem, shell

logger = logging.getLogger("termagent.tools")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]
    handler: Callable[..., Any]

    def definition(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        description: str,
        parameters: dict[str, Any],
        handler: Callable[..., Any],
    ) -> None:
        if name in self._tools:
            logger.warning(f"Replacing already registered tool: {name}")
        self._tools[name] = ToolSpec(name, description, parameters, handler)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Vendor-neutral ``{name, description, parameters}`` for every tool."""
        return [spec.definition() for spec in self._tools.values()]

    async def execute(
        self,
        name: str,
        arguments: Any,
        confirm_callback: Callable[[str, str], Any] | None = None,
    ) -> dict[str, Any]:
        """Run a tool. Never raises: failures come back as ``{success: False, error}``."""
        spec = self._tools.get(name)
        if spec is None:
            return {"error": f"Unknown tool: {name}"}

        kwargs = dict(arguments) if isinstance(arguments, dict) else {}
        if confirm_callback is not None and _accepts(spec.handler, "confirm_callback"):
            kwargs["confirm_callback"] = confirm_callback

        try:
            if inspect.iscoroutinefunction(spec.handler):
                result = await spec.handler(**kwargs)
            else:
                result = await asyncio.to_thread(spec.handler, **kwargs)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return {"success": False, "error": str(e)}

        if not isinstance(result, dict):
            return {"success": True, "result": result}
        return result


def _accepts(handler: Callable[..., Any], param: str) -> bool:
    try:
        params = inspect.signature(handler).parameters
    except (TypeError, ValueError):
        return False
    return param in params or any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())


def create_default_registry(working_directory: str | Path) -> ToolRegistry:
    root = Path(working_directory)
    registry = ToolRegistry()

    registry.register(
        "list_directory",
        "List files and directories at a path inside the working directory.",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path (default: current directory)."},
            },
        },
        partial(filesystem.list_directory, root),
    )
    registry.register(
        "read_file",
        "Read the contents of a text file.",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to read."},
            },
            "required": ["path"],
        },
        partial(filesystem.read_file, root),
    )
    registry.register(
        "write_file",
        "Create or overwrite a file with the given content.",
        {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path to write."},
                "content": {"type": "string", "description": "Content to write to the file."},
            },
            "required": ["path", "content"],
        },
        partial(filesystem.write_file, root),
    )
    registry.register(
        "run_command",
        "Execute a shell command. Commands that could be dangerous require user confirmation.",
        {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The shell command to execute."},
                "cwd": {"type": "string", "description": "Working directory for the command (optional)."},
                "timeout": {"type": "integer", "description": "Timeout in milliseconds (default: 30000)."},
            },
            "required": ["command"],
        },
        partial(shell.run_command, root),
    )
    return registry
