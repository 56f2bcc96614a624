"""System prompt for the TermAgent coding assistant."""

from __future__ import annotations

import fnmatch
import logging
import os
import sys
from pathlib import Path
from typing import Iterable

logger = logging.getLogger("termagent.prompts")

SYSTEM_PROMPT = """\
You are TermAgent, an expert AI coding assistant running in the terminal. You help developers with \
coding tasks by reading and writing files, listing directories and running commands.

<capabilities>
You have access to these tools:
{tools}
</capabilities>

<guidelines>
1. Be proactive: when asked to implement something, do it completely. Write the actual code.
2. Read before editing: always read a file before changing it.
3. Explain briefly what you are doing, then do it.
4. If a tool fails, read the error and try another approach.
5. Be concise. Keep responses focused and actionable.
6. Prefer relative paths when showing file locations to the user.
7. After making changes, verify them with a read or a command.
</guidelines>

<efficiency>
- Plan all the tool calls you need before acting.
- Do not re-read a file you already read in this conversation unless it changed.
- Complete simple tasks in one turn.
</efficiency>

<environment>
- Working Directory: {working_directory}
- Platform: {platform}
</environment>
"""

PROJECT_MARKERS: dict[str, tuple[str, ...]] = {
    "node": ("package.json", "node_modules", "tsconfig.json"),
    "python": ("requirements.txt", "setup.py", "pyproject.toml", "Pipfile", ".venv", "venv"),
    "rust": ("Cargo.toml", "Cargo.lock"),
    "go": ("go.mod", "go.sum"),
    "java": ("pom.xml", "build.gradle", "gradlew"),
    "ruby": ("Gemfile", "Gemfile.lock"),
    "php": ("composer.json", "composer.lock"),
    "dotnet": ("*.csproj", "*.sln", "appsettings.json"),
}


def detect_project_type(directory: str | Path) -> str:
    """First project type whose marker file is present, else ``"unknown"``."""
    try:
        names = os.listdir(directory)
    except OSError:
        return "unknown"

    for project_type, markers in PROJECT_MARKERS.items():
        for marker in markers:
            if "*" in marker:
                if fnmatch.filter(names, marker):
                    return project_type
            elif marker in names:
                return project_type
    return "unknown"


def generate_system_prompt(working_directory: str | Path, tool_names: Iterable[str] = ()) -> str:
    tools = "\n".join(f"- {name}" for name in tool_names) or "- (none)"
    prompt = SYSTEM_PROMPT.format(
        tools=tools,
        working_directory=working_directory,
        platform=sys.platform,
    )

    project_type = detect_project_type(working_directory)
    if project_type != "unknown":
        prompt += f"\n<project>\nDetected project type: {project_type}\n</project>\n"
    logger.debug(f"System prompt generated for {working_directory} (project: {project_type})")
    return prompt
