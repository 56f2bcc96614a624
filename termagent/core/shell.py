"""run_command tool: one shell command in a subprocess, with a timeout."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger("termagent.shell")

DEFAULT_TIMEOUT_MS = 30000
BACKGROUND_STARTUP_MS = 3000
MAX_STDOUT_CHARS = 100000
MAX_STDERR_CHARS = 50000


def _tail(data: bytes, limit: int) -> str:
    text = data.decode("utf-8", errors="replace")
    return text[-limit:].strip()


async def run_command(
    root: Path,
    command: str,
    cwd: str | None = None,
    timeout: int | None = None,
) -> dict[str, Any]:
    """Run ``command`` with ``sh -c``.

    A command ending in ``&`` is treated as a background job: it is given a
    short startup window and then left running.
    """
    timeout_ms = timeout or DEFAULT_TIMEOUT_MS
    is_background = command.strip().endswith("&")
    effective_ms = BACKGROUND_STARTUP_MS if is_background else timeout_ms
    workdir = Path(cwd) if cwd else root
    if not workdir.is_absolute():
        workdir = root / workdir

    logger.info(f"Executing: {command} (cwd={workdir}, timeout={effective_ms}ms)")
    try:
        proc = await asyncio.create_subprocess_exec(
            "sh", "-c", command,
            cwd=str(workdir),
            env={**os.environ, "TERM": "dumb"},
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=is_background,
        )
    except OSError as e:
        return {"success": False, "error": str(e), "command": command}

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_ms / 1000)
    except asyncio.TimeoutError:
        if is_background:
            # Still running after startup; leave it detached
            return {
                "success": True,
                "command": command,
                "background": True,
                "message": "Background process started",
                "pid": proc.pid,
            }
        proc.kill()
        await proc.wait()
        logger.warning(f"Command timed out after {effective_ms}ms: {command}")
        return {
            "success": False,
            "error": f"Command timed out after {effective_ms}ms",
            "command": command,
        }

    out = _tail(stdout, MAX_STDOUT_CHARS)
    err = _tail(stderr, MAX_STDERR_CHARS)
    return {
        "success": proc.returncode == 0,
        "exitCode": proc.returncode,
        "command": command,
        "stdout": out,
        "stderr": err,
        "output": out or err,
    }
