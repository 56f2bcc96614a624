from __future__ import annotations

import os
from pathlib import Path
from typing import Any

MAX_READ_CHARS = 200000


def _resolve(root: Path, path: str) -> Path | None:
    """Resolve ``path`` against ``root``; None if it escapes the root."""
    root = root.resolve()
    candidate = Path(path)
    file_path = (candidate if candidate.is_absolute() else root / candidate).resolve()

    # Ensure it didn't use ../ to escape the working directory
    try:
        file_path.relative_to(root)
    except ValueError:
        return None
    return file_path


def list_directory(root: Path, path: str = ".") -> dict[str, Any]:
    """List the entries of a directory inside the working directory."""
    try:
        dir_path = _resolve(root, path)
        if dir_path is None:
            return {"success": False, "error": f"Access denied: path must be inside {root}. You provided: {path}"}
        if not dir_path.is_dir():
            return {"success": False, "error": f"Not a directory: {path}"}

        entries = []
        for entry in sorted(os.scandir(dir_path), key=lambda e: e.name):
            is_dir = entry.is_dir()
            entries.append({
                "name": entry.name,
                "type": "directory" if is_dir else "file",
                "size": None if is_dir else entry.stat().st_size,
            })
        return {"success": True, "path": str(dir_path), "entries": entries}

    except OSError as e:
        return {"success": False, "error": str(e)}


def read_file(root: Path, path: str) -> dict[str, Any]:
    """Read a text file inside the working directory."""
    try:
        file_path = _resolve(root, path)
        if file_path is None:
            return {"success": False, "error": "Access denied: cannot read files outside the working directory."}
        if not file_path.exists():
            return {"success": False, "error": f"File not found: {path}. Resolved path: {file_path}"}

        content = file_path.read_text(encoding="utf-8", errors="replace")
        truncated = len(content) > MAX_READ_CHARS
        return {
            "success": True,
            "path": str(file_path),
            "content": content[:MAX_READ_CHARS],
            "truncated": truncated,
        }

    except OSError as e:
        return {"success": False, "error": str(e)}


def write_file(root: Path, path: str, content: str) -> dict[str, Any]:
    """Create or overwrite a file inside the working directory."""
    try:
        file_path = _resolve(root, path)
        if file_path is None:
            return {
                "success": False,
                "error": f"Access denied: path must be inside the working directory. You provided: {path}",
            }

        # Create parent directories if needed
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(content)

        return {
            "success": True,
            "result": f"File written successfully at {file_path}",
            "path": str(file_path),
            "bytes": len(content.encode("utf-8")),
        }

    except OSError as e:
        return {"success": False, "error": str(e)}
