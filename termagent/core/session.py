"""Session persistence: save/load conversations as JSON under ~/.termagent/sessions.

Each save writes ``current_session.json`` (what ``--resume`` loads) and a
``<sessionId>.json`` copy; only the newest ``sessions_max_kept`` copies are kept.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import get_app_dir
from .conversation import ConversationStore

logger = logging.getLogger("termagent.session")

CURRENT_SESSION_FILE = "current_session.json"
SESSION_PREFIX = "session_"
MAX_SESSIONS = 10
PREVIEW_CHARS = 40


def get_sessions_dir() -> Path:
    return get_app_dir() / "sessions"


def save_session(
    store: ConversationStore,
    sessions_dir: Path | None = None,
    max_kept: int = MAX_SESSIONS,
) -> Path:
    """Write the session document and prune old copies. Returns the current-session path."""
    sessions_dir = sessions_dir or get_sessions_dir()
    sessions_dir.mkdir(parents=True, exist_ok=True)

    store.metadata.last_updated = datetime.now().isoformat()
    document = store.to_dict()

    current = sessions_dir / CURRENT_SESSION_FILE
    for path in (current, sessions_dir / f"{store.metadata.session_id}.json"):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, default=str)
    logger.info(f"Saved session {store.metadata.session_id} ({len(store)} messages)")

    cleanup_old_sessions(sessions_dir, max_kept)
    return current


def cleanup_old_sessions(sessions_dir: Path, max_kept: int = MAX_SESSIONS) -> list[Path]:
    """Delete the oldest ``session_*.json`` files beyond ``max_kept``."""
    files = [p for p in sessions_dir.glob(f"{SESSION_PREFIX}*.json") if p.is_file()]
    if len(files) <= max_kept:
        return []

    files.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    removed = []
    for path in files[max_kept:]:
        try:
            path.unlink()
            removed.append(path)
        except OSError as e:
            logger.warning(f"Could not remove old session {path.name}: {e}")
    if removed:
        logger.info(f"Removed {len(removed)} old session files")
    return removed


def load_session(path: str | Path, **store_kwargs: Any) -> ConversationStore:
    """Load a session document. Raises OSError / json.JSONDecodeError on bad files."""
    filepath = Path(path)
    with open(filepath, "r", encoding="utf-8") as f:
        data = json.load(f)
    store = ConversationStore.from_dict(data, **store_kwargs)
    logger.info(f"Loaded session {store.metadata.session_id} from {filepath} ({len(store)} messages)")
    return store


def load_last_session(sessions_dir: Path | None = None, **store_kwargs: Any) -> ConversationStore | None:
    filepath = (sessions_dir or get_sessions_dir()) / CURRENT_SESSION_FILE
    if not filepath.exists():
        return None
    try:
        return load_session(filepath, **store_kwargs)
    except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
        logger.warning(f"Failed to load last session from {filepath}: {e}")
        return None


def list_sessions(sessions_dir: Path | None = None) -> list[dict[str, Any]]:
    """Summaries of saved sessions, most recently updated first."""
    sessions_dir = sessions_dir or get_sessions_dir()
    if not sessions_dir.is_dir():
        return []

    sessions = []
    for path in sessions_dir.glob(f"{SESSION_PREFIX}*.json"):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Skipping unreadable session file {path.name}: {e}")
            continue

        metadata = data.get("metadata") or {}
        messages = data.get("messages") or []
        user_msgs = [m for m in messages if m.get("role") == "user"]
        first = (user_msgs[0].get("content") or "") if user_msgs else ""
        sessions.append({
            "filename": path.name,
            "path": str(path),
            "sessionId": metadata.get("sessionId"),
            "startedAt": metadata.get("startedAt"),
            "lastUpdated": metadata.get("lastUpdated") or "",
            "workingDirectory": metadata.get("workingDirectory"),
            "messageCount": len(messages),
            "userMessageCount": len(user_msgs),
            "preview": first[:PREVIEW_CHARS],
        })

    sessions.sort(key=lambda s: s["lastUpdated"], reverse=True)
    return sessions
