"""Logging configuration for TermAgent."""

import logging
import sys
from pathlib import Path


def default_log_file() -> Path:
    from termagent.core.config import get_app_dir
    return get_app_dir() / "logs" / "termagent.log"


def setup_logging(log_file: str | None = None, level: int = logging.INFO) -> Path:
    """Setup logging to file and optionally stderr."""

    log_path = Path(log_file) if log_file else default_log_file()
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, mode="a", encoding="utf-8"),
    ]

    # The chat REPL owns the terminal; log lines there would interleave with output
    if "chat" not in sys.argv:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
        force=True,
    )

    # Suppress noisy third-party logs
    for name in ("httpx", "httpcore", "openai", "anthropic", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("termagent").setLevel(level)
    logging.info(f"TermAgent logging started. Writing to {log_path.absolute()}")
    return log_path
