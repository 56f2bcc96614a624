"""Configuration management for TermAgent."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

APP_DIR_NAME = ".termagent"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "TERMAGENT_"


def get_app_dir() -> Path:
    """Return ~/.termagent, honouring $HOME so tests and Termux can relocate it."""
    home = os.environ.get("HOME")
    return (Path(home) if home else Path.home()) / APP_DIR_NAME


PROVIDER_DEFAULTS: dict[str, dict[str, Any]] = {
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "env_key": "OPENAI_API_KEY",
        "default_model": "gpt-4o-mini",
        "models": ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "o1-preview", "o1-mini"],
    },
    "anthropic": {
        "base_url": "https://api.anthropic.com",
        "env_key": "ANTHROPIC_API_KEY",
        "default_model": "claude-3-5-sonnet-latest",
        "models": ["claude-3-5-sonnet-latest", "claude-3-5-haiku-latest", "claude-3-opus-latest"],
    },
    "google": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "env_key": "GOOGLE_API_KEY",
        "default_model": "gemini-2.0-flash-exp",
        "models": ["gemini-2.0-flash-exp", "gemini-1.5-pro", "gemini-1.5-flash"],
    },
    "groq": {
        "base_url": "https://api.groq.com/openai/v1",
        "env_key": "GROQ_API_KEY",
        "default_model": "llama-3.3-70b-versatile",
        "models": [
            "llama-3.3-70b-versatile",
            "llama-3.1-8b-instant",
            "mixtral-8x7b-32768",
            "gemma2-9b-it",
            "deepseek-r1-distill-llama-70b",
        ],
    },
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "env_key": "OPENROUTER_API_KEY",
        "default_model": "meta-llama/llama-3.3-70b-instruct",
        "models": [
            "anthropic/claude-3-haiku",
            "openai/gpt-4o-mini",
            "meta-llama/llama-3.3-70b-instruct",
            "google/gemini-flash-1.5",
            "deepseek/deepseek-chat",
        ],
    },
    "zai": {
        "base_url": "https://api.z.ai/api/coding/paas/v4",
        "env_key": "ZAI_API_KEY",
        "default_model": "GLM-4.7",
        "models": ["GLM-4.7", "GLM-4.5-air"],
    },
    "ollama": {
        "base_url": "http://127.0.0.1:11434",
        "env_key": None,
        "default_model": "qwen2.5-coder:14b",
        "models": [],
    },
}

DEFAULT_CONFIG: dict[str, Any] = {
    "provider": "groq",
    "model": "llama-3.3-70b-versatile",
    "max_tokens": 4096,
    "temperature": 0.7,
    "request_timeout": 600.0,
    "agent_max_iterations": 10,
    "agent_confirm_commands": True,
    "agent_auto_approve": False,
    "agent_auto_continue": False,
    "agent_auto_continue_max": 8,
    "context_token_budget": 100000,
    "context_chars_per_token": 4.0,
    "context_max_messages": 100,
    "context_max_tool_messages": 20,
    "context_keep_tool_turns": 20,
    "context_max_tool_result_chars": 4000,
    "context_fallback_messages": 10,
    "sessions_max_kept": 10,
    "api_keys": {},
    "base_urls": {},
    "log_file": "",
}


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.termagent/config.json."""

    # Active provider
    provider: str
    model: str

    # Model request options
    max_tokens: int
    temperature: float
    request_timeout: float

    # Agent loop controls
    agent_max_iterations: int
    agent_confirm_commands: bool
    agent_auto_approve: bool
    agent_auto_continue: bool
    agent_auto_continue_max: int

    # Context window
    context_token_budget: int
    context_chars_per_token: float
    context_max_messages: int
    context_max_tool_messages: int
    context_keep_tool_turns: int
    context_max_tool_result_chars: int
    context_fallback_messages: int

    # Sessions
    sessions_max_kept: int

    # Credentials and endpoints
    api_keys: dict[str, str] = field(default_factory=dict)
    base_urls: dict[str, str] = field(default_factory=dict)

    log_file: str = ""

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from specified path or default ~/.termagent/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = get_app_dir()
            config_file = config_dir / CONFIG_FILENAME
            if not config_dir.exists():
                config_dir.mkdir(parents=True, exist_ok=True)

        current_config = DEFAULT_CONFIG.copy()

        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    user_config = json.load(f)
                current_config.update(
                    {k: v for k, v in user_config.items() if k in DEFAULT_CONFIG}
                )
                unknown = sorted(set(user_config) - set(DEFAULT_CONFIG))
                if unknown:
                    logger.warning(f"Ignoring unknown config keys in {config_file}: {unknown}")
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}. Using defaults.")
        elif config_path is None:
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.error(f"Failed to write default config: {e}")
        else:
            logger.warning(f"Configuration file not found at {config_file}. Using default settings.")

        # Environment overrides, e.g. TERMAGENT_AGENT_MAX_ITERATIONS=25
        for key, default_val in DEFAULT_CONFIG.items():
            env_key = f"{ENV_PREFIX}{key.upper()}"
            if env_key not in os.environ:
                continue
            val = os.environ[env_key]
            if isinstance(default_val, bool):
                current_config[key] = val.lower() in ("true", "1", "yes")
            elif isinstance(default_val, int):
                try:
                    current_config[key] = int(val)
                except ValueError:
                    logger.warning(f"Ignoring non-integer {env_key}={val!r}")
            elif isinstance(default_val, float):
                try:
                    current_config[key] = float(val)
                except ValueError:
                    logger.warning(f"Ignoring non-numeric {env_key}={val!r}")
            elif isinstance(default_val, dict):
                try:
                    current_config[key] = json.loads(val)
                except json.JSONDecodeError:
                    logger.warning(f"Ignoring non-JSON {env_key}")
            else:
                current_config[key] = val

        return cls(**current_config)

    def base_url_for(self, provider: str) -> str | None:
        if provider in self.base_urls:
            return self.base_urls[provider]
        return PROVIDER_DEFAULTS.get(provider, {}).get("base_url")


def get_api_key(provider: str, config: Config | None = None) -> str | None:
    """Environment variable first, then the stored key in the config file."""
    env_key = PROVIDER_DEFAULTS.get(provider, {}).get("env_key")
    if env_key and os.environ.get(env_key):
        return os.environ[env_key]
    cfg = config or get_config()
    return cfg.api_keys.get(provider) or None


def get_models(provider: str) -> list[str]:
    return list(PROVIDER_DEFAULTS.get(provider, {}).get("models", []))


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config


def reset_config() -> None:
    """Drop the cached instance so the next get_config() reloads from disk."""
    global _config
    _config = None
