"""Tests for configuration loading and key lookup."""

import json
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from termagent.core import config as config_module
from termagent.core.config import (
    DEFAULT_CONFIG,
    Config,
    get_api_key,
    get_app_dir,
    get_config,
    get_models,
    reset_config,
)


def write_config(data):
    f = tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False)
    with f:
        json.dump(data, f)
    return f.name


@pytest.fixture(autouse=True)
def fresh_singleton():
    reset_config()
    yield
    reset_config()


# ═══════════════════════════════════════════════════════════════
# Loading
# ═══════════════════════════════════════════════════════════════

class TestConfigLoad:

    def test_file_values_override_defaults(self):
        path = write_config({"provider": "anthropic", "agent_max_iterations": 25})
        try:
            with patch.dict(os.environ, {}, clear=True):
                cfg = Config.load(config_path=path)
            assert cfg.provider == "anthropic"
            assert cfg.agent_max_iterations == 25
            # Defaults still applied
            assert cfg.context_max_tool_messages == 20
            assert cfg.agent_auto_approve is False
        finally:
            os.unlink(path)

    def test_unknown_keys_are_ignored(self):
        path = write_config({"provider": "openai", "ollama_enable_thinking": True})
        try:
            with patch.dict(os.environ, {}, clear=True):
                cfg = Config.load(config_path=path)
            assert cfg.provider == "openai"
            assert not hasattr(cfg, "ollama_enable_thinking")
        finally:
            os.unlink(path)

    def test_invalid_json_falls_back_to_defaults(self):
        f = tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False)
        with f:
            f.write("{not json")
        try:
            with patch.dict(os.environ, {}, clear=True):
                cfg = Config.load(config_path=f.name)
            assert cfg == Config(**DEFAULT_CONFIG)
        finally:
            os.unlink(f.name)

    def test_missing_explicit_path_uses_defaults_without_writing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "absent.json"
            with patch.dict(os.environ, {}, clear=True):
                cfg = Config.load(config_path=path)
            assert cfg.provider == DEFAULT_CONFIG["provider"]
            assert not path.exists()

    def test_default_location_is_created(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"HOME": tmpdir}, clear=True):
                Config.load()
                written = get_app_dir() / "config.json"
                assert written.parent == Path(tmpdir) / ".termagent"
                assert json.loads(written.read_text()) == DEFAULT_CONFIG

    def test_environment_overrides_are_coerced(self):
        env = {
            "TERMAGENT_AGENT_MAX_ITERATIONS": "30",
            "TERMAGENT_AGENT_AUTO_APPROVE": "yes",
            "TERMAGENT_TEMPERATURE": "0.2",
            "TERMAGENT_PROVIDER": "ollama",
            "TERMAGENT_BASE_URLS": '{"ollama": "http://gpu-box:11434"}',
        }
        path = write_config({"provider": "groq", "agent_max_iterations": 5})
        try:
            with patch.dict(os.environ, env, clear=True):
                cfg = Config.load(config_path=path)
            assert cfg.agent_max_iterations == 30
            assert cfg.agent_auto_approve is True
            assert cfg.temperature == 0.2
            assert cfg.provider == "ollama"
            assert cfg.base_url_for("ollama") == "http://gpu-box:11434"
        finally:
            os.unlink(path)

    def test_bad_numeric_override_is_ignored(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"TERMAGENT_MAX_TOKENS": "lots"}, clear=True):
                cfg = Config.load(config_path=Path(tmpdir) / "none.json")
        assert cfg.max_tokens == DEFAULT_CONFIG["max_tokens"]

    def test_singleton(self):
        path = write_config({"model": "m1"})
        try:
            with patch.dict(os.environ, {}, clear=True):
                first = get_config(path)
                second = get_config()
            assert first is second
            assert first.model == "m1"
        finally:
            os.unlink(path)


# ═══════════════════════════════════════════════════════════════
# Keys and endpoints
# ═══════════════════════════════════════════════════════════════

class TestKeysAndEndpoints:

    def make(self, **overrides):
        data = dict(DEFAULT_CONFIG)
        data.update(overrides)
        return Config(**data)

    def test_environment_key_wins(self):
        cfg = self.make(api_keys={"groq": "from-file"})
        with patch.dict(os.environ, {"GROQ_API_KEY": "from-env"}, clear=True):
            assert get_api_key("groq", cfg) == "from-env"

    def test_config_key_used_when_env_unset(self):
        cfg = self.make(api_keys={"groq": "from-file"})
        with patch.dict(os.environ, {}, clear=True):
            assert get_api_key("groq", cfg) == "from-file"
            assert get_api_key("openai", cfg) is None

    def test_base_url_default_and_override(self):
        cfg = self.make(base_urls={"openai": "http://localhost:8080/v1"})
        assert cfg.base_url_for("openai") == "http://localhost:8080/v1"
        assert cfg.base_url_for("anthropic") == config_module.PROVIDER_DEFAULTS["anthropic"]["base_url"]
        assert cfg.base_url_for("unknown") is None

    def test_models_list_is_a_copy(self):
        models = get_models("groq")
        models.append("x")
        assert "x" not in get_models("groq")
        assert get_models("nope") == []
