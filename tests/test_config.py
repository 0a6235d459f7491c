# tests/test_config.py
"""Tests for EngineConfig and structured logging setup."""
import logging

import pytest
import structlog
from pydantic import ValidationError

pytestmark = pytest.mark.unit

from keel_engine.config import DEFAULT_CAPABILITIES_PATH, EngineConfig
from keel_engine.logging_config import add_run_id, configure_logging, new_run_id, run_id_var


# ============================================================================
# 1. EngineConfig
# ============================================================================


class TestEngineConfig:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("KEEL_PROVIDER", raising=False)
        config = EngineConfig()
        assert config.default_model == "gpt-4o-mini"
        assert config.provider_kind == "litellm"
        assert config.confidence_threshold == 0.6
        assert config.hard_confidence_floor == 0.25
        assert config.cache_dir is None
        assert config.capabilities_path == DEFAULT_CAPABILITIES_PATH
        assert DEFAULT_CAPABILITIES_PATH.endswith("capabilities.yaml")

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("KEEL_DEFAULT_MODEL", "claude-sonnet")
        monkeypatch.setenv("KEEL_PROVIDER", "ECHO")
        monkeypatch.setenv("KEEL_DYNAMIC_AGENTS", "false")
        monkeypatch.setenv("KEEL_CACHE_MAX_ENTRIES", "25")
        monkeypatch.setenv("KEEL_LOG_LEVEL", "debug")
        config = EngineConfig.from_env()
        assert config.default_model == "claude-sonnet"
        assert config.provider_kind == "echo"
        assert config.dynamic_agents_enabled is False
        assert config.cache_max_entries == 25
        assert config.log_level == "DEBUG"

    def test_field_names_accepted(self):
        config = EngineConfig(provider_kind="echo", cache_dir="/tmp/keel-cache")
        assert config.provider_kind == "echo"
        assert config.cache_dir == "/tmp/keel-cache"

    @pytest.mark.parametrize("field,value", [
        ("default_temperature", 3.0),
        ("default_max_tokens", 0),
        ("provider_kind", "carrier-pigeon"),
        ("cache_max_entries", 0),
        ("default_stage_timeout_ms", -5),
        ("adaptive_cache_min_duration_ms", -1),
        ("confidence_threshold", 1.5),
        ("log_level", "LOUD"),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            EngineConfig(**{field: value})

    def test_floor_above_threshold(self):
        with pytest.raises(ValidationError, match="hard_confidence_floor"):
            EngineConfig(confidence_threshold=0.3, hard_confidence_floor=0.5)


# ============================================================================
# 2. Logging
# ============================================================================


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level, handlers = root.level, list(root.handlers)
    yield
    structlog.reset_defaults()
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


class TestLogging:

    def test_run_id_shape(self):
        run_id = new_run_id()
        assert len(run_id) == 8
        assert run_id != new_run_id()

    def test_add_run_id_processor(self):
        token = run_id_var.set("abc12345")
        try:
            assert add_run_id(None, "info", {"event": "x"}) == {"event": "x", "run_id": "abc12345"}
            # An explicit run_id is never overwritten
            assert add_run_id(None, "info", {"run_id": "other"}) == {"run_id": "other"}
        finally:
            run_id_var.reset(token)
        assert add_run_id(None, "info", {"event": "x"}) == {"event": "x"}

    def test_configure_logging_sets_level(self, restore_logging):
        configure_logging("warning")
        assert logging.getLogger().level == logging.WARNING
        assert structlog.is_configured()

    def test_json_output(self, restore_logging, capsys):
        configure_logging(logging.INFO)
        structlog.get_logger("keel.test").info("stage done", stage="a")
        out = capsys.readouterr().out
        assert '"event": "stage done"' in out
        assert '"stage": "a"' in out
