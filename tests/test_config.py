"""Tests for app config defaults and partial merges."""

import json
from pathlib import Path

import pytest

from backend import config, engine
from novel_engine.dialogue import LLMGenerationBackend
from novel_engine.pipeline.orchestrator import LogNotifier, PipelineSettings, WebhookNotifier


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path) -> Path:
    engine.init_engine(tmp_path)
    return tmp_path


def test_get_config_defaults():
    """Returns defaults when no config file exists."""
    cfg = config.get_config()
    assert cfg["llm_connection"]["provider_url"] == ""
    assert cfg["llm_connection"]["provider_format"] == "koboldcpp"
    assert cfg["turn_cost"] == 1
    assert cfg["fallback_enabled"] is True


def test_update_config_partial():
    """Scalar updates keep every other key."""
    config.update_config({"turn_cost": 2})
    config.update_config({"history_window": 5})

    cfg = config.get_config()
    assert cfg["turn_cost"] == 2
    assert cfg["history_window"] == 5
    assert cfg["premium_cost"] == 1


def test_update_connection_merges():
    """A partial llm_connection update preserves the other connection fields."""
    config.update_config({"llm_connection": {"provider_url": "http://localhost:5001"}})
    config.update_config({"llm_connection": {"model": "mistral"}})

    conn = config.get_config()["llm_connection"]
    assert conn["provider_url"] == "http://localhost:5001"
    assert conn["model"] == "mistral"
    assert conn["provider_format"] == "koboldcpp"


def test_unknown_keys_are_ignored(data_dir: Path):
    config.update_config({"bogus": 1})
    assert "bogus" not in json.loads((data_dir / "config.json").read_text())


def test_settings_from_config():
    config.update_config({"turn_cost": 3, "generation_timeout": 5})
    settings = PipelineSettings.from_config(config.get_config())
    assert settings.turn_cost == 3
    assert settings.generation_timeout == 5.0


def test_pipeline_without_provider_has_no_backend():
    pipeline = engine.build_pipeline()
    assert pipeline._backend is None
    assert isinstance(pipeline._notifier, LogNotifier)


def test_pipeline_picks_up_new_settings():
    first = engine.pipeline()
    assert engine.pipeline() is first

    config.update_config({
        "llm_connection": {"provider_url": "http://localhost:5001"},
        "notify_url": "http://hooks.local/turns",
    })
    engine.reset_pipeline()
    second = engine.pipeline()
    assert second is not first
    assert isinstance(second._backend, LLMGenerationBackend)
    assert isinstance(second._notifier, WebhookNotifier)
