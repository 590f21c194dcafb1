"""App configuration (LLM connection, turn costs, generation, notifier)."""

import json
from pathlib import Path
from typing import Any

_data_dir: Path | None = None

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm_connection": {
        "provider_url": "",
        "api_key": "",
        "provider_format": "koboldcpp",
        "model": "",
    },
    "turn_cost": 1,
    "premium_cost": 1,
    "generation_timeout": 30.0,
    "fallback_enabled": True,
    "history_window": 20,
    "dialogue_prompt": "",
    "notify_url": "",
}

_SCALAR_KEYS = [k for k, v in _CONFIG_DEFAULTS.items() if not isinstance(v, dict)]


def init_config(data_dir: Path) -> None:
    global _data_dir
    _data_dir = data_dir
    _data_dir.mkdir(parents=True, exist_ok=True)


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_config() before reading config"
    return _data_dir


def _config_path() -> Path:
    return data_dir() / "config.json"


def get_config() -> dict[str, Any]:
    """Read config, returning defaults merged with stored values."""
    config: dict[str, Any] = json.loads(json.dumps(_CONFIG_DEFAULTS))
    path = _config_path()
    if path.is_file():
        stored = json.loads(path.read_text())
        if isinstance(stored.get("llm_connection"), dict):
            config["llm_connection"].update(stored["llm_connection"])
        for key in _SCALAR_KEYS:
            if key in stored:
                config[key] = stored[key]
    return config


def update_config(fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into config and persist. Returns full config."""
    config = get_config()
    if isinstance(fields.get("llm_connection"), dict):
        config["llm_connection"].update(fields["llm_connection"])
    for key in _SCALAR_KEYS:
        if key in fields:
            config[key] = fields[key]
    _config_path().write_text(json.dumps(config, indent=2))
    return config
