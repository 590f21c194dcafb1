"""Process-wide engine wiring: one Storage and one TurnPipeline per data dir."""

from pathlib import Path

from backend import config
from novel_engine.dialogue import LLMGenerationBackend
from novel_engine.llm import HttpLLM
from novel_engine.pipeline.orchestrator import (
    LogNotifier,
    Notifier,
    PipelineSettings,
    TurnPipeline,
    WebhookNotifier,
)
from novel_engine.storage import Storage

_storage: Storage | None = None
_pipeline: TurnPipeline | None = None


def init_engine(data_dir: Path) -> None:
    global _storage, _pipeline
    config.init_config(data_dir)
    _storage = Storage(data_dir)
    _pipeline = None


def storage() -> Storage:
    assert _storage is not None, "Call init_engine() before using the engine"
    return _storage


def build_pipeline() -> TurnPipeline:
    """Construct a pipeline from the current config."""
    cfg = config.get_config()
    connection = cfg["llm_connection"]
    backend = None
    if connection.get("provider_url"):
        backend = LLMGenerationBackend(
            HttpLLM.from_connection(connection),
            template=cfg["dialogue_prompt"] or None,
        )
    notifier: Notifier = WebhookNotifier(cfg["notify_url"]) if cfg["notify_url"] else LogNotifier()
    return TurnPipeline(
        storage(),
        backend=backend,
        notifier=notifier,
        settings=PipelineSettings.from_config(cfg),
    )


def pipeline() -> TurnPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def reset_pipeline() -> None:
    """Drop the cached pipeline so the next turn picks up new settings."""
    global _pipeline
    _pipeline = None
