"""Request dependencies: caller identity, storage and the turn pipeline."""

from fastapi import Header, HTTPException

from backend import engine
from novel_engine.pipeline.orchestrator import TurnPipeline
from novel_engine.storage import Storage


async def current_user(x_user_id: str | None = Header(default=None)) -> str:
    """The opaque user id supplied by the identity provider."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id.strip()


def get_storage() -> Storage:
    return engine.storage()


def get_pipeline() -> TurnPipeline:
    return engine.pipeline()
