"""Chat turn + session message endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from novel_engine.errors import SessionOwnershipError
from novel_engine.models import TurnResult
from novel_engine.pipeline.orchestrator import TurnPipeline
from novel_engine.storage import Storage

from .deps import current_user, get_pipeline, get_storage
from .models import ChatBody

router = APIRouter()


@router.post("/characters/{character_id}/chat", response_model=TurnResult)
async def chat(
    character_id: str,
    body: ChatBody,
    user_id: str = Depends(current_user),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Run one metered turn: a free-form message, or a scenario step with a choice."""
    return await pipeline.run_turn(
        user_id,
        character_id,
        body.message,
        session_id=body.session_id,
        choice_id=body.choice_id,
    )


@router.get("/sessions/{session_id}/messages")
async def session_messages(
    session_id: str,
    limit: int | None = None,
    user_id: str = Depends(current_user),
    storage: Storage = Depends(get_storage),
):
    """Message history of one of the caller's sessions, oldest first."""
    session = storage.get_session(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    if session.user_id != user_id:
        raise SessionOwnershipError(f"Session {session_id} belongs to another user")
    return storage.get_messages(session_id, limit=limit)
