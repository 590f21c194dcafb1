"""Relationship read surface."""

from fastapi import APIRouter, Depends

from novel_engine.models import RelationshipRecord
from novel_engine.storage import Storage

from .deps import current_user, get_storage
from .models import RelationshipView

router = APIRouter()


@router.get("/characters/{character_id}/relationship", response_model=RelationshipView)
async def get_relationship(
    character_id: str,
    user_id: str = Depends(current_user),
    storage: Storage = Depends(get_storage),
):
    """The caller's relationship with a character, with its derived stage."""
    record = storage.get_relationship(user_id, character_id) or RelationshipRecord(
        user_id=user_id, character_id=character_id
    )
    return RelationshipView(
        relationship=record,
        memories=storage.get_memories(user_id, character_id),
        unlocked_items=storage.get_unlocked_items(user_id, character_id),
    )
