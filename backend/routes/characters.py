"""Character authoring endpoints."""

from fastapi import APIRouter, Depends, HTTPException

from novel_engine.models import Character
from novel_engine.storage import Storage

from .deps import get_storage
from .models import CharacterBody

router = APIRouter()


@router.get("/characters")
async def list_characters(storage: Storage = Depends(get_storage)):
    """List all characters."""
    return storage.list_characters()


@router.get("/characters/{character_id}")
async def get_character(character_id: str, storage: Storage = Depends(get_storage)):
    """Get a single character."""
    character = storage.get_character(character_id)
    if not character:
        raise HTTPException(404, "Character not found")
    return character


@router.put("/characters/{character_id}")
async def put_character(
    character_id: str, body: CharacterBody, storage: Storage = Depends(get_storage)
):
    """Create or replace a character."""
    character = Character(id=character_id, **body.model_dump())
    storage.save_character(character)
    return character
