"""Consumable balance endpoints."""

from fastapi import APIRouter, Depends

from novel_engine.storage import Storage

from .deps import current_user, get_storage
from .models import CreditBody

router = APIRouter()


@router.get("/balance")
async def get_balance(user_id: str = Depends(current_user), storage: Storage = Depends(get_storage)):
    """Current balance of the calling user."""
    return {"balance": storage.get_balance(user_id)}


@router.post("/balance/credit")
async def credit_balance(
    body: CreditBody,
    user_id: str = Depends(current_user),
    storage: Storage = Depends(get_storage),
):
    """Top up the calling user's balance (checkout happens elsewhere)."""
    return {"balance": storage.credit(user_id, body.amount)}
