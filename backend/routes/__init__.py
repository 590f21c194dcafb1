"""FastAPI API endpoints under /api.

Endpoint groups: settings + health, balance, characters, scenarios (play and
authoring), chat turns + session messages, relationship read surface.
The caller's identity arrives in the X-User-Id header (see deps.py).
"""

from fastapi import APIRouter

from .balance import router as balance_router
from .characters import router as characters_router
from .chat import router as chat_router
from .relationship import router as relationship_router
from .scenarios import router as scenarios_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(balance_router)
router.include_router(characters_router)
router.include_router(scenarios_router)
router.include_router(chat_router)
router.include_router(relationship_router)
