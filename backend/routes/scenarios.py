"""Scenario endpoints: authoring (save, validate, activate) and play (start, resume, progress)."""

from fastapi import APIRouter, Depends, HTTPException

from novel_engine import authoring
from novel_engine.graph import validate
from novel_engine.models import Scenario
from novel_engine.pipeline.orchestrator import TurnPipeline
from novel_engine.storage import Storage

from .deps import current_user, get_pipeline, get_storage
from .models import SavedScenario

router = APIRouter()


# ── Authoring ─────────────────────────────────────────────


@router.get("/scenarios")
async def list_scenarios(character_id: str | None = None, storage: Storage = Depends(get_storage)):
    """List scenarios in authoring order, optionally for one character."""
    return storage.list_scenarios(character_id)


@router.get("/scenarios/{scenario_id}")
async def get_scenario(scenario_id: str, storage: Storage = Depends(get_storage)):
    scenario = storage.get_scenario(scenario_id)
    if not scenario:
        raise HTTPException(404, "Scenario not found")
    return scenario


@router.post("/scenarios/validate")
async def validate_scenario(body: Scenario):
    """Validate a scenario without saving it."""
    return validate(body)


@router.put("/scenarios/{scenario_id}", response_model=SavedScenario)
async def put_scenario(scenario_id: str, body: Scenario, storage: Storage = Depends(get_storage)):
    """Create or replace a scenario. Active scenarios must pass validation."""
    if body.id != scenario_id:
        raise HTTPException(400, "Scenario id in body does not match the URL")
    saved, report = authoring.save_scenario(storage, body)
    return SavedScenario(scenario=saved, report=report)


@router.post("/scenarios/{scenario_id}/activate")
async def activate_scenario(scenario_id: str, storage: Storage = Depends(get_storage)):
    return authoring.set_active(storage, scenario_id, True)


@router.post("/scenarios/{scenario_id}/deactivate")
async def deactivate_scenario(scenario_id: str, storage: Storage = Depends(get_storage)):
    return authoring.set_active(storage, scenario_id, False)


# ── Play ──────────────────────────────────────────────────


@router.get("/characters/{character_id}/scenarios/available")
async def available_scenarios(
    character_id: str,
    user_id: str = Depends(current_user),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Scenarios the caller can start right now, in authoring order."""
    return pipeline.progress.available_scenarios(user_id, character_id)


@router.post("/characters/{character_id}/scenarios/{scenario_id}/start")
async def start_scenario(
    character_id: str,
    scenario_id: str,
    user_id: str = Depends(current_user),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    """Start a scenario; the caller's previous session for the character ends."""
    return pipeline.start_scenario(user_id, character_id, scenario_id)


@router.post("/characters/{character_id}/scenarios/{scenario_id}/resume")
async def resume_scenario(
    character_id: str,
    scenario_id: str,
    user_id: str = Depends(current_user),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    return pipeline.resume_scenario(user_id, character_id, scenario_id)


@router.get("/characters/{character_id}/scenarios/{scenario_id}/progress")
async def scenario_progress(
    character_id: str,
    scenario_id: str,
    user_id: str = Depends(current_user),
    pipeline: TurnPipeline = Depends(get_pipeline),
):
    return pipeline.progress.get_progress(user_id, character_id, scenario_id)
