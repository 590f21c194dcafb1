"""Scenario authoring: validate, save (versioned by replacement), (de)activate.

Shared by the HTTP routes and the MCP tool server. An active scenario must
always pass graph validation; inactive drafts may be saved with errors.
"""

from __future__ import annotations

import logging

from novel_engine.errors import CharacterNotFound, ScenarioNotFound, ScenarioValidationError
from novel_engine.graph import ValidationReport, validate
from novel_engine.models import Scenario
from novel_engine.storage import Storage

logger = logging.getLogger(__name__)


def save_scenario(storage: Storage, scenario: Scenario) -> tuple[Scenario, ValidationReport]:
    if storage.get_character(scenario.character_id) is None:
        raise CharacterNotFound(f"Character {scenario.character_id} not found")
    report = validate(scenario)
    if scenario.active and not report.valid:
        raise ScenarioValidationError(report)

    existing = storage.get_scenario(scenario.id)
    version = existing.version + 1 if existing else 1
    saved = scenario.model_copy(update={"version": version})
    storage.save_scenario(saved)
    for warning in report.warnings:
        logger.warning("Scenario %s: %s", saved.id, warning)
    logger.info("Saved scenario %s v%d (active=%s)", saved.id, version, saved.active)
    return saved, report


def set_active(storage: Storage, scenario_id: str, active: bool) -> Scenario:
    scenario = storage.get_scenario(scenario_id)
    if scenario is None:
        raise ScenarioNotFound(f"Scenario {scenario_id} not found")
    saved, _ = save_scenario(storage, scenario.model_copy(update={"active": active}))
    return saved
