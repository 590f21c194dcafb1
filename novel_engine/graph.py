"""Scene graph model — validation, traversal and terminal detection.

A scenario is an ordered list of scenes. A scene either carries choices
(each pointing at a destination scene) or falls through linearly to the
next scene in authoring order. Validation runs at authoring time:

  errors    — no scenes, empty/duplicate scene ids, duplicate choice ids,
              unknown start scene, choice destinations that do not resolve
  warnings  — scenes unreachable from the start scene

Reachability is a forward fixed point: seed with the start scene, then keep
adding choice destinations and linear successors of reachable scenes until
nothing changes.
"""

from __future__ import annotations

from typing import assert_never

from pydantic import BaseModel, Field

from novel_engine.errors import DanglingReference, ScenarioValidationError, UnknownChoice
from novel_engine.models import (
    CharacterEntryScene,
    Choice,
    ChoiceScene,
    DialogueScene,
    NarrationScene,
    Scenario,
    Scene,
    TransitionScene,
)


class ValidationReport(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    unreachable: list[str] = Field(default_factory=list)


def scene_choices(scene: Scene) -> list[Choice]:
    """Outgoing choices of a scene; empty for every non-choice kind."""
    if isinstance(scene, ChoiceScene):
        return scene.choices
    if isinstance(scene, (NarrationScene, DialogueScene, CharacterEntryScene, TransitionScene)):
        return []
    assert_never(scene)


def _index_of(scenario: Scenario, scene_id: str) -> int:
    for i, scene in enumerate(scenario.scenes):
        if scene.id == scene_id:
            return i
    return -1


def linear_successor(scenario: Scenario, scene_id: str) -> str | None:
    """Next scene id in authoring order, or None for an ending or the last scene."""
    idx = _index_of(scenario, scene_id)
    if idx < 0 or scenario.scenes[idx].ending or idx + 1 >= len(scenario.scenes):
        return None
    return scenario.scenes[idx + 1].id


def reachable_scenes(scenario: Scenario) -> set[str]:
    start = scenario.start_scene_id
    if start is None:
        return set()
    known = {s.id for s in scenario.scenes}
    reachable = {start} & known

    changed = True
    while changed:
        changed = False
        for scene in scenario.scenes:
            if scene.id not in reachable:
                continue
            choices = scene_choices(scene)
            if choices:
                targets = {c.next_scene for c in choices}
            else:
                nxt = linear_successor(scenario, scene.id)
                targets = {nxt} if nxt else set()
            new = (targets & known) - reachable
            if new:
                reachable |= new
                changed = True
    return reachable


def validate(scenario: Scenario) -> ValidationReport:
    errors: list[str] = []
    warnings: list[str] = []

    if not scenario.scenes:
        return ValidationReport(valid=False, errors=["No scenes defined"])

    seen: set[str] = set()
    for i, scene in enumerate(scenario.scenes):
        if not scene.id:
            errors.append(f"Scene at position {i} has no id")
            continue
        if scene.id in seen:
            errors.append(f"Duplicate scene id: {scene.id}")
        seen.add(scene.id)

    for scene in scenario.scenes:
        choice_ids: set[str] = set()
        for choice in scene_choices(scene):
            if choice.id in choice_ids:
                errors.append(f"Duplicate choice id {choice.id} in scene {scene.id}")
            choice_ids.add(choice.id)
            if choice.next_scene not in seen:
                errors.append(
                    f"Invalid destination {choice.next_scene!r} in choice {choice.id} "
                    f"of scene {scene.id}"
                )

    if scenario.start_scene and scenario.start_scene not in seen:
        errors.append(f"Start scene {scenario.start_scene!r} does not exist")

    unreachable: list[str] = []
    if not errors:
        reachable = reachable_scenes(scenario)
        unreachable = [s.id for s in scenario.scenes if s.id not in reachable]
        for scene_id in unreachable:
            warnings.append(f"Scene {scene_id} is unreachable from {scenario.start_scene_id}")

    return ValidationReport(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        unreachable=unreachable,
    )


def require_valid(scenario: Scenario) -> ValidationReport:
    """Validate and raise ScenarioValidationError on any error."""
    report = validate(scenario)
    if not report.valid:
        raise ScenarioValidationError(report)
    return report


def advance(scenario: Scenario, from_scene_id: str, choice_id: str | None) -> str:
    """Resolve the scene that follows `from_scene_id`.

    With a choice id the matching choice's destination is used; without one
    the next scene in authoring order. Raises UnknownChoice when the caller
    picked a choice the scene does not offer (or none on a choice scene), and
    DanglingReference when the content itself does not resolve.
    """
    scene = scenario.scene(from_scene_id)
    if scene is None:
        raise DanglingReference(f"Scene {from_scene_id!r} not found in {scenario.id}")

    choices = scene_choices(scene)
    if choice_id is not None:
        for choice in choices:
            if choice.id == choice_id:
                if scenario.scene(choice.next_scene) is None:
                    raise DanglingReference(
                        f"Choice {choice_id} points at missing scene {choice.next_scene!r}"
                    )
                return choice.next_scene
        raise UnknownChoice(f"Scene {from_scene_id} has no choice {choice_id!r}")

    if choices:
        raise UnknownChoice(f"Scene {from_scene_id} requires a choice")

    nxt = linear_successor(scenario, from_scene_id)
    if nxt is None:
        raise DanglingReference(f"Scene {from_scene_id} is an ending; nothing follows it")
    return nxt


def find_choice(scenario: Scenario, scene_id: str, choice_id: str) -> Choice | None:
    scene = scenario.scene(scene_id)
    if scene is None:
        return None
    for choice in scene_choices(scene):
        if choice.id == choice_id:
            return choice
    return None


def is_terminal(scenario: Scenario, scene_id: str) -> bool:
    """A scene is an ending when it has no choices and no linear successor."""
    scene = scenario.scene(scene_id)
    if scene is None:
        return False
    return not scene_choices(scene) and linear_successor(scenario, scene_id) is None
