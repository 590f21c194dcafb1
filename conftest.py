from pathlib import Path

import pytest

from novel_engine.models import (
    Character,
    Choice,
    ChoiceScene,
    DialogueScene,
    NarrationScene,
    Scenario,
    StageParameters,
)
from novel_engine.storage import Storage


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    """A fresh store per test, under pytest's tmp dir."""
    return Storage(tmp_path / "data")


@pytest.fixture
def character() -> Character:
    return Character(
        id="jun",
        name="Jun",
        description="A quiet musician.",
        stage_parameters={
            "stranger": StageParameters(
                tone="guarded",
                fallback_lines=["...Sorry, what?"],
                fallback_emotion="neutral",
            ),
            "close": StageParameters(tone="warm", fallback_lines=["Give me a second."]),
        },
    )


def make_branching_scenario(scenario_id: str = "meet", **overrides) -> Scenario:
    """start → (A: +10 → end_good, B: +0 → end_neutral)."""
    fields = {
        "id": scenario_id,
        "character_id": "jun",
        "title": "First Meeting",
        "active": True,
        "scenes": [
            ChoiceScene(
                id="start", speaker="jun", prompt="What do you say?",
                choices=[
                    Choice(id="A", text="Hello!", next_scene="end_good", relationship_delta=10),
                    Choice(id="B", text="...", next_scene="end_neutral", relationship_delta=0),
                ],
            ),
            DialogueScene(id="end_good", speaker="jun", expression="smile",
                          text="Nice to meet you.", ending=True),
            DialogueScene(id="end_neutral", speaker="jun", text="Oh. Okay."),
        ],
    }
    fields.update(overrides)
    return Scenario(**fields)


def make_linear_scenario(scenario_id: str = "walk", **overrides) -> Scenario:
    """intro → middle → outro, no choices."""
    fields = {
        "id": scenario_id,
        "character_id": "jun",
        "title": "A Walk",
        "active": True,
        "scenes": [
            NarrationScene(id="intro", text="You walk."),
            DialogueScene(id="middle", speaker="jun", text="Nice night."),
            DialogueScene(id="outro", speaker="jun", text="See you."),
        ],
    }
    fields.update(overrides)
    return Scenario(**fields)


@pytest.fixture
def branching_scenario() -> Scenario:
    return make_branching_scenario()


@pytest.fixture
def seeded(storage: Storage, character: Character, branching_scenario: Scenario) -> Storage:
    """Store with Jun, the branching scenario and a user with 10 units."""
    storage.save_character(character)
    storage.save_scenario(branching_scenario)
    storage.credit("u1", 10)
    return storage
