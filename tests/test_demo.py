"""Demo content: loads cleanly and plays through to the second scenario."""

from pathlib import Path

import pytest

from backend import engine
from backend.demo import DEMO_BALANCE, DEMO_USER, create_demo_data
from novel_engine.graph import validate


@pytest.fixture(autouse=True)
def demo(tmp_path: Path):
    engine.init_engine(tmp_path)
    create_demo_data()


def test_demo_content_is_valid():
    storage = engine.storage()
    assert storage.get_character("jun") is not None
    scenarios = storage.list_scenarios("jun")
    assert [s.id for s in scenarios] == ["jun-first-meeting", "jun-late-night"]
    assert all(validate(s).valid for s in scenarios)
    assert storage.get_balance(DEMO_USER) == DEMO_BALANCE


def test_recreate_wipes_user_state():
    engine.storage().credit(DEMO_USER, 5)
    create_demo_data()
    assert engine.storage().get_balance(DEMO_USER) == DEMO_BALANCE


async def test_first_meeting_unlocks_late_night():
    pipeline = engine.pipeline()
    available = pipeline.progress.available_scenarios(DEMO_USER, "jun")
    assert [s.id for s in available] == ["jun-first-meeting"]

    session = pipeline.start_scenario(DEMO_USER, "jun", "jun-first-meeting").session
    await pipeline.run_turn(DEMO_USER, "jun", "climb", session_id=session.id)
    await pipeline.run_turn(DEMO_USER, "jun", "hello", session_id=session.id)
    result = await pipeline.run_turn(
        DEMO_USER, "jun", "It's beautiful.", session_id=session.id, choice_id="praise"
    )
    await pipeline.drain()

    assert result.scenario_completed
    completion = result.completion
    assert completion.relationship.affection == 45
    assert completion.relationship.stage == "acquaintance"
    assert completion.unlocked_scenarios == ["jun-late-night"]
    assert [i.item_id for i in completion.unlocked_items] == ["jun-rooftop-cg"]
    assert result.new_stage.to_stage == "acquaintance"
    assert result.balance == DEMO_BALANCE - 3
