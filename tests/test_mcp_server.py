"""Authoring tools over the FastMCP in-process test client."""

import json

import pytest
from mcp.shared.memory import create_connected_server_and_client_session

import backend.mcp_server as mcp_server
from conftest import make_branching_scenario
from novel_engine.models import Character, RelationshipRecord
from novel_engine.storage import Storage


@pytest.fixture(autouse=True)
def mcp_storage(storage: Storage, character: Character) -> Storage:
    storage.save_character(character)
    mcp_server.set_storage(storage)
    return storage


async def _call(tool: str, **arguments):
    async with create_connected_server_and_client_session(mcp_server.mcp) as client:
        result = await client.call_tool(tool, arguments)
    return result


def _payload(result) -> dict:
    assert not result.isError, result.content
    return json.loads(result.content[0].text)


async def test_validate_reports_errors():
    scenario = make_branching_scenario().model_dump(mode="json")
    scenario["start_scene"] = "missing"
    report = _payload(await _call("validate_scenario", scenario=scenario))
    assert report["valid"] is False
    assert any("missing" in e for e in report["errors"])


async def test_save_and_list(mcp_storage: Storage):
    saved = _payload(await _call(
        "save_scenario", scenario=make_branching_scenario().model_dump(mode="json"),
    ))
    assert saved["scenario"]["version"] == 1
    assert saved["report"]["valid"] is True
    assert mcp_storage.get_scenario("meet") is not None

    listed = _payload(await _call("list_scenarios", character_id="jun"))
    assert listed == {"scenarios": [{"id": "meet", "title": "First Meeting", "active": True, "version": 1}]}


async def test_save_invalid_active_scenario_is_error(mcp_storage: Storage):
    scenario = make_branching_scenario().model_dump(mode="json")
    scenario["scenes"][0]["choices"][0]["next_scene"] = "nowhere"
    result = await _call("save_scenario", scenario=scenario)
    assert result.isError
    assert mcp_storage.get_scenario("meet") is None


async def test_set_active(mcp_storage: Storage):
    mcp_storage.save_scenario(make_branching_scenario(active=False))
    toggled = _payload(await _call("set_scenario_active", scenario_id="meet", active=True))
    assert toggled["active"] is True
    assert mcp_storage.get_scenario("meet").active


async def test_get_relationship(mcp_storage: Storage):
    mcp_storage.save_relationship(RelationshipRecord(
        user_id="u1", character_id="jun", affection=30, trust=30, intimacy=30,
    ))
    record = _payload(await _call("get_relationship", user_id="u1", character_id="jun"))
    assert record["affection"] == 30
    assert record["stage"] == "acquaintance"

    empty = _payload(await _call("get_relationship", user_id="u9", character_id="jun"))
    assert empty["stage"] == "stranger"
