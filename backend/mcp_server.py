"""FastMCP server exposing scenario authoring and relationship reads as MCP tools.

Tools:
  - validate_scenario(scenario)           — graph validation report, nothing saved
  - save_scenario(scenario)               — create/replace; active ones must validate
  - set_scenario_active(scenario_id, active)
  - list_scenarios(character_id)          — authoring order
  - get_relationship(user_id, character_id)

The store is replaced via set_storage() for tests, or opened on DATA_DIR when
run as __main__.

Usage:
    uv run python -m backend.mcp_server
"""

from typing import Any

from mcp.server.fastmcp import FastMCP

from novel_engine import authoring
from novel_engine.graph import validate
from novel_engine.models import RelationshipRecord, Scenario
from novel_engine.storage import Storage

mcp = FastMCP("novel-authoring")

_storage: Storage | None = None


def set_storage(storage: Storage) -> None:
    """Replace the active store (used in tests)."""
    global _storage
    _storage = storage


def get_storage() -> Storage:
    assert _storage is not None, "Call set_storage() before using the MCP tools"
    return _storage


@mcp.tool()
def validate_scenario(scenario: dict[str, Any]) -> dict:
    """Validate a scenario's scene graph and return the report."""
    return validate(Scenario.model_validate(scenario)).model_dump()


@mcp.tool()
def save_scenario(scenario: dict[str, Any]) -> dict:
    """Create or replace a scenario. Returns the saved scenario and its report."""
    saved, report = authoring.save_scenario(get_storage(), Scenario.model_validate(scenario))
    return {"scenario": saved.model_dump(mode="json"), "report": report.model_dump()}


@mcp.tool()
def set_scenario_active(scenario_id: str, active: bool) -> dict:
    """Activate or deactivate a stored scenario."""
    return authoring.set_active(get_storage(), scenario_id, active).model_dump(mode="json")


@mcp.tool()
def list_scenarios(character_id: str | None = None) -> dict:
    """List scenarios (id, title, active, version) in authoring order."""
    return {
        "scenarios": [
            {"id": s.id, "title": s.title, "active": s.active, "version": s.version}
            for s in get_storage().list_scenarios(character_id)
        ]
    }


@mcp.tool()
def get_relationship(user_id: str, character_id: str) -> dict:
    """Relationship scores and derived stage for a user and character."""
    record = get_storage().get_relationship(user_id, character_id) or RelationshipRecord(
        user_id=user_id, character_id=character_id
    )
    return record.model_dump(mode="json")


if __name__ == "__main__":
    import os
    from pathlib import Path

    from dotenv import load_dotenv

    load_dotenv(Path(__file__).parent.parent / ".env")
    data_path = Path(os.getenv("DATA_DIR", str(Path(__file__).parent.parent / "data")))
    set_storage(Storage(data_path))
    mcp.run()
