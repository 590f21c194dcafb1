"""Pydantic request/response models for API endpoints."""

from pydantic import BaseModel, Field

from novel_engine.graph import ValidationReport
from novel_engine.models import (
    MemoryRecord,
    RelationshipRecord,
    Scenario,
    Stage,
    StageParameters,
    UnlockedItem,
)


class ChatBody(BaseModel):
    message: str
    session_id: str | None = None
    choice_id: str | None = None


class CreditBody(BaseModel):
    amount: int = Field(gt=0)


class CharacterBody(BaseModel):
    name: str
    description: str = ""
    stage_parameters: dict[Stage, StageParameters] = Field(default_factory=dict)


class SavedScenario(BaseModel):
    scenario: Scenario
    report: ValidationReport


class RelationshipView(BaseModel):
    relationship: RelationshipRecord
    memories: list[MemoryRecord]
    unlocked_items: list[UnlockedItem]


class CheckConnectionBody(BaseModel):
    provider_url: str
    api_key: str = ""
