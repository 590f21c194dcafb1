"""Core domain models.

All engine components and storage functions operate on these types.
Pydantic is used for validation and serialisation at every data boundary.

Scenes are a closed tagged union discriminated on `kind`; only the
`choice` variant carries choices.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, computed_field

Stage = Literal["stranger", "acquaintance", "close", "intimate", "lover"]

STAGES: tuple[Stage, ...] = ("stranger", "acquaintance", "close", "intimate", "lover")

MAX_CHOICE_DELTA = 20


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------

class StageParameters(BaseModel):
    """How a character speaks and behaves at one relationship stage."""

    tone: str = "reserved"
    speech_style: str = ""
    example_lines: list[str] = Field(default_factory=list)
    fallback_lines: list[str] = Field(default_factory=list)
    fallback_emotion: str | None = None


class Character(BaseModel):
    """Static character definition, owned by content authors."""

    id: str
    name: str
    description: str = ""
    stage_parameters: dict[Stage, StageParameters] = Field(default_factory=dict)

    def parameters_for(self, stage: Stage) -> StageParameters:
        return self.stage_parameters.get(stage) or StageParameters()


# ---------------------------------------------------------------------------
# Scene graph
# ---------------------------------------------------------------------------

class Choice(BaseModel):
    id: str
    text: str
    next_scene: str
    relationship_delta: int = Field(default=0, ge=-MAX_CHOICE_DELTA, le=MAX_CHOICE_DELTA)
    flag: str | None = None
    premium: bool = False
    tone: str | None = None


class _SceneBase(BaseModel):
    id: str
    speaker: str | None = None
    expression: str | None = None
    text: str | None = None
    # an ending scene has no linear successor, even if more scenes follow it
    ending: bool = False


class NarrationScene(_SceneBase):
    kind: Literal["narration"] = "narration"


class DialogueScene(_SceneBase):
    kind: Literal["dialogue"] = "dialogue"


class CharacterEntryScene(_SceneBase):
    kind: Literal["character_entry"] = "character_entry"


class TransitionScene(_SceneBase):
    kind: Literal["transition"] = "transition"


class ChoiceScene(_SceneBase):
    kind: Literal["choice"] = "choice"
    prompt: str | None = None
    choices: list[Choice] = Field(default_factory=list)


Scene = Annotated[
    Union[NarrationScene, DialogueScene, CharacterEntryScene, TransitionScene, ChoiceScene],
    Field(discriminator="kind"),
]


class ItemUnlock(BaseModel):
    item_id: str
    item_type: str = "cg"
    min_affection: int = 0


class EndingConditions(BaseModel):
    unlock_free_chat: bool = False
    set_stage: Stage | None = None
    initial_affection_by_choice: dict[str, int] = Field(default_factory=dict)
    completion_bonus: int = 15
    memory_type: Literal["first_meeting", "milestone"] = "milestone"
    unlocks: list[ItemUnlock] = Field(default_factory=list)


class Scenario(BaseModel):
    """A branching unit of scenes. Replaced on update, never edited in place."""

    id: str
    character_id: str
    title: str
    description: str = ""
    scenes: list[Scene] = Field(default_factory=list)
    start_scene: str | None = None
    ending: EndingConditions = Field(default_factory=EndingConditions)
    sort_order: int = 0
    min_stage: Stage = "stranger"
    min_affection: int = 0
    prerequisites: list[str] = Field(default_factory=list)
    active: bool = False
    version: int = 1

    @property
    def start_scene_id(self) -> str | None:
        if self.start_scene:
            return self.start_scene
        return self.scenes[0].id if self.scenes else None

    def scene(self, scene_id: str) -> Scene | None:
        for scene in self.scenes:
            if scene.id == scene_id:
                return scene
        return None


# ---------------------------------------------------------------------------
# Per-user state
# ---------------------------------------------------------------------------

class RelationshipRecord(BaseModel):
    user_id: str
    character_id: str
    affection: int = Field(default=0, ge=0, le=100)
    trust: int = Field(default=0, ge=0, le=100)
    intimacy: int = Field(default=0, ge=0, le=100)
    total_interactions: int = 0
    story_flags: list[str] = Field(default_factory=list)
    unlocked_memories: list[str] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def stage(self) -> Stage:
        from novel_engine.relationship import stage_for
        return stage_for(self.average)

    @property
    def average(self) -> float:
        return (self.affection + self.trust + self.intimacy) / 3


class RelationshipDelta(BaseModel):
    affection: int = 0
    trust: int = 0
    intimacy: int = 0

    @classmethod
    def uniform(cls, amount: int) -> RelationshipDelta:
        return cls(affection=amount, trust=amount, intimacy=amount)


class StageTransition(BaseModel):
    from_stage: Stage = Field(serialization_alias="from")
    to_stage: Stage = Field(serialization_alias="to")


SessionStatus = Literal["active", "ended"]


class ConversationSession(BaseModel):
    id: str
    user_id: str
    character_id: str
    status: SessionStatus = "active"
    scenario_id: str | None = None
    scene_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime = Field(default_factory=utcnow)

    @property
    def is_free_form(self) -> bool:
        return self.scenario_id is None


class ChoiceMade(BaseModel):
    scene_id: str
    choice_id: str
    at: datetime = Field(default_factory=utcnow)


ProgressStatus = Literal["not_started", "in_progress", "completed"]


class ScenarioProgress(BaseModel):
    user_id: str
    character_id: str
    scenario_id: str
    status: ProgressStatus = "not_started"
    current_scene_id: str | None = None
    choices_made: list[ChoiceMade] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    times_completed: int = 0


class MemoryRecord(BaseModel):
    user_id: str
    character_id: str
    memory_type: str
    summary: str
    details: dict = Field(default_factory=dict)
    emotional_weight: int = 5
    source_id: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class UnlockedItem(BaseModel):
    item_id: str
    item_type: str
    unlocked_at: datetime = Field(default_factory=utcnow)


MessageRole = Literal["user", "character", "narrator"]


class ConversationMessage(BaseModel):
    session_id: str
    role: MessageRole
    content: str
    emotion: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# Generation + turn results
# ---------------------------------------------------------------------------

class SuggestedChoice(BaseModel):
    id: str
    text: str
    tone: str | None = None


class GeneratedBeat(BaseModel):
    """One narrative beat, from the generation backend, a scene or the fallback table."""

    dialogue: str = Field(min_length=1)
    emotion: str = "neutral"
    suggested_delta: int = Field(default=0, ge=-MAX_CHOICE_DELTA, le=MAX_CHOICE_DELTA)
    suggested_choices: list[SuggestedChoice] | None = None


class CompletionResult(BaseModel):
    progress: ScenarioProgress
    relationship: RelationshipRecord
    transition: StageTransition | None = None
    unlocked_items: list[UnlockedItem] = Field(default_factory=list)
    unlocked_scenarios: list[str] = Field(default_factory=list)
    already_completed: bool = False


class TurnResult(BaseModel):
    session_id: str
    dialogue: str
    emotion: str
    relationship_delta: int
    new_stage: StageTransition | None = None
    choices: list[SuggestedChoice] | None = None
    scene_id: str | None = None
    scenario_completed: bool = False
    completion: CompletionResult | None = None
    balance: int
    used_fallback: bool = False
