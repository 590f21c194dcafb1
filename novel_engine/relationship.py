"""Relationship ledger — score deltas, derived stages and story flags.

Scores (affection, trust, intimacy) are clamped to [0, 100]. The stage is
never stored; it is derived from the average of the three scores:

  average < 20  stranger
  average < 40  acquaintance
  average < 60  close
  average < 80  intimate
  otherwise     lover

All functions here are pure: they take a record and return a new one.
Persistence is the caller's job.
"""

from __future__ import annotations

from pydantic import BaseModel

from novel_engine.models import (
    STAGES,
    RelationshipDelta,
    RelationshipRecord,
    Stage,
    StageTransition,
)

SCORE_MIN = 0
SCORE_MAX = 100

# (upper bound exclusive, stage) in ascending order; lover catches the rest
STAGE_THRESHOLDS: list[tuple[float, Stage]] = [
    (20, "stranger"),
    (40, "acquaintance"),
    (60, "close"),
    (80, "intimate"),
]

# lowest average at which each stage begins
STAGE_FLOORS: dict[Stage, int] = {
    "stranger": 0,
    "acquaintance": 20,
    "close": 40,
    "intimate": 60,
    "lover": 80,
}


class LedgerUpdate(BaseModel):
    record: RelationshipRecord
    transition: StageTransition | None = None


def clamp(value: int, low: int = SCORE_MIN, high: int = SCORE_MAX) -> int:
    return max(low, min(high, value))


def stage_for(average: float) -> Stage:
    for bound, stage in STAGE_THRESHOLDS:
        if average < bound:
            return stage
    return "lover"


def stage_rank(stage: Stage) -> int:
    return STAGES.index(stage)


def transition_between(before: RelationshipRecord, after: RelationshipRecord) -> StageTransition | None:
    if before.stage == after.stage:
        return None
    return StageTransition(from_stage=before.stage, to_stage=after.stage)


def apply_delta(
    record: RelationshipRecord,
    delta: RelationshipDelta | int,
    flag: str | None = None,
) -> LedgerUpdate:
    """Apply one interaction's delta and report any stage change.

    An int delta moves all three scores by the same amount. Every call counts
    as exactly one interaction, even a zero delta.
    """
    if isinstance(delta, int):
        delta = RelationshipDelta.uniform(delta)

    updated = record.model_copy(update={
        "affection": clamp(record.affection + delta.affection),
        "trust": clamp(record.trust + delta.trust),
        "intimacy": clamp(record.intimacy + delta.intimacy),
        "total_interactions": record.total_interactions + 1,
    })
    if flag:
        updated = set_flag(updated, flag)
    return LedgerUpdate(record=updated, transition=transition_between(record, updated))


def set_flag(record: RelationshipRecord, key: str) -> RelationshipRecord:
    if key in record.story_flags:
        return record
    return record.model_copy(update={"story_flags": [*record.story_flags, key]})


def unlock_memory(record: RelationshipRecord, memory_id: str) -> RelationshipRecord:
    if memory_id in record.unlocked_memories:
        return record
    return record.model_copy(update={"unlocked_memories": [*record.unlocked_memories, memory_id]})


def set_affection(record: RelationshipRecord, value: int) -> RelationshipRecord:
    return record.model_copy(update={"affection": clamp(value)})


def lift_to_stage(record: RelationshipRecord, stage: Stage) -> RelationshipRecord:
    """Raise scores so the derived stage is at least `stage`. Never demotes."""
    if stage_rank(record.stage) >= stage_rank(stage):
        return record
    floor = STAGE_FLOORS[stage]
    return record.model_copy(update={
        "affection": max(record.affection, floor),
        "trust": max(record.trust, floor),
        "intimacy": max(record.intimacy, floor),
    })
