"""Scenario progression — start, choice recording, completion, availability.

Completion is guarded by a conditional update (in_progress → completed), so
the side effects below run at most once per play-through no matter how many
times complete() is called:

  - first completion only: affection set from
    ending.initial_affection_by_choice (last match wins), memory record and
    completion bonus
  - relationship lifted to ending.set_stage
  - free_chat_unlocked flag
  - item unlocks whose min_affection is met
  - scenarios that became available because of the above
"""

from __future__ import annotations

import logging

from novel_engine import relationship as ledger
from novel_engine.errors import AlreadyInProgress, InvalidInput
from novel_engine.models import (
    ChoiceMade,
    CompletionResult,
    MemoryRecord,
    RelationshipRecord,
    Scenario,
    ScenarioProgress,
    UnlockedItem,
    utcnow,
)
from novel_engine.storage import Storage

logger = logging.getLogger(__name__)

FREE_CHAT_FLAG = "free_chat_unlocked"


def _is_available(
    scenario: Scenario, record: RelationshipRecord, completed: set[str]
) -> bool:
    if not scenario.active:
        return False
    if ledger.stage_rank(record.stage) < ledger.stage_rank(scenario.min_stage):
        return False
    if record.affection < scenario.min_affection:
        return False
    return all(p in completed for p in scenario.prerequisites)


class ScenarioProgressTracker:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def get_progress(
        self, user_id: str, character_id: str, scenario_id: str
    ) -> ScenarioProgress:
        progress = self._storage.get_progress(user_id, character_id, scenario_id)
        if progress is None:
            return ScenarioProgress(
                user_id=user_id, character_id=character_id, scenario_id=scenario_id
            )
        return progress

    def start(self, user_id: str, character_id: str, scenario: Scenario) -> ScenarioProgress:
        existing = self.get_progress(user_id, character_id, scenario.id)
        if existing.status == "in_progress":
            raise AlreadyInProgress(f"Scenario {scenario.id} is already in progress")

        progress = existing.model_copy(update={
            "status": "in_progress",
            "current_scene_id": scenario.start_scene_id,
            "choices_made": [],
            "started_at": utcnow(),
            "completed_at": None,
        })
        self._storage.save_progress(progress)
        logger.info("Scenario %s started by user=%s (completed %d times before)",
                    scenario.id, user_id, existing.times_completed)
        return progress

    def move_to(
        self, user_id: str, character_id: str, scenario_id: str, scene_id: str
    ) -> ScenarioProgress:
        progress = self.get_progress(user_id, character_id, scenario_id)
        progress = progress.model_copy(update={"current_scene_id": scene_id})
        self._storage.save_progress(progress)
        return progress

    def record_choice(
        self,
        user_id: str,
        character_id: str,
        scenario_id: str,
        from_scene_id: str,
        choice_id: str,
        next_scene_id: str,
    ) -> ScenarioProgress:
        progress = self.get_progress(user_id, character_id, scenario_id)
        progress = progress.model_copy(update={
            "choices_made": [
                *progress.choices_made,
                ChoiceMade(scene_id=from_scene_id, choice_id=choice_id),
            ],
            "current_scene_id": next_scene_id,
        })
        self._storage.save_progress(progress)
        return progress

    def available_scenarios(
        self,
        user_id: str,
        character_id: str,
        record: RelationshipRecord | None = None,
    ) -> list[Scenario]:
        """Active scenarios whose gates the relationship currently passes."""
        if record is None:
            record = self._storage.get_relationship(user_id, character_id) or RelationshipRecord(
                user_id=user_id, character_id=character_id
            )
        completed = self._storage.completed_scenario_ids(user_id, character_id)
        return [
            s for s in self._storage.list_scenarios(character_id)
            if _is_available(s, record, completed)
        ]

    def complete(
        self,
        user_id: str,
        character_id: str,
        scenario: Scenario,
        relationship: RelationshipRecord,
    ) -> CompletionResult:
        """Mark the scenario completed and apply its ending, exactly once.

        Writes happen through the storage, so callers that need the result to
        commit together with other changes wrap this in storage.transaction().
        """
        with self._storage.transaction():
            before = self.get_progress(user_id, character_id, scenario.id)
            available_before = {
                s.id for s in self.available_scenarios(user_id, character_id, relationship)
            }
            if not self._storage.mark_completed(user_id, character_id, scenario.id):
                if before.status != "completed":
                    raise InvalidInput(
                        f"Scenario {scenario.id} is not in progress for user {user_id}"
                    )
                logger.info("Scenario %s already completed for user=%s", scenario.id, user_id)
                return CompletionResult(
                    progress=before,
                    relationship=relationship,
                    already_completed=True,
                )

            progress = self.get_progress(user_id, character_id, scenario.id)
            ending = scenario.ending
            record = relationship

            if before.times_completed == 0:
                chosen = [
                    c.choice_id for c in progress.choices_made
                    if c.choice_id in ending.initial_affection_by_choice
                ]
                if chosen:
                    record = ledger.set_affection(
                        record, ending.initial_affection_by_choice[chosen[-1]]
                    )

                memory_id = f"{ending.memory_type}:{scenario.id}"
                self._storage.add_memory(MemoryRecord(
                    user_id=user_id,
                    character_id=character_id,
                    memory_type=ending.memory_type,
                    summary=f"Completed: {scenario.title}",
                    details={
                        "scenario_id": scenario.id,
                        "choices": [c.choice_id for c in progress.choices_made],
                    },
                    emotional_weight=10 if ending.memory_type == "first_meeting" else 7,
                    source_id=scenario.id,
                ))
                record = ledger.unlock_memory(record, memory_id)
                record = ledger.set_affection(record, record.affection + ending.completion_bonus)

            if ending.set_stage:
                record = ledger.lift_to_stage(record, ending.set_stage)
            if ending.unlock_free_chat:
                record = ledger.set_flag(record, FREE_CHAT_FLAG)

            self._storage.save_relationship(record)

            unlocked = self._storage.unlock_items(user_id, character_id, [
                UnlockedItem(item_id=u.item_id, item_type=u.item_type)
                for u in ending.unlocks
                if record.affection >= u.min_affection
            ])

            newly_available = [
                s.id for s in self.available_scenarios(user_id, character_id, record)
                if s.id not in available_before
            ]

        logger.info(
            "Scenario %s completed by user=%s: affection %d → %d, %d items, %d scenarios unlocked",
            scenario.id, user_id, relationship.affection, record.affection,
            len(unlocked), len(newly_available),
        )
        return CompletionResult(
            progress=progress,
            relationship=record,
            transition=ledger.transition_between(relationship, record),
            unlocked_items=unlocked,
            unlocked_scenarios=newly_available,
        )
