"""Turn pipeline — runs one metered user turn end-to-end.

Turn flow:
  1. Debit the turn cost (single conditional decrement; InsufficientBalance
     when the balance is short, nothing taken).
  2. Resolve the session: validate a supplied id, or reuse/create the pair's
     active session.
  3. Produce a beat.
       scenario session → advance the scene graph with the submitted choice;
                          premium choices debit an extra unit. Broken content
                          falls back without moving the scene pointer.
       free-form session → ask the generation backend, bounded by a timeout.
                          No beat (timeout, transport error, bad output) →
                          deterministic fallback keyed by relationship stage.
  4. Apply the relationship delta (and the choice's story flag).
  5. On a terminal scene, complete the scenario once and end its session.
  6. Commit 4 and 5 together with message logging and the scene pointer in
     one storage transaction.

Any failure after the debit (cancellation included) refunds everything
taken during the turn before the error propagates. The notifier runs after
commit as a fire-and-forget task.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel

from novel_engine import relationship as ledger
from novel_engine.dialogue import GenerationBackend, GenerationContext, fallback_beat
from novel_engine.errors import (
    BackendError,
    BackendUnavailable,
    CharacterNotFound,
    DanglingReference,
    InvalidInput,
    ScenarioLocked,
    ScenarioNotFound,
    SessionEnded,
    StaleSession,
)
from novel_engine.graph import advance, find_choice, is_terminal, scene_choices
from novel_engine.models import (
    Character,
    Choice,
    CompletionResult,
    ConversationMessage,
    ConversationSession,
    GeneratedBeat,
    NarrationScene,
    RelationshipRecord,
    Scenario,
    ScenarioProgress,
    Scene,
    SuggestedChoice,
    TransitionScene,
    TurnResult,
)
from novel_engine.progress import ScenarioProgressTracker
from novel_engine.sessions import SessionManager
from novel_engine.storage import Storage

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 2000

TurnState = Literal[
    "started",
    "debited",
    "session_resolved",
    "beat_generated",
    "deltas_applied",
    "committed",
    "refund_issued",
]


class PipelineSettings(BaseModel):
    turn_cost: int = 1
    premium_cost: int = 1
    generation_timeout: float = 30.0
    fallback_enabled: bool = True
    history_window: int = 20

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> PipelineSettings:
        return cls.model_validate({k: config[k] for k in cls.model_fields if k in config})


# ---------------------------------------------------------------------------
# Notifier hook
# ---------------------------------------------------------------------------

class TurnEvent(BaseModel):
    user_id: str
    character_id: str
    session_id: str
    action: Literal["message_sent", "premium_purchased"]


class Notifier(Protocol):
    async def __call__(self, event: TurnEvent) -> None: ...


class LogNotifier:
    async def __call__(self, event: TurnEvent) -> None:
        logger.info("turn event %s user=%s session=%s", event.action, event.user_id, event.session_id)


class WebhookNotifier:
    """POSTs each TurnEvent as JSON to a fixed URL."""

    def __init__(self, url: str, timeout: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout

    async def __call__(self, event: TurnEvent) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(self._url, json=event.model_dump())
            resp.raise_for_status()


# ---------------------------------------------------------------------------
# Per-turn bookkeeping
# ---------------------------------------------------------------------------

class _Turn:
    """Explicit state of one turn; the refund reads `debited` from here."""

    def __init__(self, user_id: str, character_id: str) -> None:
        self.user_id = user_id
        self.character_id = character_id
        self.session_id: str | None = None
        self.state: TurnState = "started"
        self.debited = 0

    def to(self, state: TurnState) -> None:
        logger.info("turn user=%s session=%s: %s → %s",
                    self.user_id, self.session_id, self.state, state)
        self.state = state


class _Beat(BaseModel):
    beat: GeneratedBeat
    used_fallback: bool = False
    scenario: Scenario | None = None
    choice: Choice | None = None
    next_scene: Scene | None = None
    terminal: bool = False


class ScenarioStart(BaseModel):
    session: ConversationSession
    scene: Scene | None
    progress: ScenarioProgress


class TurnPipeline:
    def __init__(
        self,
        storage: Storage,
        backend: GenerationBackend | None = None,
        notifier: Notifier | None = None,
        settings: PipelineSettings | None = None,
    ) -> None:
        self._storage = storage
        self._backend = backend
        self._notifier = notifier
        self.settings = settings or PipelineSettings()
        self.sessions = SessionManager(storage)
        self.progress = ScenarioProgressTracker(storage)
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        user_id: str,
        character_id: str,
        message: str,
        session_id: str | None = None,
        choice_id: str | None = None,
    ) -> TurnResult:
        text = message.strip()
        if not text:
            raise InvalidInput("Message must not be empty")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise InvalidInput(f"Message exceeds {MAX_MESSAGE_LENGTH} characters")
        character = self._storage.get_character(character_id)
        if character is None:
            raise CharacterNotFound(f"Character {character_id} not found")
        if choice_id is not None and self._targets_free_form(user_id, character_id, session_id):
            raise InvalidInput("choice_id is only accepted on scenario sessions")

        turn = _Turn(user_id, character_id)
        self._storage.debit(user_id, self.settings.turn_cost)
        turn.debited = self.settings.turn_cost
        turn.to("debited")

        try:
            session = self.sessions.resolve(user_id, character_id, session_id)
            turn.session_id = session.id
            turn.to("session_resolved")

            record = self._storage.get_relationship(user_id, character_id) or RelationshipRecord(
                user_id=user_id, character_id=character_id
            )
            if session.is_free_form:
                if choice_id is not None:
                    raise InvalidInput("choice_id is only accepted on scenario sessions")
                outcome = await self._free_form_beat(session, character, record, text)
            else:
                outcome = self._scenario_beat(turn, session, character, record, choice_id)
            turn.to("beat_generated")

            result = self._commit(turn, session, outcome, text)
        except BaseException:
            self._refund(turn)
            raise

        premium = outcome.choice is not None and outcome.choice.premium
        self._notify(TurnEvent(
            user_id=user_id,
            character_id=character_id,
            session_id=session.id,
            action="premium_purchased" if premium else "message_sent",
        ))
        return result

    def _targets_free_form(self, user_id: str, character_id: str, session_id: str | None) -> bool:
        """Whether the turn would land on a free-form session. Unknown or foreign
        session ids are left to session resolution."""
        if session_id:
            session = self._storage.get_session(session_id)
            return (
                session is not None
                and session.user_id == user_id
                and session.character_id == character_id
                and session.is_free_form
            )
        active = self._storage.active_sessions(user_id, character_id)
        return not active or active[0].is_free_form

    def _scenario_beat(
        self,
        turn: _Turn,
        session: ConversationSession,
        character: Character,
        record: RelationshipRecord,
        choice_id: str | None,
    ) -> _Beat:
        assert session.scenario_id is not None and session.scene_id is not None
        scenario = self._storage.get_scenario(session.scenario_id)
        if scenario is None:
            logger.warning("Session %s points at missing scenario %s, using fallback",
                           session.id, session.scenario_id)
            return _Beat(beat=fallback_beat(record.stage, character), used_fallback=True)

        if choice_id is None and is_terminal(scenario, session.scene_id):
            # the session sits on an ending (e.g. a single-scene scenario): finish it here
            next_id = session.scene_id
        else:
            try:
                next_id = advance(scenario, session.scene_id, choice_id)
            except DanglingReference as e:
                logger.warning("Scenario %s content does not resolve (%s), using fallback",
                               scenario.id, e)
                return _Beat(beat=fallback_beat(record.stage, character), used_fallback=True)

        choice = find_choice(scenario, session.scene_id, choice_id) if choice_id else None
        if choice is not None and choice.premium:
            self._storage.debit(turn.user_id, self.settings.premium_cost)
            turn.debited += self.settings.premium_cost
            logger.info("Premium choice %s debited %d", choice.id, self.settings.premium_cost)

        scene = scenario.scene(next_id)
        assert scene is not None
        choices = [
            SuggestedChoice(id=c.id, text=c.text, tone=c.tone) for c in scene_choices(scene)
        ]
        dialogue = scene.text or getattr(scene, "prompt", None) or "..."
        beat = GeneratedBeat(
            dialogue=dialogue,
            emotion=scene.expression or "neutral",
            suggested_delta=choice.relationship_delta if choice else 0,
            suggested_choices=choices or None,
        )
        return _Beat(
            beat=beat,
            scenario=scenario,
            choice=choice,
            next_scene=scene,
            terminal=is_terminal(scenario, next_id),
        )

    async def _free_form_beat(
        self,
        session: ConversationSession,
        character: Character,
        record: RelationshipRecord,
        text: str,
    ) -> _Beat:
        stage = record.stage
        beat = await self._generate(GenerationContext(
            message=text,
            stage=stage,
            history=self._storage.get_messages(session.id, limit=self.settings.history_window),
        ), character)
        if beat is not None:
            return _Beat(beat=beat)
        if not self.settings.fallback_enabled:
            raise BackendUnavailable("Generation backend produced no beat and fallback is disabled")
        return _Beat(beat=fallback_beat(stage, character), used_fallback=True)

    async def _generate(self, context: GenerationContext, character: Character) -> GeneratedBeat | None:
        """Ask the backend for a beat. None means no beat; the caller decides what next."""
        if self._backend is None:
            return None
        try:
            return await asyncio.wait_for(
                self._backend.generate(context, character, character.parameters_for(context.stage)),
                timeout=self.settings.generation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Generation timed out after %.1fs for %s",
                           self.settings.generation_timeout, character.id)
        except BackendError as e:
            logger.warning("Generation failed for %s: %s", character.id, e)
        except Exception:
            logger.exception("Generation backend crashed for %s", character.id)
        return None

    def _commit(
        self,
        turn: _Turn,
        session: ConversationSession,
        outcome: _Beat,
        text: str,
    ) -> TurnResult:
        """Persist the turn atomically. Reads are repeated inside the transaction
        so a concurrent turn on the same pair cannot be overwritten."""
        beat = outcome.beat
        scene = outcome.next_scene
        completion: CompletionResult | None = None
        role = "narrator" if isinstance(scene, (NarrationScene, TransitionScene)) else "character"

        with self._storage.transaction():
            current = self._storage.get_session(session.id)
            if current is None or current.status != "active":
                raise SessionEnded(f"Session {session.id} ended during the turn")
            if current.scene_id != session.scene_id:
                raise StaleSession(f"Session {session.id} moved on during the turn")
            record = self._storage.get_relationship(
                turn.user_id, turn.character_id
            ) or RelationshipRecord(user_id=turn.user_id, character_id=turn.character_id)

            update = ledger.apply_delta(
                record, beat.suggested_delta, flag=outcome.choice.flag if outcome.choice else None
            )
            updated = update.record
            self._storage.save_relationship(updated)
            turn.to("deltas_applied")

            self._storage.append_messages([
                ConversationMessage(session_id=session.id, role="user", content=text),
                ConversationMessage(
                    session_id=session.id, role=role, content=beat.dialogue, emotion=beat.emotion
                ),
            ])

            if outcome.scenario is not None and scene is not None:
                scenario = outcome.scenario
                assert session.scene_id is not None
                if outcome.choice is not None:
                    self.progress.record_choice(
                        turn.user_id, turn.character_id, scenario.id,
                        session.scene_id, outcome.choice.id, scene.id,
                    )
                else:
                    self.progress.move_to(turn.user_id, turn.character_id, scenario.id, scene.id)

                if outcome.terminal:
                    completion = self.progress.complete(
                        turn.user_id, turn.character_id, scenario, updated
                    )
                    updated = completion.relationship
                    self.sessions.end(session.id)
                else:
                    self.sessions.touch(session, scene.id)
            else:
                self.sessions.touch(session, session.scene_id)

            balance = self._storage.get_balance(turn.user_id)
        turn.to("committed")

        return TurnResult(
            session_id=session.id,
            dialogue=beat.dialogue,
            emotion=beat.emotion,
            relationship_delta=beat.suggested_delta,
            new_stage=ledger.transition_between(record, updated),
            choices=beat.suggested_choices,
            scene_id=scene.id if scene is not None else session.scene_id,
            scenario_completed=completion is not None,
            completion=completion,
            balance=balance,
            used_fallback=outcome.used_fallback,
        )

    def _refund(self, turn: _Turn) -> None:
        if turn.debited <= 0:
            return
        try:
            self._storage.credit(turn.user_id, turn.debited)
        except Exception:
            logger.exception("Refund of %d for user=%s failed", turn.debited, turn.user_id)
            return
        turn.to("refund_issued")

    # ------------------------------------------------------------------
    # Notifier
    # ------------------------------------------------------------------

    def _notify(self, event: TurnEvent) -> None:
        if self._notifier is None:
            return
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: TurnEvent) -> None:
        assert self._notifier is not None
        try:
            await self._notifier(event)
        except Exception:
            logger.exception("Notifier failed for %s on session %s", event.action, event.session_id)

    async def drain(self) -> None:
        """Wait for in-flight notifications."""
        if self._pending:
            await asyncio.gather(*self._pending)

    # ------------------------------------------------------------------
    # Scenario entry points
    # ------------------------------------------------------------------

    def _load_scenario(self, character_id: str, scenario_id: str) -> Scenario:
        scenario = self._storage.get_scenario(scenario_id)
        if scenario is None or not scenario.active or scenario.character_id != character_id:
            raise ScenarioNotFound(f"Scenario {scenario_id} not found")
        return scenario

    def start_scenario(self, user_id: str, character_id: str, scenario_id: str) -> ScenarioStart:
        scenario = self._load_scenario(character_id, scenario_id)
        available = {s.id for s in self.progress.available_scenarios(user_id, character_id)}
        if scenario.id not in available:
            raise ScenarioLocked(f"Scenario {scenario_id} is locked")

        with self._storage.transaction():
            progress = self.progress.start(user_id, character_id, scenario)
            session = self.sessions.start_scenario(user_id, character_id, scenario)
        return ScenarioStart(
            session=session, scene=scenario.scene(session.scene_id or ""), progress=progress
        )

    def resume_scenario(self, user_id: str, character_id: str, scenario_id: str) -> ScenarioStart:
        """Bind a fresh session to an in-progress scenario's current scene."""
        scenario = self._load_scenario(character_id, scenario_id)
        progress = self.progress.get_progress(user_id, character_id, scenario_id)
        if progress.status != "in_progress":
            raise InvalidInput(f"Scenario {scenario_id} is not in progress")
        scene_id = progress.current_scene_id
        if scene_id is None or scenario.scene(scene_id) is None:
            scene_id = scenario.start_scene_id
        session = self.sessions.start_scenario(user_id, character_id, scenario, scene_id=scene_id)
        return ScenarioStart(
            session=session, scene=scenario.scene(session.scene_id or ""), progress=progress
        )
