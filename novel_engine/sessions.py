"""Session continuity — one active conversation per (user, character).

A session is either free-form (no scenario) or bound to a scenario and a
current scene. Starting a scenario ends whatever was active for the pair and
opens a fresh bound session in the same transaction. If a crash ever leaves
two sessions nominally active, the most recently touched one wins.
"""

from __future__ import annotations

import logging
import uuid

from novel_engine.errors import (
    SessionEnded,
    SessionNotFound,
    SessionOwnershipError,
    SessionPersonaMismatchError,
)
from novel_engine.models import ConversationSession, Scenario
from novel_engine.storage import Storage

logger = logging.getLogger(__name__)


class SessionManager:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def resolve_or_create(self, user_id: str, character_id: str) -> ConversationSession:
        active = self._storage.active_sessions(user_id, character_id)
        if active:
            if len(active) > 1:
                logger.warning(
                    "%d active sessions for user=%s character=%s, using %s",
                    len(active), user_id, character_id, active[0].id,
                )
            return active[0]
        session = ConversationSession(
            id=uuid.uuid4().hex, user_id=user_id, character_id=character_id
        )
        logger.info("New free-form session %s for user=%s character=%s",
                    session.id, user_id, character_id)
        return self._storage.create_session(session)

    def validate(self, session_id: str, user_id: str, character_id: str) -> ConversationSession:
        """Re-check an externally supplied session id against the caller."""
        session = self._storage.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.user_id != user_id:
            raise SessionOwnershipError(f"Session {session_id} belongs to another user")
        if session.character_id != character_id:
            raise SessionPersonaMismatchError(
                f"Session {session_id} is bound to character {session.character_id}"
            )
        if session.status != "active":
            raise SessionEnded(f"Session {session_id} has ended")
        return session

    def resolve(
        self, user_id: str, character_id: str, session_id: str | None = None
    ) -> ConversationSession:
        if session_id:
            return self.validate(session_id, user_id, character_id)
        return self.resolve_or_create(user_id, character_id)

    def start_scenario(
        self,
        user_id: str,
        character_id: str,
        scenario: Scenario,
        scene_id: str | None = None,
    ) -> ConversationSession:
        """End the pair's active sessions and open one bound to `scenario`.

        `scene_id` resumes at a given scene; the default is the start scene.
        """
        session = ConversationSession(
            id=uuid.uuid4().hex,
            user_id=user_id,
            character_id=character_id,
            scenario_id=scenario.id,
            scene_id=scene_id or scenario.start_scene_id,
        )
        with self._storage.transaction():
            ended = self._storage.end_active_sessions(user_id, character_id)
            self._storage.create_session(session)
        logger.info("Session %s bound to scenario %s at %s (ended %d prior)",
                    session.id, scenario.id, session.scene_id, ended)
        return session

    def end(self, session_id: str) -> None:
        self._storage.end_session(session_id)

    def touch(self, session: ConversationSession, scene_id: str | None) -> ConversationSession:
        """Move the scene pointer and bump last_message_at."""
        self._storage.update_session_position(session.id, session.scenario_id, scene_id)
        updated = self._storage.get_session(session.id)
        assert updated is not None
        return updated
