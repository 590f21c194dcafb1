"""Persistence store.

Authored content lives in flat JSON files, one per document, read and
written through pydantic. Per-user state lives in a SQLite database so that
balance changes and session hand-overs are atomic across processes.

Directory layout:

    {base}/
      characters/
        {character_id}.json   ← Character
      scenarios/
        {scenario_id}.json    ← Scenario
      state.db                ← balances, sessions, relationships, progress,
                                memories, unlocked items, messages

Every write method runs in its own transaction unless it is called inside
`with storage.transaction():`, in which case it joins the open one. The
transaction starts with BEGIN IMMEDIATE so concurrent writers queue on the
database lock instead of interleaving.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from novel_engine.errors import InsufficientBalance
from novel_engine.models import (
    Character,
    ChoiceMade,
    ConversationMessage,
    ConversationSession,
    MemoryRecord,
    RelationshipRecord,
    Scenario,
    ScenarioProgress,
    UnlockedItem,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS balances (
  user_id TEXT PRIMARY KEY,
  balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0)
);

CREATE TABLE IF NOT EXISTS sessions (
  id TEXT PRIMARY KEY,
  user_id TEXT NOT NULL,
  character_id TEXT NOT NULL,
  status TEXT NOT NULL,
  scenario_id TEXT,
  scene_id TEXT,
  created_at TEXT NOT NULL,
  last_message_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS sessions_pair ON sessions (user_id, character_id, status);

CREATE TABLE IF NOT EXISTS relationships (
  user_id TEXT NOT NULL,
  character_id TEXT NOT NULL,
  affection INTEGER NOT NULL,
  trust INTEGER NOT NULL,
  intimacy INTEGER NOT NULL,
  total_interactions INTEGER NOT NULL,
  story_flags TEXT NOT NULL,
  unlocked_memories TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (user_id, character_id)
);

CREATE TABLE IF NOT EXISTS progress (
  user_id TEXT NOT NULL,
  character_id TEXT NOT NULL,
  scenario_id TEXT NOT NULL,
  status TEXT NOT NULL,
  current_scene_id TEXT,
  choices_made TEXT NOT NULL,
  started_at TEXT,
  completed_at TEXT,
  times_completed INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (user_id, character_id, scenario_id)
);

CREATE TABLE IF NOT EXISTS memories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  user_id TEXT NOT NULL,
  character_id TEXT NOT NULL,
  memory_type TEXT NOT NULL,
  summary TEXT NOT NULL,
  details TEXT NOT NULL,
  emotional_weight INTEGER NOT NULL,
  source_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  UNIQUE (user_id, character_id, memory_type, source_id)
);

CREATE TABLE IF NOT EXISTS unlocked_items (
  user_id TEXT NOT NULL,
  character_id TEXT NOT NULL,
  item_id TEXT NOT NULL,
  item_type TEXT NOT NULL,
  unlocked_at TEXT NOT NULL,
  PRIMARY KEY (user_id, character_id, item_id)
);

CREATE TABLE IF NOT EXISTS messages (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id TEXT NOT NULL,
  role TEXT NOT NULL,
  content TEXT NOT NULL,
  emotion TEXT,
  created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS messages_session ON messages (session_id, id);
"""


class Storage:
    def __init__(self, base_path: Path, busy_timeout: float = 10.0) -> None:
        self._base = base_path
        self._characters_root = base_path / "characters"
        self._scenarios_root = base_path / "scenarios"
        self._characters_root.mkdir(parents=True, exist_ok=True)
        self._scenarios_root.mkdir(parents=True, exist_ok=True)
        self._db_path = base_path / "state.db"
        self._busy_timeout = busy_timeout
        self._local = threading.local()

        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Connections + transactions
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), timeout=self._busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group writes into one atomic unit. Nested calls join the outer one."""
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = self._connect()
        self._local.conn = conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        finally:
            self._local.conn = None
            conn.close()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """The open transaction's connection, or a short-lived autocommit one."""
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Internal JSON helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _character_file(self, character_id: str) -> Path:
        return self._characters_root / f"{character_id}.json"

    def _scenario_file(self, scenario_id: str) -> Path:
        return self._scenarios_root / f"{scenario_id}.json"

    # ------------------------------------------------------------------
    # Characters (authored content)
    # ------------------------------------------------------------------

    def save_character(self, character: Character) -> None:
        self._character_file(character.id).write_text(character.model_dump_json(indent=2))

    def get_character(self, character_id: str) -> Character | None:
        path = self._character_file(character_id)
        if not path.is_file():
            return None
        return Character.model_validate_json(path.read_text())

    def list_characters(self) -> list[Character]:
        return [
            Character.model_validate(self._read_json(p))
            for p in sorted(self._characters_root.glob("*.json"))
        ]

    # ------------------------------------------------------------------
    # Scenarios (authored content)
    # ------------------------------------------------------------------

    def save_scenario(self, scenario: Scenario) -> None:
        """Replace the scenario document as a whole."""
        path = self._scenario_file(scenario.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(scenario.model_dump_json(indent=2))
        tmp.replace(path)

    def get_scenario(self, scenario_id: str) -> Scenario | None:
        path = self._scenario_file(scenario_id)
        if not path.is_file():
            return None
        return Scenario.model_validate_json(path.read_text())

    def list_scenarios(self, character_id: str | None = None) -> list[Scenario]:
        """All scenarios in authoring order (sort_order, then id)."""
        scenarios = [
            Scenario.model_validate(self._read_json(p))
            for p in self._scenarios_root.glob("*.json")
        ]
        if character_id is not None:
            scenarios = [s for s in scenarios if s.character_id == character_id]
        return sorted(scenarios, key=lambda s: (s.sort_order, s.id))

    def delete_scenario(self, scenario_id: str) -> bool:
        path = self._scenario_file(scenario_id)
        if not path.is_file():
            return False
        path.unlink()
        return True

    # ------------------------------------------------------------------
    # Consumable balance
    # ------------------------------------------------------------------

    def _balance(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT balance FROM balances WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row["balance"] if row else 0

    def get_balance(self, user_id: str) -> int:
        with self._conn() as conn:
            return self._balance(conn, user_id)

    def credit(self, user_id: str, amount: int) -> int:
        """Add `amount` to the user's balance. Returns the new balance."""
        if amount < 0:
            raise ValueError("credit amount must not be negative")
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO balances (user_id, balance) VALUES (?, ?) "
                "ON CONFLICT (user_id) DO UPDATE SET balance = balance + excluded.balance",
                (user_id, amount),
            )
            return self._balance(conn, user_id)

    def debit(self, user_id: str, amount: int) -> int:
        """Atomically take `amount` from the balance. Returns the new balance.

        The check and the decrement are one conditional UPDATE, so two
        concurrent debits can never both succeed on the last unit.
        """
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE balances SET balance = balance - ? "
                "WHERE user_id = ? AND balance >= ?",
                (amount, user_id, amount),
            )
            if cur.rowcount == 0:
                raise InsufficientBalance(current=self._balance(conn, user_id), required=amount)
            return self._balance(conn, user_id)

    # ------------------------------------------------------------------
    # Conversation sessions
    # ------------------------------------------------------------------

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> ConversationSession:
        return ConversationSession.model_validate(dict(row))

    def create_session(self, session: ConversationSession) -> ConversationSession:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO sessions (id, user_id, character_id, status, scenario_id, "
                "scene_id, created_at, last_message_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    session.id, session.user_id, session.character_id, session.status,
                    session.scenario_id, session.scene_id,
                    session.created_at.isoformat(), session.last_message_at.isoformat(),
                ),
            )
        return session

    def get_session(self, session_id: str) -> ConversationSession | None:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def active_sessions(self, user_id: str, character_id: str) -> list[ConversationSession]:
        """Active sessions for the pair, most recently touched first."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = ? AND character_id = ? "
                "AND status = 'active' ORDER BY last_message_at DESC, created_at DESC",
                (user_id, character_id),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def end_session(self, session_id: str) -> None:
        with self._conn() as conn:
            conn.execute("UPDATE sessions SET status = 'ended' WHERE id = ?", (session_id,))

    def end_active_sessions(self, user_id: str, character_id: str) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE sessions SET status = 'ended' "
                "WHERE user_id = ? AND character_id = ? AND status = 'active'",
                (user_id, character_id),
            )
            return cur.rowcount

    def update_session_position(
        self, session_id: str, scenario_id: str | None, scene_id: str | None
    ) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE sessions SET scenario_id = ?, scene_id = ?, last_message_at = ? "
                "WHERE id = ?",
                (scenario_id, scene_id, utcnow().isoformat(), session_id),
            )

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def get_relationship(self, user_id: str, character_id: str) -> RelationshipRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM relationships WHERE user_id = ? AND character_id = ?",
                (user_id, character_id),
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["story_flags"] = json.loads(data["story_flags"])
        data["unlocked_memories"] = json.loads(data["unlocked_memories"])
        return RelationshipRecord.model_validate(data)

    def save_relationship(self, record: RelationshipRecord) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO relationships (user_id, character_id, affection, trust, intimacy, "
                "total_interactions, story_flags, unlocked_memories, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (user_id, character_id) DO UPDATE SET "
                "affection = excluded.affection, trust = excluded.trust, "
                "intimacy = excluded.intimacy, total_interactions = excluded.total_interactions, "
                "story_flags = excluded.story_flags, unlocked_memories = excluded.unlocked_memories, "
                "updated_at = excluded.updated_at",
                (
                    record.user_id, record.character_id, record.affection, record.trust,
                    record.intimacy, record.total_interactions,
                    json.dumps(record.story_flags), json.dumps(record.unlocked_memories),
                    utcnow().isoformat(),
                ),
            )

    # ------------------------------------------------------------------
    # Scenario progress
    # ------------------------------------------------------------------

    def get_progress(
        self, user_id: str, character_id: str, scenario_id: str
    ) -> ScenarioProgress | None:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM progress WHERE user_id = ? AND character_id = ? AND scenario_id = ?",
                (user_id, character_id, scenario_id),
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["choices_made"] = [ChoiceMade.model_validate(c) for c in json.loads(data["choices_made"])]
        return ScenarioProgress.model_validate(data)

    def save_progress(self, progress: ScenarioProgress) -> None:
        with self._conn() as conn:
            conn.execute(
                "INSERT INTO progress (user_id, character_id, scenario_id, status, "
                "current_scene_id, choices_made, started_at, completed_at, times_completed) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT (user_id, character_id, scenario_id) DO UPDATE SET "
                "status = excluded.status, current_scene_id = excluded.current_scene_id, "
                "choices_made = excluded.choices_made, started_at = excluded.started_at, "
                "completed_at = excluded.completed_at, times_completed = excluded.times_completed",
                (
                    progress.user_id, progress.character_id, progress.scenario_id,
                    progress.status, progress.current_scene_id,
                    json.dumps([c.model_dump(mode="json") for c in progress.choices_made]),
                    progress.started_at.isoformat() if progress.started_at else None,
                    progress.completed_at.isoformat() if progress.completed_at else None,
                    progress.times_completed,
                ),
            )

    def mark_completed(self, user_id: str, character_id: str, scenario_id: str) -> bool:
        """Flip in_progress → completed. False when the record was not in progress."""
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE progress SET status = 'completed', completed_at = ?, "
                "times_completed = times_completed + 1 "
                "WHERE user_id = ? AND character_id = ? AND scenario_id = ? "
                "AND status = 'in_progress'",
                (utcnow().isoformat(), user_id, character_id, scenario_id),
            )
            return cur.rowcount == 1

    def completed_scenario_ids(self, user_id: str, character_id: str) -> set[str]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT scenario_id FROM progress WHERE user_id = ? AND character_id = ? "
                "AND times_completed > 0",
                (user_id, character_id),
            ).fetchall()
        return {r["scenario_id"] for r in rows}

    # ------------------------------------------------------------------
    # Memories + unlocked items
    # ------------------------------------------------------------------

    def add_memory(self, memory: MemoryRecord) -> bool:
        """Insert a memory record. False if an identical one already exists."""
        with self._conn() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO memories (user_id, character_id, memory_type, summary, "
                "details, emotional_weight, source_id, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    memory.user_id, memory.character_id, memory.memory_type, memory.summary,
                    json.dumps(memory.details), memory.emotional_weight, memory.source_id,
                    memory.created_at.isoformat(),
                ),
            )
            return cur.rowcount == 1

    def get_memories(self, user_id: str, character_id: str) -> list[MemoryRecord]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM memories WHERE user_id = ? AND character_id = ? ORDER BY id",
                (user_id, character_id),
            ).fetchall()
        memories = []
        for row in rows:
            data = dict(row)
            data["details"] = json.loads(data["details"])
            memories.append(MemoryRecord.model_validate(data))
        return memories

    def unlock_items(
        self, user_id: str, character_id: str, items: list[UnlockedItem]
    ) -> list[UnlockedItem]:
        """Upsert unlocked items; returns only those that were new."""
        added: list[UnlockedItem] = []
        with self._conn() as conn:
            for item in items:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO unlocked_items (user_id, character_id, item_id, "
                    "item_type, unlocked_at) VALUES (?, ?, ?, ?, ?)",
                    (user_id, character_id, item.item_id, item.item_type,
                     item.unlocked_at.isoformat()),
                )
                if cur.rowcount == 1:
                    added.append(item)
        return added

    def get_unlocked_items(self, user_id: str, character_id: str) -> list[UnlockedItem]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT item_id, item_type, unlocked_at FROM unlocked_items "
                "WHERE user_id = ? AND character_id = ? ORDER BY unlocked_at, item_id",
                (user_id, character_id),
            ).fetchall()
        return [UnlockedItem.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Messages (append-only)
    # ------------------------------------------------------------------

    def append_messages(self, messages: list[ConversationMessage]) -> None:
        with self._conn() as conn:
            conn.executemany(
                "INSERT INTO messages (session_id, role, content, emotion, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                [
                    (m.session_id, m.role, m.content, m.emotion, m.created_at.isoformat())
                    for m in messages
                ],
            )

    def get_messages(self, session_id: str, limit: int | None = None) -> list[ConversationMessage]:
        """Messages of a session in order; with `limit`, only the most recent ones."""
        with self._conn() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY id", (session_id,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM (SELECT * FROM messages WHERE session_id = ? "
                    "ORDER BY id DESC LIMIT ?) ORDER BY id",
                    (session_id, limit),
                ).fetchall()
        return [
            ConversationMessage.model_validate({k: v for k, v in dict(r).items() if k != "id"})
            for r in rows
        ]
