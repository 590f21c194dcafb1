"""Free-form turn tests: debit, generation, fallback, refund, notifier.

The generation backend is an AsyncMock; the store is a real SQLite file under
pytest's tmp dir, so balance and commit behaviour are exercised for real.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from novel_engine.dialogue import LLMGenerationBackend
from novel_engine.errors import (
    BackendUnavailable,
    CharacterNotFound,
    InsufficientBalance,
    InvalidInput,
    LLMError,
    MalformedOutput,
    SessionNotFound,
)
from novel_engine.llm import HttpLLM
from novel_engine.models import GeneratedBeat, RelationshipRecord, SuggestedChoice
from novel_engine.pipeline.orchestrator import PipelineSettings, TurnEvent, TurnPipeline
from novel_engine.prompts import PromptError
from novel_engine.storage import Storage


# ── Helpers ──────────────────────────────────────────────


def _backend(result=None, side_effect=None) -> MagicMock:
    backend = MagicMock()
    backend.generate = AsyncMock(return_value=result, side_effect=side_effect)
    return backend


def _beat(dialogue: str = "Hey, you.", delta: int = 5, **kw) -> GeneratedBeat:
    return GeneratedBeat(dialogue=dialogue, emotion="smile", suggested_delta=delta, **kw)


def _pipeline(storage: Storage, backend=None, notifier=None, **settings) -> TurnPipeline:
    return TurnPipeline(storage, backend=backend, notifier=notifier,
                        settings=PipelineSettings(**settings))


# ── Happy path ───────────────────────────────────────────


async def test_turn_applies_backend_beat(seeded: Storage):
    pipeline = _pipeline(seeded, _backend(_beat(
        suggested_choices=[SuggestedChoice(id="wave", text="Wave back")],
    )))
    result = await pipeline.run_turn("u1", "jun", "  Hello!  ")

    assert result.dialogue == "Hey, you."
    assert result.emotion == "smile"
    assert result.relationship_delta == 5
    assert result.choices[0].id == "wave"
    assert result.balance == 9
    assert not result.used_fallback
    assert not result.scenario_completed

    record = seeded.get_relationship("u1", "jun")
    assert (record.affection, record.trust, record.intimacy) == (5, 5, 5)
    assert record.total_interactions == 1

    messages = seeded.get_messages(result.session_id)
    assert [(m.role, m.content) for m in messages] == [("user", "Hello!"), ("character", "Hey, you.")]


async def test_session_reused_and_history_passed(seeded: Storage):
    backend = _backend(_beat())
    pipeline = _pipeline(seeded, backend, history_window=3)
    first = await pipeline.run_turn("u1", "jun", "one")
    second = await pipeline.run_turn("u1", "jun", "two", session_id=first.session_id)
    third = await pipeline.run_turn("u1", "jun", "three")

    assert first.session_id == second.session_id == third.session_id
    context, persona, params = backend.generate.call_args[0]
    assert context.message == "three"
    assert [m.content for m in context.history] == ["Hey, you.", "two", "Hey, you."]
    assert persona.id == "jun"
    assert params.tone == "guarded"


async def test_stage_transition_reported(seeded: Storage):
    seeded.save_relationship(RelationshipRecord(user_id="u1", character_id="jun",
                                                affection=15, trust=15, intimacy=15))
    result = await _pipeline(seeded, _backend(_beat(delta=10))).run_turn("u1", "jun", "hi")
    assert result.new_stage is not None
    assert result.new_stage.from_stage == "stranger"
    assert result.new_stage.to_stage == "acquaintance"


# ── Input validation + debit ─────────────────────────────


@pytest.mark.parametrize("message", ["", "   ", "x" * 2001])
async def test_invalid_message_not_charged(seeded: Storage, message: str):
    with pytest.raises(InvalidInput):
        await _pipeline(seeded, _backend(_beat())).run_turn("u1", "jun", message)
    assert seeded.get_balance("u1") == 10


async def test_unknown_character_not_charged(seeded: Storage):
    with pytest.raises(CharacterNotFound):
        await _pipeline(seeded, _backend(_beat())).run_turn("u1", "ghost", "hi")
    assert seeded.get_balance("u1") == 10


async def test_insufficient_balance(seeded: Storage):
    backend = _backend(_beat())
    with pytest.raises(InsufficientBalance) as exc:
        await _pipeline(seeded, backend).run_turn("broke", "jun", "hi")
    assert exc.value.current == 0
    assert exc.value.required == 1
    backend.generate.assert_not_called()
    assert seeded.active_sessions("broke", "jun") == []


async def test_turn_cost_setting(seeded: Storage):
    result = await _pipeline(seeded, _backend(_beat()), turn_cost=3).run_turn("u1", "jun", "hi")
    assert result.balance == 7


# ── Fallback ─────────────────────────────────────────────


@pytest.mark.parametrize("error", [
    LLMError("down"),
    MalformedOutput("garbage"),
    PromptError("bad template"),
])
async def test_backend_error_uses_fallback(seeded: Storage, error: Exception, caplog):
    with caplog.at_level(logging.WARNING):
        result = await _pipeline(seeded, _backend(side_effect=error)).run_turn("u1", "jun", "hi")
    assert result.used_fallback
    assert result.dialogue == "...Sorry, what?"
    assert result.relationship_delta == 0
    assert result.balance == 9
    assert "Generation failed" in caplog.text


async def test_unexpected_backend_exception_uses_fallback(seeded: Storage, caplog):
    with caplog.at_level(logging.ERROR):
        result = await _pipeline(seeded, _backend(side_effect=RuntimeError("bug"))).run_turn("u1", "jun", "hi")
    assert result.used_fallback
    assert result.balance == 9
    assert seeded.get_relationship("u1", "jun").total_interactions == 1
    assert "Generation backend crashed" in caplog.text


async def test_http_read_error_uses_fallback(seeded: Storage):
    backend = LLMGenerationBackend(HttpLLM("http://llm.invalid"))
    with patch("httpx.AsyncClient.post", AsyncMock(side_effect=httpx.ReadError("connection reset"))):
        result = await _pipeline(seeded, backend).run_turn("u1", "jun", "hi")
    assert result.used_fallback
    assert result.balance == 9


async def test_timeout_uses_fallback(seeded: Storage):
    async def slow(*args):
        await asyncio.sleep(5)

    backend = MagicMock()
    backend.generate = slow
    result = await _pipeline(seeded, backend, generation_timeout=0.01).run_turn("u1", "jun", "hi")
    assert result.used_fallback
    assert result.balance == 9


async def test_no_backend_configured_uses_fallback(seeded: Storage):
    result = await _pipeline(seeded).run_turn("u1", "jun", "hi")
    assert result.used_fallback
    assert seeded.get_relationship("u1", "jun").total_interactions == 1


async def test_fallback_disabled_refunds(seeded: Storage):
    pipeline = _pipeline(seeded, _backend(side_effect=LLMError("down")), fallback_enabled=False)
    with pytest.raises(BackendUnavailable):
        await pipeline.run_turn("u1", "jun", "hi")
    assert seeded.get_balance("u1") == 10
    assert seeded.get_relationship("u1", "jun") is None


# ── Refunds ──────────────────────────────────────────────


async def test_session_error_after_debit_refunds(seeded: Storage):
    with pytest.raises(SessionNotFound):
        await _pipeline(seeded, _backend(_beat())).run_turn("u1", "jun", "hi", session_id="nope")
    assert seeded.get_balance("u1") == 10


async def test_commit_failure_leaves_no_partial_state(seeded: Storage):
    pipeline = _pipeline(seeded, _backend(_beat()))
    with patch.object(seeded, "append_messages", side_effect=RuntimeError("disk full")):
        with pytest.raises(RuntimeError):
            await pipeline.run_turn("u1", "jun", "hi")
    assert seeded.get_relationship("u1", "jun") is None
    assert seeded.get_balance("u1") == 10


async def test_refund_failure_is_logged_and_original_error_raised(seeded: Storage, caplog):
    pipeline = _pipeline(seeded, _backend(_beat()))
    with patch.object(seeded, "credit", side_effect=RuntimeError("db gone")):
        with caplog.at_level(logging.ERROR):
            with pytest.raises(SessionNotFound):
                await pipeline.run_turn("u1", "jun", "hi", session_id="nope")
    assert "Refund of 1 for user=u1 failed" in caplog.text
    assert seeded.get_balance("u1") == 9


async def test_cancellation_after_debit_refunds(seeded: Storage):
    started = asyncio.Event()

    async def hang(*args):
        started.set()
        await asyncio.Event().wait()

    backend = MagicMock()
    backend.generate = hang
    task = asyncio.create_task(_pipeline(seeded, backend).run_turn("u1", "jun", "hi"))
    await started.wait()
    assert seeded.get_balance("u1") == 9

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert seeded.get_balance("u1") == 10
    assert seeded.get_relationship("u1", "jun") is None


# ── Notifier ─────────────────────────────────────────────


async def test_notifier_receives_event(seeded: Storage):
    notifier = AsyncMock()
    pipeline = _pipeline(seeded, _backend(_beat()), notifier=notifier)
    result = await pipeline.run_turn("u1", "jun", "hi")
    await pipeline.drain()
    notifier.assert_awaited_once_with(TurnEvent(
        user_id="u1", character_id="jun", session_id=result.session_id, action="message_sent",
    ))


async def test_notifier_failure_does_not_fail_turn(seeded: Storage, caplog):
    notifier = AsyncMock(side_effect=RuntimeError("webhook down"))
    pipeline = _pipeline(seeded, _backend(_beat()), notifier=notifier)
    with caplog.at_level(logging.ERROR):
        result = await pipeline.run_turn("u1", "jun", "hi")
        await pipeline.drain()
    assert result.balance == 9
    assert "Notifier failed" in caplog.text


async def test_notifier_not_called_on_failed_turn(seeded: Storage):
    notifier = AsyncMock()
    pipeline = _pipeline(seeded, _backend(_beat()), notifier=notifier)
    with pytest.raises(SessionNotFound):
        await pipeline.run_turn("u1", "jun", "hi", session_id="nope")
    await pipeline.drain()
    notifier.assert_not_called()


@pytest.mark.parametrize("first_turn", [False, True])
async def test_choice_on_free_form_session_not_charged(seeded: Storage, first_turn: bool):
    pipeline = _pipeline(seeded, _backend(_beat()))
    session_id = None
    if first_turn:
        session_id = (await pipeline.run_turn("u1", "jun", "hi")).session_id
    with pytest.raises(InvalidInput):
        await pipeline.run_turn("u1", "jun", "hi", session_id=session_id, choice_id="A")
    assert seeded.get_balance("u1") == (9 if first_turn else 10)
