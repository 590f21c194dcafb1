"""Generation backend and the deterministic fallback table.

The turn pipeline asks a GenerationBackend for one beat per free-form turn.
LLMGenerationBackend renders the dialogue prompt, calls the LLM and validates
its JSON answer into a GeneratedBeat. Anything unusable raises MalformedOutput.

When the backend produces nothing (timeout, transport error, bad output),
fallback_beat() supplies a beat that depends only on the relationship stage
and the character's authored fallback lines.
"""

from __future__ import annotations

import json
import logging
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from novel_engine.errors import MalformedOutput
from novel_engine.llm import LLM
from novel_engine.models import (
    Character,
    ConversationMessage,
    GeneratedBeat,
    Stage,
    StageParameters,
)
from novel_engine.prompts import DEFAULT_DIALOGUE_PROMPT, build_context, render_prompt

logger = logging.getLogger(__name__)


class GenerationContext(BaseModel):
    """What the backend knows about the turn being generated."""

    message: str
    stage: Stage
    history: list[ConversationMessage] = Field(default_factory=list)


class GenerationBackend(Protocol):
    async def generate(
        self,
        context: GenerationContext,
        persona: Character,
        stage_parameters: StageParameters,
    ) -> GeneratedBeat: ...


def parse_beat(text: str) -> GeneratedBeat:
    """Parse an LLM answer into a beat, stripping markdown fences."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise MalformedOutput(f"Dialogue output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedOutput(f"Dialogue output must be a JSON object, got {type(data).__name__}")
    try:
        return GeneratedBeat.model_validate(data)
    except ValidationError as e:
        raise MalformedOutput(f"Dialogue output failed validation: {e.error_count()} errors") from e


class LLMGenerationBackend:
    def __init__(self, llm: LLM, template: str | None = None) -> None:
        self._llm = llm
        self._template = template or DEFAULT_DIALOGUE_PROMPT

    async def generate(
        self,
        context: GenerationContext,
        persona: Character,
        stage_parameters: StageParameters,
    ) -> GeneratedBeat:
        prompt = render_prompt(self._template, build_context(
            persona, context.stage, stage_parameters, context.history, context.message,
        ))
        output = await self._llm("dialogue", prompt)
        beat = parse_beat(output)
        logger.debug("beat for %s: emotion=%s delta=%d", persona.id, beat.emotion, beat.suggested_delta)
        return beat


# ---------------------------------------------------------------------------
# Fallback table
# ---------------------------------------------------------------------------

_DEFAULT_FALLBACKS: dict[Stage, tuple[str, str]] = {
    "stranger": ("...Sorry, what were you saying?", "neutral"),
    "acquaintance": ("Hm, let me think about that for a second.", "thoughtful"),
    "close": ("You always know how to get me talking. Give me a moment.", "smile"),
    "intimate": ("I'm here. I just want to find the right words for you.", "gentle"),
    "lover": ("Stay with me a little longer, okay?", "affectionate"),
}


def fallback_beat(stage: Stage, character: Character) -> GeneratedBeat:
    """Deterministic beat for `stage`. Same inputs, same beat, no side effects."""
    params = character.stage_parameters.get(stage)
    default_line, default_emotion = _DEFAULT_FALLBACKS[stage]
    if params is not None and params.fallback_lines:
        line = params.fallback_lines[0]
    else:
        line = default_line
    emotion = (params.fallback_emotion if params is not None else None) or default_emotion
    return GeneratedBeat(dialogue=line, emotion=emotion, suggested_delta=0)
