"""Handlebars prompt rendering for the character dialogue prompt."""

from collections.abc import Callable
from typing import Any

import pybars

from novel_engine.errors import BackendError
from novel_engine.models import Character, ConversationMessage, Stage, StageParameters


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(BackendError):
    """Raised when a Handlebars template fails to compile or render."""


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}}: iterate over the last N items."""
    result = []
    for item in list(items)[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "last": _helper_last,
}


DEFAULT_DIALOGUE_PROMPT = """\
You are {{{char.name}}}. {{{char.description}}}

Your relationship with the user is at the "{{stage}}" stage.
Tone: {{{params.tone}}}
{{#if params.speech_style}}Speech style: {{{params.speech_style}}}
{{/if}}
{{#if params.example_lines}}Example lines at this stage:
{{#each params.example_lines}}- {{{this}}}
{{/each}}{{/if}}
Conversation so far:
{{#each msgs}}{{{speaker}}}: {{{content}}}
{{/each}}User: {{{message}}}

Reply in character. Return only a JSON object:
{"dialogue": "<what you say>", "emotion": "<one word>", "suggested_delta": <integer -20..20>,
 "suggested_choices": [{"id": "<slug>", "text": "<reply option>"}]}
"""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return compiled(context, helpers=_HELPERS)
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


def build_context(
    character: Character,
    stage: Stage,
    params: StageParameters,
    history: list[ConversationMessage],
    message: str,
) -> dict[str, Any]:
    """Assemble template variables for the dialogue prompt."""
    msgs = [
        {
            "role": m.role,
            "content": m.content,
            "emotion": m.emotion or "",
            "is_user": m.role == "user",
            "speaker": {"user": "User", "narrator": "Narrator"}.get(m.role, character.name),
        }
        for m in history
    ]
    return {
        "char": {"name": character.name, "description": character.description},
        "stage": stage,
        "params": params.model_dump(),
        "msgs": msgs,
        "message": message,
    }
