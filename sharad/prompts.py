"""Handlebars prompt rendering for model requests.

The transport owns the wire format; these templates turn a RequestContext
into prompt text. Completion backends get SYSTEM_TEMPLATE followed by
TRANSCRIPT_TEMPLATE; chat backends get SYSTEM_TEMPLATE as the system message
and the history as alternating user/assistant messages.
"""

import json
from collections.abc import Callable
from typing import Any

import pybars

from sharad.errors import PromptError
from sharad.models import RequestContext

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


SYSTEM_TEMPLATE = """\
You are the narrator of an interactive story. Always write in {{language}}.
Answer the player with narration. Whenever the story changes the game state,
also write the matching function call on its own line, for example:
create_character(name="Rin")
add_item(character="Rin", item="sword")
Only use these functions:
{{{functions}}}

Current state:
{{{json state}}}
"""

TRANSCRIPT_TEMPLATE = """\
{{#each history}}
Player: {{{player_input}}}
Narrator: {{{narrative}}}

{{/each}}
Player: {{{player_input}}}
Narrator:"""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_json(this, value):
    """{{{json value}}} — compact JSON dump."""
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


_HELPERS: dict[str, Callable] = {
    "json": _helper_json,
}


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


def render_system(context: RequestContext) -> str:
    return render_prompt(SYSTEM_TEMPLATE, context.model_dump())


def render_completion(context: RequestContext) -> str:
    """System instructions plus the conversation transcript, for completion APIs."""
    data = context.model_dump()
    return render_prompt(SYSTEM_TEMPLATE, data) + "\n" + render_prompt(TRANSCRIPT_TEMPLATE, data)


def chat_messages(context: RequestContext) -> list[dict[str, str]]:
    """OpenAI-style chat messages for the same context."""
    messages = [{"role": "system", "content": render_system(context)}]
    for turn in context.history:
        messages.append({"role": "user", "content": turn.player_input})
        messages.append({"role": "assistant", "content": turn.narrative})
    messages.append({"role": "user", "content": context.player_input})
    return messages
