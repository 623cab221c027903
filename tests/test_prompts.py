import pytest

from sharad.errors import PromptError
from sharad.models import ContextTurn, RequestContext
from sharad.prompts import chat_messages, render_completion, render_prompt, render_system


def _context(**overrides):
    data = dict(
        session_id="s",
        turn=3,
        player_input="I draw my sword",
        history=[
            ContextTurn(player_input="look around", narrative="The inn is quiet."),
            ContextTurn(player_input="order ale", narrative="The keeper pours."),
        ],
        state={"characters": [{"id": "rin", "name": "Rin"}], "flags": {}},
        functions="add_item(item: string) — Create an item.",
        language="English",
    )
    data.update(overrides)
    return RequestContext(**data)


# ── render_prompt ───────────────────────────────────────────


def test_render_prompt_basic():
    assert render_prompt("Hello {{name}}", {"name": "Rin"}) == "Hello Rin"


def test_render_prompt_json_helper():
    assert render_prompt("{{{json x}}}", {"x": {"b": 1, "a": [True]}}) == '{"a": [true], "b": 1}'


def test_render_prompt_bad_template():
    with pytest.raises(PromptError):
        render_prompt("{{> missing_partial}}", {})


# ── Request prompts ─────────────────────────────────────────


def test_system_prompt_contains_functions_state_and_language():
    text = render_system(_context(language="Deutsch"))
    assert "Always write in Deutsch." in text
    assert "add_item(item: string) — Create an item." in text
    assert '"name": "Rin"' in text


def test_completion_prompt_ends_with_player_turn():
    text = render_completion(_context())
    assert "Player: look around\nNarrator: The inn is quiet." in text
    assert text.endswith("Player: I draw my sword\nNarrator:")
    assert text.index("order ale") < text.index("I draw my sword")


def test_chat_messages_alternate_roles():
    messages = chat_messages(_context())
    assert [m["role"] for m in messages] == ["system", "user", "assistant", "user", "assistant", "user"]
    assert messages[-1]["content"] == "I draw my sword"
    assert messages[2]["content"] == "The inn is quiet."
