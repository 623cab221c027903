"""Tests for sharad.parser — call syntax, JSON payloads, malformed input, narrative."""

from sharad.parser import parse_response
from sharad.schema import SchemaRegistry

KNOWN = SchemaRegistry().names()


def _parse(text):
    return parse_response(text, KNOWN)


# ---------------------------------------------------------------------------
# Call syntax
# ---------------------------------------------------------------------------

class TestCallSyntax:
    def test_call_on_own_line(self) -> None:
        parsed = _parse('Rin steps out of the rain.\ncreate_character(name="Rin")\nThe wind howls.')
        assert len(parsed.candidates) == 1
        cand = parsed.candidates[0]
        assert cand.name == "create_character"
        assert cand.arguments == {"name": "Rin"}
        assert cand.pending
        assert parsed.narrative == "Rin steps out of the rain.\n\nThe wind howls."

    def test_inline_backticked_call_is_cut_cleanly(self) -> None:
        parsed = _parse('She takes it `add_item(character="Rin", item="sword")` and smiles.')
        assert parsed.candidates[0].arguments == {"character": "Rin", "item": "sword"}
        assert parsed.narrative == "She takes it and smiles."

    def test_double_bracket_wrapper(self) -> None:
        parsed = _parse('The gate creaks. [[set_flag(key="gate", value="open")]]')
        assert parsed.candidates[0].arguments == {"key": "gate", "value": "open"}
        assert parsed.narrative == "The gate creaks."

    def test_json_style_literals(self) -> None:
        parsed = _parse("create_character(name='Rin', attributes={'hp': 10, 'brave': true}, id=null)")
        assert parsed.candidates[0].arguments == {
            "name": "Rin", "attributes": {"hp": 10, "brave": True}, "id": None,
        }

    def test_prose_with_parentheses_is_not_a_call(self) -> None:
        text = 'Rin(smiling): "Hello." The map (old, torn) lies open.'
        parsed = _parse(text)
        assert parsed.candidates == []
        assert parsed.narrative == text

    def test_unknown_snake_case_function_is_still_a_candidate(self) -> None:
        parsed = _parse('cast_fireball(target="Rin")')
        assert parsed.candidates[0].name == "cast_fireball"
        assert parsed.candidates[0].pending

    def test_single_word_known_function(self) -> None:
        parsed = parse_response("ping(times=2)", known_functions=["ping"])
        assert parsed.candidates[0].arguments == {"times": 2}

    def test_method_call_in_prose_is_ignored(self) -> None:
        parsed = _parse("The sign reads os.path_join(a) in runes.")
        assert parsed.candidates == []


# ---------------------------------------------------------------------------
# JSON payloads
# ---------------------------------------------------------------------------

class TestJsonPayloads:
    def test_json_fence(self) -> None:
        text = 'The door opens.\n```json\n{"name": "set_flag", "arguments": {"key": "door", "value": "open"}}\n```\nDone.'
        parsed = _parse(text)
        assert [(c.name, c.arguments) for c in parsed.candidates] == [
            ("set_flag", {"key": "door", "value": "open"}),
        ]
        assert parsed.narrative == "The door opens.\n\nDone."

    def test_tool_call_tag(self) -> None:
        parsed = _parse('A lamp flickers. <tool_call>{"name": "add_item", "arguments": {"item": "lamp"}}</tool_call>')
        assert parsed.candidates[0].arguments == {"item": "lamp"}
        assert parsed.narrative == "A lamp flickers."

    def test_array_of_calls_keeps_order(self) -> None:
        text = (
            "```json\n"
            '[{"name": "create_character", "arguments": {"name": "Rin"}},'
            ' {"name": "add_item", "arguments": {"item": "sword", "character": "Rin"}}]\n'
            "```"
        )
        parsed = _parse(text)
        assert [c.name for c in parsed.candidates] == ["create_character", "add_item"]
        assert parsed.narrative == ""

    def test_openai_function_shape_with_string_arguments(self) -> None:
        text = '<call>{"function": {"name": "set_flag", "arguments": "{\\"key\\": \\"rain\\", \\"value\\": true}"}}</call>'
        parsed = _parse(text)
        assert parsed.candidates[0].name == "set_flag"
        assert parsed.candidates[0].arguments == {"key": "rain", "value": True}

    def test_untagged_fence_with_json_body(self) -> None:
        parsed = _parse('```\n{"name": "add_item", "args": {"item": "coin"}}\n```')
        assert parsed.candidates[0].arguments == {"item": "coin"}

    def test_plain_code_fence_is_narrative(self) -> None:
        text = "The runes read:\n```\nfor ever and ever\n```"
        parsed = _parse(text)
        assert parsed.candidates == []
        assert parsed.narrative == text


# ---------------------------------------------------------------------------
# Malformed payloads never raise
# ---------------------------------------------------------------------------

class TestMalformed:
    def test_invalid_json_keeps_name_hint(self) -> None:
        parsed = _parse('Hm.\n```json\n{"name": "add_item", "arguments": {"item": \n```\nOk.')
        cand = parsed.candidates[0]
        assert cand.rejected and cand.reason == "malformed"
        assert cand.name == "add_item"
        assert cand.detail.startswith("invalid JSON")
        assert parsed.narrative == "Hm.\n\nOk."

    def test_unterminated_tag_runs_to_end(self) -> None:
        parsed = _parse('The storm breaks. <call>{"name": "set_flag", "arguments": {')
        assert parsed.candidates[0].reason == "malformed"
        assert parsed.narrative == "The storm breaks."

    def test_unbalanced_parentheses(self) -> None:
        parsed = _parse('add_item(item="sword"\nShe runs.')
        cand = parsed.candidates[0]
        assert cand.reason == "malformed"
        assert cand.detail == "unbalanced parentheses"
        assert parsed.narrative == "She runs."

    def test_positional_arguments_are_malformed(self) -> None:
        parsed = _parse('add_item("sword")')
        assert parsed.candidates[0].reason == "malformed"
        assert "positional" in parsed.candidates[0].detail

    def test_non_literal_value_is_malformed(self) -> None:
        parsed = _parse("add_item(item=__import__('os'))")
        assert parsed.candidates[0].reason == "malformed"

    def test_payload_without_name(self) -> None:
        parsed = _parse('<call>{"arguments": {"item": "sword"}}</call>')
        assert parsed.candidates[0].reason == "malformed"
        assert parsed.candidates[0].name == ""

    def test_unhashable_dict_key_is_malformed(self) -> None:
        parsed = _parse("The wind rises.\nset_flag(key={[1]: 2}, value=1)")
        assert parsed.candidates[0].reason == "malformed"
        assert parsed.narrative == "The wind rises."

    def test_non_string_dict_key_is_malformed(self) -> None:
        parsed = _parse('create_character(name="Rin", attributes={1: 10})')
        assert parsed.candidates[0].reason == "malformed"
        assert "keys must be strings" in parsed.candidates[0].detail

    def test_values_json_cannot_hold_are_malformed(self) -> None:
        text = "\n".join([
            'set_flag(key="gate", value={1, 2})',
            "cast_spell(power=1j)",
            'set_flag(key="gate", value=b"open")',
            'set_flag(key="gate", value=...)',
        ])
        parsed = _parse(text)
        assert [c.reason for c in parsed.candidates] == ["malformed"] * 4
        assert all(c.arguments == {} for c in parsed.candidates)

    def test_deeply_nested_json_is_malformed(self) -> None:
        parsed = _parse("<call>" + "[" * 100000 + "]" * 100000 + "</call>")
        assert [c.reason for c in parsed.candidates] == ["malformed"]

    def test_deeply_nested_string_arguments_are_malformed(self) -> None:
        inner = "[" * 100000 + "]" * 100000
        parsed = _parse('<call>{"name": "set_flag", "arguments": "' + inner + '"}</call>')
        cand = parsed.candidates[0]
        assert cand.reason == "malformed"
        assert cand.name == "set_flag"

    def test_malformed_does_not_stop_later_calls(self) -> None:
        text = 'add_item("sword")\nset_flag(key="storm", value=true)'
        parsed = _parse(text)
        assert [c.status for c in parsed.candidates] == ["rejected", "pending"]


# ---------------------------------------------------------------------------
# Ordering and narrative
# ---------------------------------------------------------------------------

class TestOrderingAndNarrative:
    def test_mixed_encodings_in_textual_order(self) -> None:
        text = (
            'create_character(name="Rin")\n'
            '<call>{"name": "add_item", "arguments": {"item": "sword", "character": "Rin"}}</call>\n'
            'set_flag(key="armed", value=true)'
        )
        parsed = _parse(text)
        assert [c.name for c in parsed.candidates] == ["create_character", "add_item", "set_flag"]
        starts = [c.span[0] for c in parsed.candidates]
        assert starts == sorted(starts)

    def test_text_without_calls_is_returned_unmodified(self) -> None:
        text = "  You look around.\n\n\n\nNothing stirs.  "
        parsed = _parse(text)
        assert parsed.candidates == []
        assert parsed.narrative == text

    def test_parse_is_idempotent_on_narrative(self) -> None:
        first = _parse('The inn is warm. `add_item(item="mug")` Someone laughs.\n<call>{"name": "x"</call>')
        second = _parse(first.narrative)
        assert second.candidates == []
        assert second.narrative == first.narrative

    def test_parse_is_idempotent_on_raw_text(self) -> None:
        text = (
            'Rin draws her blade. create_character(name="Rin", attributes={"hp": 10})\n'
            '```json\n[{"name": "add_item", "arguments": {"character": "Rin", "item": "sword"}}, 7]\n```\n'
            'add_item("lamp")\n'
            '<call>{"name": "set_flag", "arguments": {</call>\n'
            "The rain stops."
        )

        def summary(parsed):
            return [(c.name, c.arguments, c.span, c.status, c.reason) for c in parsed.candidates]

        first, second = _parse(text), _parse(text)
        assert summary(first) == summary(second)
        assert first.narrative == second.narrative
        assert [c.status for c in first.candidates] == [
            "pending", "pending", "rejected", "rejected", "rejected",
        ]
