"""Response parser — narrative text and function-call candidates from raw model output.

The model is not a trusted structured-data source. Two encodings are
recognised, in any mix:

  Call syntax   create_character(name="Rin", attributes={"hp": 10})
                Name is a snake_case word directly followed by "(". A word
                without an underscore counts only when it is a known
                function name, so prose like "Rin(smiling):" is left alone.
                Values are JSON-shaped literals in Python or JSON spelling:
                strings, numbers, booleans, null, lists and string-keyed
                dicts. Anything else is malformed. Surrounding `backticks`
                or [[double brackets]] are consumed with the call.

  JSON payload  inside ```json / ```call / ```tool fences, untagged fences
                whose body starts with { or [, or <call>, <tool_call>,
                <function_call> tags:
                  {"name": "add_item", "arguments": {"item": "sword"}}
                  {"function": {"name": "...", "arguments": "<json string>"}}
                  [ ...several of the above... ]

parse_response never raises for a bad payload: it emits a candidate with
status "rejected" / reason "malformed" and keeps going. Candidates come out
in order of appearance; the narrative is the text with payloads removed.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, Field

from sharad.errors import ParseError
from sharad.models import FunctionCallCandidate

logger = logging.getLogger(__name__)

_CALL_START = re.compile(r"(?<![\w.])([A-Za-z_][A-Za-z0-9_]*)\(")
_TAG = re.compile(r"<(call|tool_call|function_call)>", re.IGNORECASE)
_PAYLOAD_FENCE_TAGS = {"json", "call", "tool", "tool_call", "function_call"}
_NAME_HINT = re.compile(r'"(?:name|function)"\s*:\s*"([^"]*)"')
_JSON_CONSTANTS = {"true": True, "false": False, "null": None}
_JSON_SCALARS = (str, int, float, bool, type(None))


class ParsedResponse(BaseModel):
    narrative: str
    candidates: list[FunctionCallCandidate] = Field(default_factory=list)


def parse_response(text: str, known_functions: Iterable[str] | None = None) -> ParsedResponse:
    """Split raw model output into narrative text and ordered call candidates."""
    known = set(known_functions or ())
    found: list[tuple[tuple[int, int], FunctionCallCandidate]] = []

    blocks = list(_payload_blocks(text))
    for start, end, body in blocks:
        for cand in _decode_block(body, (start, end)):
            found.append(((start, end), cand))

    masked = [(s, e) for s, e, _ in blocks]
    for span, cand in _scan_calls(text, masked, known):
        found.append((span, cand))

    found.sort(key=lambda pair: pair[0][0])
    candidates = [cand for _, cand in found]
    if not candidates:
        return ParsedResponse(narrative=text, candidates=[])

    spans = sorted({span for span, _ in found})
    narrative = _remove_spans(text, spans)
    logger.debug(
        "Parsed %d candidates (%d malformed)",
        len(candidates), sum(1 for c in candidates if c.rejected),
    )
    return ParsedResponse(narrative=narrative, candidates=candidates)


# ---------------------------------------------------------------------------
# JSON payload blocks
# ---------------------------------------------------------------------------

def _payload_blocks(text: str) -> Iterable[tuple[int, int, str | None]]:
    """Yield (start, end, body) for fenced and tagged payloads.

    body is None for an unterminated payload, which then runs to the end
    of the text.
    """
    pos = 0
    while True:
        fence = text.find("```", pos)
        tag = _TAG.search(text, pos)
        tag_start = tag.start() if tag else -1
        if fence == -1 and tag_start == -1:
            return

        if fence != -1 and (tag_start == -1 or fence < tag_start):
            line_end = text.find("\n", fence)
            if line_end == -1:
                return
            label = text[fence + 3:line_end].strip().lower()
            close = text.find("```", line_end)
            body = text[line_end + 1:close] if close != -1 else ""
            is_payload = label in _PAYLOAD_FENCE_TAGS or (
                not label and body.lstrip().startswith(("{", "["))
            )
            if close == -1:
                if label in _PAYLOAD_FENCE_TAGS:
                    yield fence, len(text), None
                    return
                pos = line_end + 1
                continue
            if is_payload:
                yield fence, close + 3, body
            pos = close + 3
        else:
            closing = re.compile(rf"</{tag.group(1)}>", re.IGNORECASE).search(text, tag.end())
            if closing is None:
                yield tag_start, len(text), None
                return
            yield tag_start, closing.end(), text[tag.end():closing.start()]
            pos = closing.end()


def _decode_block(body: str | None, span: tuple[int, int]) -> list[FunctionCallCandidate]:
    if body is None:
        return [_malformed("", span, "unterminated payload")]
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        hint = _NAME_HINT.search(body)
        return [_malformed(hint.group(1) if hint else "", span, f"invalid JSON: {e.msg}")]
    except RecursionError:
        return [_malformed("", span, "payload is nested too deeply")]

    entries = data if isinstance(data, list) else [data]
    candidates = []
    for entry in entries:
        try:
            name, arguments = _json_call(entry)
        except ParseError as e:
            name = entry.get("name", "") if isinstance(entry, dict) else ""
            candidates.append(_malformed(name if isinstance(name, str) else "", span, str(e)))
            continue
        candidates.append(FunctionCallCandidate(name=name, arguments=arguments, span=span))
    return candidates


def _json_call(entry: Any) -> tuple[str, dict[str, Any]]:
    if not isinstance(entry, dict):
        raise ParseError("call payload must be an object")
    if isinstance(entry.get("function"), dict):
        entry = entry["function"]

    name = entry.get("name", entry.get("function"))
    if not isinstance(name, str) or not name.strip():
        raise ParseError("call payload has no function name")

    arguments: Any = {}
    for key in ("arguments", "args", "parameters"):
        if key in entry:
            arguments = entry[key]
            break
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ParseError(f"arguments are not valid JSON: {e.msg}") from e
        except RecursionError as e:
            raise ParseError("arguments are nested too deeply") from e
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ParseError("arguments must be an object")
    return name.strip(), arguments


# ---------------------------------------------------------------------------
# Call syntax
# ---------------------------------------------------------------------------

def _scan_calls(
    text: str, masked: list[tuple[int, int]], known: set[str]
) -> Iterable[tuple[tuple[int, int], FunctionCallCandidate]]:
    pos = 0
    for m in _CALL_START.finditer(text):
        start = m.start()
        if start < pos or any(s <= start < e for s, e in masked):
            continue
        name = m.group(1)
        if name not in known and "_" not in name.strip("_"):
            continue

        end = _match_paren(text, m.end() - 1)
        if end is None:
            line_end = text.find("\n", start)
            span = (start, len(text) if line_end == -1 else line_end)
            yield span, _malformed(name, span, "unbalanced parentheses")
            pos = span[1]
            continue

        span = _widen(text, start, end)
        try:
            arguments = _decode_call(text[start:end])
        except ParseError as e:
            yield span, _malformed(name, span, str(e))
        else:
            yield span, FunctionCallCandidate(name=name, arguments=arguments, span=span)
        pos = end


def _match_paren(text: str, open_idx: int) -> int | None:
    """Index just past the parenthesis closing the one at ``open_idx``."""
    depth = 0
    quote: str | None = None
    i = open_idx
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return None


def _widen(text: str, start: int, end: int) -> tuple[int, int]:
    """Include `backtick` or [[bracket]] wrappers in the span."""
    if start >= 1 and text[start - 1] == "`" and text[end:end + 1] == "`":
        return start - 1, end + 1
    if text[max(start - 2, 0):start] == "[[" and text[end:end + 2] == "]]":
        return start - 2, end + 2
    return start, end


def _decode_call(source: str) -> dict[str, Any]:
    try:
        tree = ast.parse(source, mode="eval")
    except (SyntaxError, ValueError, RecursionError) as e:
        raise ParseError(f"not a valid call: {e}") from e
    call = tree.body
    if not isinstance(call, ast.Call) or not isinstance(call.func, ast.Name):
        raise ParseError("not a plain function call")
    if call.args:
        raise ParseError("positional arguments are not supported")
    arguments: dict[str, Any] = {}
    for kw in call.keywords:
        if kw.arg is None:
            raise ParseError("argument unpacking is not supported")
        arguments[kw.arg] = _literal(kw.value)
    return arguments


def _literal(node: ast.expr) -> Any:
    if isinstance(node, ast.Name) and node.id in _JSON_CONSTANTS:
        return _JSON_CONSTANTS[node.id]
    if isinstance(node, (ast.List, ast.Tuple)):
        return [_literal(n) for n in node.elts]
    if isinstance(node, ast.Dict):
        if any(k is None for k in node.keys):
            raise ParseError("dict unpacking is not supported")
        result: dict[str, Any] = {}
        for k, v in zip(node.keys, node.values):
            key = _literal(k)
            if not isinstance(key, str):
                raise ParseError(f"dict keys must be strings: {ast.unparse(k)}")
            result[key] = _literal(v)
        return result
    try:
        value = ast.literal_eval(node)
    except (ValueError, TypeError, RecursionError) as e:
        raise ParseError(f"unsupported value: {ast.unparse(node)}") from e
    # only values that survive a JSON round trip
    if not isinstance(value, _JSON_SCALARS):
        raise ParseError(f"unsupported value: {ast.unparse(node)}")
    return value


# ---------------------------------------------------------------------------
# Narrative
# ---------------------------------------------------------------------------

def _malformed(name: str, span: tuple[int, int], detail: str) -> FunctionCallCandidate:
    cand = FunctionCallCandidate(name=name, span=span)
    cand.reject("malformed", detail)
    logger.debug("Malformed payload at %s: %s", span, detail)
    return cand


def _remove_spans(text: str, spans: list[tuple[int, int]]) -> str:
    pieces: list[str] = []
    last = 0
    for start, end in spans:
        if start < last:
            start = last
        if start > 0 and text[start - 1] == " ":
            if end < len(text) and text[end] == " ":
                end += 1
            elif end == len(text) or text[end] in ".,;:!?\n":
                start -= 1
        pieces.append(text[last:start])
        last = max(last, end)
    pieces.append(text[last:])

    lines = [line.rstrip() for line in "".join(pieces).split("\n")]
    narrative = "\n".join(lines)
    narrative = re.sub(r"\n{3,}", "\n\n", narrative)
    return narrative.strip()
