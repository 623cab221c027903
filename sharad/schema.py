"""Schema registry — the static catalog of game-mutation functions.

Each SchemaEntry lists its parameters in order with a semantic type:

  string         non-empty text (stripped)
  identifier     slug-shaped id; other text is slugified
  integer        whole number; numeric strings accepted
  number         int or float; numeric strings accepted, booleans refused
  boolean        true/false, or "true"/"false"/"yes"/"no"
  attributes     mapping of attribute name → number
  any            JSON scalar (string, number, boolean, null)
  character_ref  text naming a character (id or display name)
  item_ref       text naming an item (id or item type)

Reference types are only type-checked here; resolving them against the game
state is the dispatcher's job.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal

from sharad.errors import CallValidationError
from sharad.models import slugify

ParamType = Literal[
    "string",
    "identifier",
    "integer",
    "number",
    "boolean",
    "attributes",
    "any",
    "character_ref",
    "item_ref",
]


# ---------------------------------------------------------------------------
# Type coercion
# ---------------------------------------------------------------------------

def _string(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("expected non-empty text")
    return value.strip()


def _identifier(value: Any) -> str:
    slug = slugify(_string(value))
    if not slug:
        raise ValueError("expected an identifier")
    return slug


def _integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise ValueError("expected an integer")


def _number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text)
        except ValueError:
            value = float(text)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return value
    raise ValueError("expected a number")


def _boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no"):
        return False
    raise ValueError("expected true or false")


def _attributes(value: Any) -> dict[str, int | float]:
    if not isinstance(value, Mapping):
        raise ValueError("expected a mapping of attribute to number")
    return {_string(k): _number(v) for k, v in value.items()}


def _any(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise ValueError("expected a string, number, boolean or null")


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "string": _string,
    "identifier": _identifier,
    "integer": _integer,
    "number": _number,
    "boolean": _boolean,
    "attributes": _attributes,
    "any": _any,
    "character_ref": _string,
    "item_ref": _string,
}


def _max_len(limit: int) -> Callable[[Any], bool]:
    return lambda value: len(value) <= limit


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParamSpec:
    name: str
    type: ParamType
    required: bool = True
    predicate: Callable[[Any], bool] | None = None
    description: str = ""

    def coerce(self, value: Any) -> Any:
        try:
            coerced = _COERCERS[self.type](value)
        except (ValueError, TypeError) as e:
            raise CallValidationError("bad_parameters", f"{self.name}: {e}") from e
        if self.predicate is not None and not self.predicate(coerced):
            raise CallValidationError("bad_parameters", f"{self.name}: value {value!r} not allowed")
        return coerced


@dataclass(frozen=True)
class SchemaEntry:
    name: str
    description: str
    params: tuple[ParamSpec, ...] = ()

    def check(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        """Return coerced arguments, or raise CallValidationError("bad_parameters")."""
        known = {p.name for p in self.params}
        for key in arguments:
            if key not in known:
                raise CallValidationError("bad_parameters", f"{key}: unexpected parameter")
        checked: dict[str, Any] = {}
        for param in self.params:
            present = param.name in arguments and (
                arguments[param.name] is not None or param.type == "any"
            )
            if not present:
                if param.required:
                    raise CallValidationError("bad_parameters", f"{param.name}: missing")
                continue
            checked[param.name] = param.coerce(arguments[param.name])
        return checked

    def signature(self) -> str:
        parts = []
        for p in self.params:
            optional = "" if p.required else "?"
            parts.append(f"{p.name}{optional}: {p.type}")
        return f"{self.name}({', '.join(parts)})"


_name = _max_len(64)

DEFAULT_SCHEMAS: tuple[SchemaEntry, ...] = (
    SchemaEntry(
        "create_character",
        "Introduce a new character to the story.",
        (
            ParamSpec("name", "string", predicate=_name, description="display name"),
            ParamSpec("id", "identifier", required=False, predicate=_name),
            ParamSpec("attributes", "attributes", required=False),
        ),
    ),
    SchemaEntry(
        "deactivate_character",
        "Remove a character from play (dead, departed). They must hold no items.",
        (ParamSpec("character", "character_ref"),),
    ),
    SchemaEntry(
        "set_attribute",
        "Set a numeric attribute on a character.",
        (
            ParamSpec("character", "character_ref"),
            ParamSpec("attribute", "string", predicate=_name),
            ParamSpec("value", "number"),
        ),
    ),
    SchemaEntry(
        "adjust_attribute",
        "Add delta (may be negative) to a character attribute; missing attributes start at 0.",
        (
            ParamSpec("character", "character_ref"),
            ParamSpec("attribute", "string", predicate=_name),
            ParamSpec("delta", "number"),
        ),
    ),
    SchemaEntry(
        "add_item",
        "Create an item, given to a character or left in the world.",
        (
            ParamSpec("item", "string", predicate=_name, description="item type"),
            ParamSpec("character", "character_ref", required=False),
            ParamSpec("description", "string", required=False, predicate=_max_len(500)),
        ),
    ),
    SchemaEntry(
        "remove_item",
        "Destroy an item.",
        (
            ParamSpec("item", "item_ref"),
            ParamSpec("character", "character_ref", required=False, description="current holder"),
        ),
    ),
    SchemaEntry(
        "transfer_item",
        "Move an item to another character, or drop it when 'to' is omitted.",
        (
            ParamSpec("item", "item_ref"),
            ParamSpec("to", "character_ref", required=False),
            ParamSpec("character", "character_ref", required=False, description="current holder"),
        ),
    ),
    SchemaEntry(
        "set_flag",
        "Record a world fact.",
        (
            ParamSpec("key", "string", predicate=_name),
            ParamSpec("value", "any"),
        ),
    ),
)


class SchemaRegistry:
    """Read-only lookup of SchemaEntry by function name."""

    def __init__(self, entries: Iterable[SchemaEntry] = DEFAULT_SCHEMAS) -> None:
        table: dict[str, SchemaEntry] = {}
        for entry in entries:
            if entry.name in table:
                raise ValueError(f"Duplicate schema entry {entry.name!r}")
            table[entry.name] = entry
        self._entries = MappingProxyType(table)

    def lookup(self, name: str) -> SchemaEntry | None:
        return self._entries.get(name)

    def names(self) -> list[str]:
        return list(self._entries)

    def describe(self) -> str:
        """Function catalog for the model prompt, one line per function."""
        return "\n".join(
            f"{e.signature()} — {e.description}" for e in self._entries.values()
        )

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)
