"""Core domain models.

All components operate on these types. Pydantic is used for validation and
serialisation at every data boundary (persistence, admin API, request
context).
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

CandidateStatus = Literal["pending", "applied", "rejected"]

RejectionReason = Literal[
    "malformed",
    "unknown_function",
    "bad_parameters",
    "invalid_reference",
    "conflict",
    "aborted",
]

FlagValue = str | int | float | bool | None


def slugify(text: str) -> str:
    """Convert a display name to an identifier.

    "Rin the Bold" → "rin-the-bold"
    """
    text = unicodedata.normalize("NFKD", text)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return text.strip("-")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class Character(BaseModel):
    """A character in the story. Never deleted, only deactivated."""

    id: str
    name: str
    attributes: dict[str, int | float] = Field(default_factory=dict)
    inventory: list[str] = Field(default_factory=list)  # item ids, in acquisition order
    active: bool = True


class ItemInstance(BaseModel):
    """One concrete item in the world, optionally held by a character."""

    id: str
    item_type: str
    owner: str | None = None
    description: str = ""


class GameState(BaseModel):
    """Canonical game state. Owned by the StateStore."""

    characters: dict[str, Character] = Field(default_factory=dict)
    items: dict[str, ItemInstance] = Field(default_factory=dict)
    flags: dict[str, FlagValue] = Field(default_factory=dict)
    turn: int = 0

    def find_character(self, ref: str) -> Character | None:
        """Resolve a reference by id, by slugified name, then by display name."""
        if ref in self.characters:
            return self.characters[ref]
        slug = slugify(ref)
        if slug in self.characters:
            return self.characters[slug]
        folded = ref.strip().casefold()
        for char in self.characters.values():
            if char.name.casefold() == folded:
                return char
        return None

    def find_item(self, ref: str, owner: str | None = None) -> ItemInstance | None:
        """Resolve an item by id, else by item type.

        With ``owner`` set, a type match is searched in that character's
        inventory only, in inventory order.
        """
        item = self.items.get(ref)
        if item is not None and (owner is None or item.owner == owner):
            return item
        folded = ref.strip().casefold()
        if owner is not None:
            char = self.characters.get(owner)
            candidates = [self.items[i] for i in char.inventory if i in self.items] if char else []
        else:
            candidates = list(self.items.values())
        for item in candidates:
            if item.item_type.casefold() == folded:
                return item
        return None

    def summary(self) -> dict[str, Any]:
        """Compact view of the state for prompt context."""
        return {
            "characters": [
                {
                    "id": c.id,
                    "name": c.name,
                    "attributes": c.attributes,
                    "inventory": [
                        self.items[i].item_type for i in c.inventory if i in self.items
                    ],
                }
                for c in self.characters.values()
                if c.active
            ],
            "flags": self.flags,
        }


class FunctionCallCandidate(BaseModel):
    """A structured call extracted from model text, pending validation."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    span: tuple[int, int] = (0, 0)  # character offsets in the raw response
    status: CandidateStatus = "pending"
    reason: RejectionReason | None = None
    detail: str = ""

    @property
    def pending(self) -> bool:
        return self.status == "pending"

    @property
    def applied(self) -> bool:
        return self.status == "applied"

    @property
    def rejected(self) -> bool:
        return self.status == "rejected"

    def reject(self, reason: RejectionReason, detail: str = "") -> None:
        self.status = "rejected"
        self.reason = reason
        self.detail = detail

    def mark_applied(self) -> None:
        self.status = "applied"
        self.reason = None
        self.detail = ""


class TurnRecord(BaseModel):
    """One closed turn. Append-only; frozen once built."""

    model_config = ConfigDict(frozen=True)

    turn: int
    player_input: str
    raw_response: str
    outcomes: list[FunctionCallCandidate] = Field(default_factory=list)
    narrative: str
    error: str | None = None
    ts: str = Field(default_factory=utcnow)


class ContextTurn(BaseModel):
    player_input: str
    narrative: str


class RequestContext(BaseModel):
    """Everything the transport needs to build one model request."""

    session_id: str
    turn: int
    player_input: str
    history: list[ContextTurn] = Field(default_factory=list)
    state: dict[str, Any] = Field(default_factory=dict)
    functions: str = ""
    language: str = "English"
