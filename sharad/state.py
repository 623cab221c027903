"""State store — owns the canonical GameState.

Mutation ops are the only way state changes. ``StateStore.apply`` runs a
batch against a deep copy of the current state and publishes the copy only
if every op succeeded (copy-on-write), so a published GameState is never
mutated and ``snapshot()`` can hand it out without locking.

Invariants checked on every batch:
  - an item's owner, if set, is an existing, active character
  - an item appears in its owner's inventory exactly once, and nowhere else
  - character and item ids are unique (dict key == id)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from sharad.errors import ConflictError, InvariantViolation
from sharad.models import Character, FlagValue, GameState, ItemInstance

logger = logging.getLogger(__name__)


def _active_character(state: GameState, character_id: str) -> Character:
    char = state.characters.get(character_id)
    if char is None:
        raise ValueError(f"character {character_id!r} does not exist")
    if not char.active:
        raise ValueError(f"character {character_id!r} is inactive")
    return char


def _existing_item(state: GameState, item_id: str) -> ItemInstance:
    item = state.items.get(item_id)
    if item is None:
        raise ValueError(f"item {item_id!r} does not exist")
    return item


# ---------------------------------------------------------------------------
# Mutation ops — each mutates a working copy or raises ValueError
# ---------------------------------------------------------------------------

class CreateCharacter(BaseModel):
    kind: Literal["create_character"] = "create_character"
    id: str
    name: str
    attributes: dict[str, int | float] = Field(default_factory=dict)

    def apply(self, state: GameState) -> None:
        if self.id in state.characters:
            raise ValueError(f"character {self.id!r} already exists")
        state.characters[self.id] = Character(
            id=self.id, name=self.name, attributes=dict(self.attributes)
        )


class DeactivateCharacter(BaseModel):
    kind: Literal["deactivate_character"] = "deactivate_character"
    id: str

    def apply(self, state: GameState) -> None:
        char = _active_character(state, self.id)
        if char.inventory:
            raise ValueError(f"character {self.id!r} still holds items")
        char.active = False


class SetAttribute(BaseModel):
    kind: Literal["set_attribute"] = "set_attribute"
    character_id: str
    attribute: str
    value: int | float

    def apply(self, state: GameState) -> None:
        _active_character(state, self.character_id).attributes[self.attribute] = self.value


class AdjustAttribute(BaseModel):
    kind: Literal["adjust_attribute"] = "adjust_attribute"
    character_id: str
    attribute: str
    delta: int | float

    def apply(self, state: GameState) -> None:
        char = _active_character(state, self.character_id)
        char.attributes[self.attribute] = char.attributes.get(self.attribute, 0) + self.delta


class CreateItem(BaseModel):
    kind: Literal["create_item"] = "create_item"
    id: str
    item_type: str
    owner: str | None = None
    description: str = ""

    def apply(self, state: GameState) -> None:
        if self.id in state.items:
            raise ValueError(f"item {self.id!r} already exists")
        if self.owner is not None:
            _active_character(state, self.owner).inventory.append(self.id)
        state.items[self.id] = ItemInstance(
            id=self.id, item_type=self.item_type,
            owner=self.owner, description=self.description,
        )


class DestroyItem(BaseModel):
    kind: Literal["destroy_item"] = "destroy_item"
    id: str

    def apply(self, state: GameState) -> None:
        item = _existing_item(state, self.id)
        if item.owner is not None:
            state.characters[item.owner].inventory.remove(item.id)
        del state.items[item.id]


class TransferItem(BaseModel):
    kind: Literal["transfer_item"] = "transfer_item"
    id: str
    owner: str | None = None

    def apply(self, state: GameState) -> None:
        item = _existing_item(state, self.id)
        if item.owner == self.owner:
            raise ValueError(f"item {self.id!r} is already held by {self.owner!r}")
        if self.owner is not None:
            _active_character(state, self.owner).inventory.append(item.id)
        if item.owner is not None:
            state.characters[item.owner].inventory.remove(item.id)
        item.owner = self.owner


class SetFlag(BaseModel):
    kind: Literal["set_flag"] = "set_flag"
    key: str
    value: FlagValue = None

    def apply(self, state: GameState) -> None:
        state.flags[self.key] = self.value


class AdvanceTurn(BaseModel):
    kind: Literal["advance_turn"] = "advance_turn"

    def apply(self, state: GameState) -> None:
        state.turn += 1


MutationOp = Annotated[
    Union[
        CreateCharacter,
        DeactivateCharacter,
        SetAttribute,
        AdjustAttribute,
        CreateItem,
        DestroyItem,
        TransferItem,
        SetFlag,
        AdvanceTurn,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------

def find_integrity_errors(state: GameState) -> list[str]:
    """Return every invariant the state breaks; [] for a sound state."""
    errors: list[str] = []
    for key, char in state.characters.items():
        if key != char.id:
            errors.append(f"character stored under {key!r} has id {char.id!r}")
        if len(set(char.inventory)) != len(char.inventory):
            errors.append(f"character {char.id!r} lists an item twice")
        for item_id in char.inventory:
            item = state.items.get(item_id)
            if item is None:
                errors.append(f"character {char.id!r} holds missing item {item_id!r}")
            elif item.owner != char.id:
                errors.append(f"character {char.id!r} lists item {item_id!r} owned by {item.owner!r}")
    for key, item in state.items.items():
        if key != item.id:
            errors.append(f"item stored under {key!r} has id {item.id!r}")
        if item.owner is None:
            continue
        owner = state.characters.get(item.owner)
        if owner is None:
            errors.append(f"item {item.id!r} owned by missing character {item.owner!r}")
        elif not owner.active:
            errors.append(f"item {item.id!r} owned by inactive character {item.owner!r}")
        elif item.id not in owner.inventory:
            errors.append(f"item {item.id!r} missing from {item.owner!r} inventory")
    return errors


def check_integrity(state: GameState) -> None:
    errors = find_integrity_errors(state)
    if errors:
        raise InvariantViolation("; ".join(errors))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class StateStore:
    """Transactional holder of one session's GameState.

    ``apply`` is the sole mutation entry point; a lock serialises batches
    from different callers (game loop, admin API) and is held only while
    checking and committing.
    """

    def __init__(self, state: GameState | None = None) -> None:
        self._state = state if state is not None else GameState()
        self._lock = threading.Lock()
        check_integrity(self._state)

    def snapshot(self) -> GameState:
        """The current state. Treat as read-only: it is never mutated."""
        return self._state

    def apply(self, ops: Sequence[MutationOp]) -> GameState:
        """Apply ``ops`` atomically and return the new state.

        Raises ConflictError for the first op that cannot be applied; the
        published state is then unchanged.
        """
        with self._lock:
            check_integrity(self._state)
            working = self._state.model_copy(deep=True)
            for index, op in enumerate(ops):
                try:
                    op.apply(working)
                except ValueError as e:
                    logger.warning("Batch rejected at op %d (%s): %s", index, op.kind, e)
                    raise ConflictError(index, str(e)) from e
            check_integrity(working)
            self._state = working
            logger.debug("Applied %d ops, turn=%d", len(ops), working.turn)
            return working
