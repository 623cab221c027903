"""Call validator & dispatcher.

For each pending candidate, in textual order:

  1. schema lookup                  → unknown_function
  2. parameter types / required     → bad_parameters (detail names the parameter)
  3. references against the state   → invalid_reference
  4. surviving candidates become one mutation batch for StateStore.apply
  5. a ConflictError rejects the offending candidate ("conflict") and the
     rest is re-submitted once; a second conflict rejects its offender,
     marks the remainder "aborted" and is reported on the DispatchReport

References resolve against a scratch copy of the snapshot that already
includes the effects of earlier accepted candidates, so a response may
create a character and hand it an item in the same turn. New identifiers
are checked against the snapshot only; a duplicate created twice within
one batch surfaces at commit time as a conflict.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from sharad.errors import CallValidationError, ConflictError
from sharad.models import Character, FunctionCallCandidate, GameState, ItemInstance, slugify
from sharad.schema import SchemaRegistry
from sharad.state import (
    AdjustAttribute,
    CreateCharacter,
    CreateItem,
    DeactivateCharacter,
    DestroyItem,
    MutationOp,
    SetAttribute,
    SetFlag,
    StateStore,
    TransferItem,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    candidates: list[FunctionCallCandidate]
    state: GameState
    conflict: ConflictError | None = None  # set when the single retry also conflicted

    @property
    def applied(self) -> list[FunctionCallCandidate]:
        return [c for c in self.candidates if c.applied]

    @property
    def rejected(self) -> list[FunctionCallCandidate]:
        return [c for c in self.candidates if c.rejected]


@dataclass
class _Scratch:
    """Projected state for reference checks within one batch."""

    snapshot: GameState
    state: GameState
    allocated: set[str] = field(default_factory=set)

    def character(self, ref: str, param: str) -> Character:
        char = self.state.find_character(ref)
        if char is None:
            raise CallValidationError("invalid_reference", f"{param}: no character {ref!r}")
        if not char.active:
            raise CallValidationError("invalid_reference", f"{param}: character {ref!r} is inactive")
        return char

    def item(self, ref: str, holder: Character | None) -> ItemInstance:
        item = self.state.find_item(ref, owner=holder.id if holder else None)
        if item is None:
            where = f" held by {holder.id!r}" if holder else ""
            raise CallValidationError("invalid_reference", f"item: no item {ref!r}{where}")
        return item

    def new_item_id(self, item_type: str) -> str:
        base = slugify(item_type) or "item"
        item_id, n = base, 1
        while item_id in self.state.items or item_id in self.allocated:
            n += 1
            item_id = f"{base}-{n}"
        self.allocated.add(item_id)
        return item_id


class Dispatcher:
    def __init__(self, registry: SchemaRegistry, store: StateStore) -> None:
        self._registry = registry
        self._store = store

    def dispatch(self, candidates: Iterable[FunctionCallCandidate]) -> DispatchReport:
        """Validate candidates in order and commit the valid ones atomically."""
        candidates = list(candidates)
        snapshot = self._store.snapshot()
        scratch = _Scratch(snapshot=snapshot, state=snapshot.model_copy(deep=True))

        accepted: list[tuple[FunctionCallCandidate, MutationOp]] = []
        for cand in candidates:
            if not cand.pending:
                continue
            try:
                op = self._validate(cand, scratch)
            except CallValidationError as e:
                cand.reject(e.reason, e.detail)
                logger.warning("Rejected %s(%s): %s", cand.name, cand.arguments, e)
                continue
            try:
                op.apply(scratch.state)
            except ValueError as e:
                # left for apply() to report as a conflict
                logger.debug("Deferred %s to commit: %s", cand.name, e)
            accepted.append((cand, op))

        return self._commit(candidates, accepted)

    def _commit(
        self,
        candidates: list[FunctionCallCandidate],
        accepted: list[tuple[FunctionCallCandidate, MutationOp]],
    ) -> DispatchReport:
        batch = list(accepted)
        for attempt in (1, 2):
            if not batch:
                return DispatchReport(candidates, self._store.snapshot())
            try:
                state = self._store.apply([op for _, op in batch])
            except ConflictError as e:
                offender, _ = batch.pop(e.index)
                offender.reject("conflict", e.message)
                logger.warning("Conflict on %s (attempt %d): %s", offender.name, attempt, e.message)
                if attempt == 2:
                    for cand, _ in batch:
                        cand.reject("aborted", "batch discarded after a repeated conflict")
                    return DispatchReport(candidates, self._store.snapshot(), conflict=e)
                continue
            for cand, _ in batch:
                cand.mark_applied()
            logger.debug("Committed %d of %d candidates", len(batch), len(candidates))
            return DispatchReport(candidates, state)
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, cand: FunctionCallCandidate, scratch: _Scratch) -> MutationOp:
        entry = self._registry.lookup(cand.name)
        if entry is None:
            raise CallValidationError("unknown_function", cand.name)
        args = entry.check(cand.arguments)
        build = getattr(self, f"_op_{entry.name}", None)
        if build is None:
            raise CallValidationError("unknown_function", f"{cand.name} has no handler")
        return build(args, scratch)

    def _op_create_character(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        char_id = args.get("id") or slugify(args["name"])
        if not char_id:
            raise CallValidationError("bad_parameters", "name: cannot derive an identifier")
        if char_id in scratch.snapshot.characters:
            raise CallValidationError("invalid_reference", f"id: character {char_id!r} already exists")
        return CreateCharacter(id=char_id, name=args["name"], attributes=args.get("attributes", {}))

    def _op_deactivate_character(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        return DeactivateCharacter(id=scratch.character(args["character"], "character").id)

    def _op_set_attribute(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        char = scratch.character(args["character"], "character")
        return SetAttribute(character_id=char.id, attribute=args["attribute"], value=args["value"])

    def _op_adjust_attribute(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        char = scratch.character(args["character"], "character")
        return AdjustAttribute(character_id=char.id, attribute=args["attribute"], delta=args["delta"])

    def _op_add_item(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        owner = scratch.character(args["character"], "character") if "character" in args else None
        return CreateItem(
            id=scratch.new_item_id(args["item"]),
            item_type=args["item"],
            owner=owner.id if owner else None,
            description=args.get("description", ""),
        )

    def _op_remove_item(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        holder = scratch.character(args["character"], "character") if "character" in args else None
        return DestroyItem(id=scratch.item(args["item"], holder).id)

    def _op_transfer_item(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        holder = scratch.character(args["character"], "character") if "character" in args else None
        item = scratch.item(args["item"], holder)
        target = scratch.character(args["to"], "to") if "to" in args else None
        target_id = target.id if target else None
        if item.owner == target_id:
            raise CallValidationError("invalid_reference", f"to: item {item.id!r} is already there")
        return TransferItem(id=item.id, owner=target_id)

    def _op_set_flag(self, args: dict[str, Any], scratch: _Scratch) -> MutationOp:
        return SetFlag(key=args["key"], value=args["value"])
