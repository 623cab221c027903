"""Narrative composer — player-facing text and the next request's context.

Applied calls need no mention: the prose already describes them. Rejected
calls are never shown as error text; the parser has already cut their
payloads out of the prose. If nothing readable is left and something was
rejected, a short in-fiction non-event stands in (narrative smoothing).
"""

from __future__ import annotations

import zlib
from collections.abc import Sequence

from sharad.models import ContextTurn, FunctionCallCandidate, GameState, RequestContext, TurnRecord

NON_EVENTS = (
    "For a moment it seems something will happen, but the moment passes.",
    "Nothing comes of it.",
    "The world holds still, as if undecided.",
    "Whatever was about to happen does not.",
)


def compose_narrative(narrative: str, outcomes: Sequence[FunctionCallCandidate]) -> str:
    """Return the text to show the player for one turn."""
    if narrative.strip():
        return narrative
    if any(c.rejected for c in outcomes):
        return _non_event(outcomes)
    return ""


def _non_event(outcomes: Sequence[FunctionCallCandidate]) -> str:
    # stable choice so replaying a turn gives the same text
    key = "|".join(c.name for c in outcomes).encode()
    return NON_EVENTS[zlib.crc32(key) % len(NON_EVENTS)]


def build_context(
    *,
    session_id: str,
    player_input: str,
    records: Sequence[TurnRecord],
    state: GameState,
    window: int,
    functions: str = "",
    language: str = "English",
) -> RequestContext:
    """Build the next model request from the last ``window`` closed turns.

    Turns that ended in an error changed nothing and are left out, so the
    model never sees narrative the state does not reflect.
    """
    usable = [r for r in records if r.error is None]
    recent = usable[-window:] if window > 0 else []
    return RequestContext(
        session_id=session_id,
        turn=state.turn + 1,
        player_input=player_input,
        history=[ContextTurn(player_input=r.player_input, narrative=r.narrative) for r in recent],
        state=state.summary(),
        functions=functions,
        language=language,
    )
