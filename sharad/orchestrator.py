"""Turn orchestrator — drives one session, turn by turn.

Phase cycle:

  AWAITING_PLAYER_INPUT → REQUEST_SENT → RESPONSE_RECEIVED → VALIDATING
      → STATE_UPDATED → NARRATIVE_READY → AWAITING_PLAYER_INPUT

SESSION_ENDED is terminal and reachable from every phase (player exit,
exhausted transport retries, invariant violation).

Failure handling per turn:
  - transport errors retry with exponential backoff up to max_retries, then
    end the session; no TurnRecord is written for that turn
  - malformed or invalid calls are rejections, never failures
  - a conflict that survives the dispatcher's single retry closes the turn
    with an error record and no state change; the player is re-prompted
  - InvariantViolation ends the session at once

The two suspension points are the model request and the player input.
A pending request can be aborted with cancel_pending(); since nothing is
applied before the response arrives, the state is untouched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from sharad.composer import build_context, compose_narrative
from sharad.config import Config
from sharad.dispatcher import Dispatcher, DispatchReport
from sharad.errors import InvariantViolation, SessionFatal, TransportError
from sharad.llm import Transport
from sharad.models import FunctionCallCandidate, GameState, RequestContext, TurnRecord
from sharad.parser import parse_response
from sharad.player_io import PlayerIO
from sharad.schema import SchemaRegistry
from sharad.state import AdvanceTurn, StateStore
from sharad.storage import Storage

logger = logging.getLogger(__name__)

EXIT_COMMAND = "exit"

RETRY_NOTICE = "The storyteller is slow to answer. Trying again ({attempt}/{total})..."
TRANSPORT_FATAL = "The storyteller cannot be reached. The session has ended."
INVARIANT_FATAL = "The world has fallen into an impossible state. The session has ended."
CONFLICT_NOTICE = "The story lost its thread for a moment. Nothing has changed; try again."
ABORTED_NOTICE = "Request cancelled."
EMPTY_INPUT_NOTICE = "Input cannot be empty. Please try again."
FAREWELL = "Thank you for playing!"


class TurnPhase(str, Enum):
    AWAITING_PLAYER_INPUT = "awaiting_player_input"
    REQUEST_SENT = "request_sent"
    RESPONSE_RECEIVED = "response_received"
    VALIDATING = "validating"
    STATE_UPDATED = "state_updated"
    NARRATIVE_READY = "narrative_ready"
    SESSION_ENDED = "session_ended"


_TRANSITIONS: dict[TurnPhase, set[TurnPhase]] = {
    TurnPhase.AWAITING_PLAYER_INPUT: {TurnPhase.REQUEST_SENT},
    TurnPhase.REQUEST_SENT: {
        TurnPhase.REQUEST_SENT,  # retry
        TurnPhase.RESPONSE_RECEIVED,
        TurnPhase.AWAITING_PLAYER_INPUT,  # aborted by the player
    },
    TurnPhase.RESPONSE_RECEIVED: {TurnPhase.VALIDATING},
    TurnPhase.VALIDATING: {
        TurnPhase.STATE_UPDATED,
        TurnPhase.AWAITING_PLAYER_INPUT,  # repeated conflict
    },
    TurnPhase.STATE_UPDATED: {TurnPhase.NARRATIVE_READY},
    TurnPhase.NARRATIVE_READY: {TurnPhase.AWAITING_PLAYER_INPUT},
    TurnPhase.SESSION_ENDED: set(),
}


class _TurnAborted(Exception):
    pass


class Session:
    """One game session: a StateStore, its turn log and the loop around them."""

    def __init__(
        self,
        *,
        transport: Transport,
        config: Config | None = None,
        session_id: str = "default",
        store: StateStore | None = None,
        registry: SchemaRegistry | None = None,
        records: list[TurnRecord] | None = None,
        storage: Storage | None = None,
        io: PlayerIO | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session_id = session_id
        self.config = config or Config()
        self.registry = registry or SchemaRegistry()
        self.store = store or StateStore()
        self.dispatcher = Dispatcher(self.registry, self.store)
        self.phase = TurnPhase.AWAITING_PLAYER_INPUT
        self.phase_history: list[TurnPhase] = [self.phase]
        self.fatal_error: str | None = None
        self._transport = transport
        self._records: list[TurnRecord] = list(records or [])
        self._storage = storage
        self._io = io
        self._sleep = sleep
        self._pending: asyncio.Future | None = None
        self._abort_requested = False

    @classmethod
    def resume(cls, storage: Storage, session_id: str, **kwargs: Any) -> Session:
        """Rebuild a session from its last snapshot and turn log."""
        state = storage.load_snapshot(session_id) or GameState()
        return cls(
            session_id=session_id,
            store=StateStore(state),
            records=storage.get_turns(session_id),
            storage=storage,
            **kwargs,
        )

    @property
    def records(self) -> tuple[TurnRecord, ...]:
        return tuple(self._records)

    @property
    def ended(self) -> bool:
        return self.phase == TurnPhase.SESSION_ENDED

    # ------------------------------------------------------------------
    # Phase control
    # ------------------------------------------------------------------

    def _transition(self, phase: TurnPhase) -> None:
        if self.ended:
            return
        if phase != TurnPhase.SESSION_ENDED and phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"Illegal transition {self.phase.value} → {phase.value}")
        logger.debug("session=%s %s → %s", self.session_id, self.phase.value, phase.value)
        self.phase = phase
        self.phase_history.append(phase)

    def end(self, reason: str | None = None) -> None:
        """End the session from any phase, aborting an in-flight request."""
        if reason:
            self.fatal_error = reason
        self.cancel_pending()
        self._transition(TurnPhase.SESSION_ENDED)

    def cancel_pending(self) -> bool:
        """Abort the in-flight model request (or retry wait), if any."""
        if self._pending is None or self._pending.done():
            return False
        self._abort_requested = True
        self._pending.cancel()
        return True

    def _fail(self, message: str) -> SessionFatal:
        logger.error("session=%s ended: %s", self.session_id, message)
        self.end(message)
        return SessionFatal(message)

    # ------------------------------------------------------------------
    # One turn
    # ------------------------------------------------------------------

    def build_context(self, player_input: str) -> RequestContext:
        return build_context(
            session_id=self.session_id,
            player_input=player_input,
            records=self._records,
            state=self.store.snapshot(),
            window=self.config.context_window,
            functions=self.registry.describe(),
            language=self.config.language,
        )

    async def play_turn(self, player_input: str) -> TurnRecord | None:
        """Run one full turn for ``player_input``.

        Returns the closed TurnRecord, or None if the request was aborted.
        Raises SessionFatal when the session cannot continue.
        """
        if self.ended:
            raise SessionFatal("The session has ended.")
        if self.phase != TurnPhase.AWAITING_PLAYER_INPUT:
            raise RuntimeError(f"Cannot start a turn while {self.phase.value}")

        self._transition(TurnPhase.REQUEST_SENT)
        context = self.build_context(player_input)
        try:
            raw = await self._request(context)
        except _TurnAborted:
            logger.info("session=%s turn %d aborted by player", self.session_id, context.turn)
            self._transition(TurnPhase.AWAITING_PLAYER_INPUT)
            await self._notice(ABORTED_NOTICE)
            return None

        self._transition(TurnPhase.RESPONSE_RECEIVED)
        parsed = parse_response(raw, self.registry.names())

        self._transition(TurnPhase.VALIDATING)
        try:
            report = self.dispatcher.dispatch(parsed.candidates)
            if report.conflict is not None:
                record = self._close_turn(
                    context.turn, player_input, raw, report.candidates,
                    narrative="", error=f"conflict: {report.conflict.message}",
                )
                self._transition(TurnPhase.AWAITING_PLAYER_INPUT)
                await self._notice(CONFLICT_NOTICE)
                return record
            self.store.apply([AdvanceTurn()])
        except InvariantViolation as e:
            logger.error("Invariant violation: %s", e)
            raise self._fail(INVARIANT_FATAL) from e
        self._transition(TurnPhase.STATE_UPDATED)

        narrative = compose_narrative(parsed.narrative, report.candidates)
        record = self._close_turn(context.turn, player_input, raw, report.candidates, narrative)
        self._transition(TurnPhase.NARRATIVE_READY)

        if self._io is not None:
            await self._io.show_narrative(narrative)
        self._transition(TurnPhase.AWAITING_PLAYER_INPUT)
        return record

    def _close_turn(
        self,
        turn: int,
        player_input: str,
        raw: str,
        outcomes: list[FunctionCallCandidate],
        narrative: str,
        error: str | None = None,
    ) -> TurnRecord:
        record = TurnRecord(
            turn=turn,
            player_input=player_input,
            raw_response=raw,
            outcomes=[c.model_copy(deep=True) for c in outcomes],
            narrative=narrative,
            error=error,
        )
        self._records.append(record)
        applied = sum(1 for c in outcomes if c.applied)
        logger.info(
            "session=%s turn %d closed: %d applied, %d rejected%s",
            self.session_id, turn, applied, len(outcomes) - applied,
            f" ({error})" if error else "",
        )
        if self._storage is not None:
            self._storage.append_turn(self.session_id, record)
            self._storage.save_snapshot(self.session_id, self.store.snapshot())
            self._storage.append_log(self.session_id, "Player", player_input)
            self._storage.append_log(self.session_id, "Narrator", narrative or f"[{error}]")
        return record

    def submit_calls(self, candidates: list[FunctionCallCandidate]) -> DispatchReport:
        """Run operator-supplied calls through the dispatcher outside the turn loop.

        No TurnRecord is written; the snapshot is saved if anything applied.
        """
        if self.ended:
            raise SessionFatal("The session has ended.")
        try:
            report = self.dispatcher.dispatch(candidates)
        except InvariantViolation as e:
            logger.error("Invariant violation: %s", e)
            raise self._fail(INVARIANT_FATAL) from e
        logger.info(
            "session=%s admin calls: %d applied, %d rejected",
            self.session_id, len(report.applied), len(report.rejected),
        )
        if self._storage is not None and report.applied:
            self._storage.save_snapshot(self.session_id, self.store.snapshot())
        return report

    # ------------------------------------------------------------------
    # Transport with retry
    # ------------------------------------------------------------------

    async def _request(self, context: RequestContext) -> str:
        retries = 0
        while True:
            try:
                return await self._guarded(
                    asyncio.wait_for(self._transport.send(context), self.config.request_timeout)
                )
            except (TransportError, asyncio.TimeoutError) as e:
                kind = e.kind if isinstance(e, TransportError) else "timeout"
                logger.warning(
                    "session=%s transport failure (%s) on attempt %d/%d: %s",
                    self.session_id, kind, retries + 1, self.config.max_retries + 1, e,
                )
                if retries >= self.config.max_retries:
                    raise self._fail(TRANSPORT_FATAL) from e
            await self._notice(RETRY_NOTICE.format(attempt=retries + 1, total=self.config.max_retries))
            await self._guarded(self._sleep(self.config.backoff(retries)))
            retries += 1
            self._transition(TurnPhase.REQUEST_SENT)

    async def _guarded(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` as the cancellable pending operation."""
        self._pending = asyncio.ensure_future(awaitable)
        try:
            return await self._pending
        except asyncio.CancelledError:
            if self._abort_requested:
                self._abort_requested = False
                raise _TurnAborted() from None
            raise
        finally:
            self._pending = None

    async def _notice(self, text: str) -> None:
        if self._io is not None:
            await self._io.show_notice(text)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Play until the player exits or the session fails."""
        if self._io is None:
            raise RuntimeError("Session.run() needs a PlayerIO")
        while not self.ended:
            player_input = (await self._io.read_input("> ")).strip()
            if not player_input:
                await self._io.show_notice(EMPTY_INPUT_NOTICE)
                continue
            if player_input.lower() == EXIT_COMMAND:
                self.end()
                break
            try:
                await self.play_turn(player_input)
            except SessionFatal as e:
                await self._io.show_notice(str(e))
                return
        await self._io.show_notice(FAREWELL)
