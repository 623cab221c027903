"""Session inspection + administrative call endpoints."""

from fastapi import APIRouter, HTTPException, Request

from sharad.errors import SessionFatal
from sharad.models import FunctionCallCandidate
from sharad.orchestrator import Session

from .models import SessionSummary, SubmitCallsBody

router = APIRouter()


def _session(request: Request, session_id: str) -> Session:
    session = request.app.state.sessions.get(session_id)
    if not session:
        raise HTTPException(404, "Session not found")
    return session


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/sessions")
async def list_sessions(request: Request):
    """List live sessions with their phase and turn counter."""
    return [
        SessionSummary(
            id=s.session_id,
            phase=s.phase.value,
            turn=s.store.snapshot().turn,
            records=len(s.records),
        )
        for s in request.app.state.sessions.all()
    ]


@router.get("/sessions/{session_id}/state")
async def get_state(request: Request, session_id: str):
    """Current committed game state."""
    return _session(request, session_id).store.snapshot()


@router.get("/sessions/{session_id}/turns")
async def get_turns(request: Request, session_id: str):
    """Closed turns in order, including per-call outcomes."""
    return list(_session(request, session_id).records)


@router.post("/sessions/{session_id}/calls")
async def submit_calls(request: Request, session_id: str, body: SubmitCallsBody):
    """Run function calls through the dispatcher as if the model had made them."""
    session = _session(request, session_id)
    if not body.calls:
        raise HTTPException(400, "No calls given")
    candidates = [FunctionCallCandidate(name=c.name, arguments=c.arguments) for c in body.calls]
    try:
        report = session.submit_calls(candidates)
    except SessionFatal as e:
        raise HTTPException(409, str(e))
    return {
        "outcomes": report.candidates,
        "conflict": report.conflict.message if report.conflict else None,
        "state": report.state,
    }
