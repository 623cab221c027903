from fastapi import FastAPI

from sharad.orchestrator import Session
from sharad.routes import router


class SessionRegistry:
    """Live sessions visible to the admin API, keyed by session id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def add(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def all(self) -> list[Session]:
        return [self._sessions[k] for k in sorted(self._sessions)]


def create_app(registry: SessionRegistry | None = None) -> FastAPI:
    app = FastAPI(title="Sharad")
    app.state.sessions = registry or SessionRegistry()
    app.include_router(router, prefix="/api")
    return app
