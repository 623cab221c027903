"""JSON file storage for sessions.

All state is stored in flat JSON files under a configurable base directory.
Reads and writes go through plain helper methods that load and dump JSON.

Directory layout:

    {base}/
      sessions/
        {session_id}/
          snapshot.json   ← point-in-time GameState, tagged with its turn number
          turns.json      ← append-only list of TurnRecord objects
      logs/
        {session_id}.log  ← plain-text transcript of every turn
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sharad.errors import StorageError
from sharad.models import GameState, TurnRecord, slugify, utcnow


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._sessions_root = base_path / "sessions"
        self._logs_root = base_path / "logs"
        self._sessions_root.mkdir(parents=True, exist_ok=True)
        self._logs_root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _session_dir(self, session_id: str) -> Path:
        return self._sessions_root / session_id

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise StorageError(f"{path} is not valid JSON: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        tmp.replace(path)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, name: str) -> str:
        """Create (or reuse) a session directory and return its id."""
        session_id = slugify(name)
        if not session_id:
            raise StorageError(f"Cannot derive a session id from {name!r}")
        self._session_dir(session_id).mkdir(exist_ok=True)
        return session_id

    def has_session(self, session_id: str) -> bool:
        return self._session_dir(session_id).is_dir()

    def list_sessions(self) -> list[str]:
        return sorted(p.name for p in self._sessions_root.iterdir() if p.is_dir())

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def save_snapshot(self, session_id: str, state: GameState) -> None:
        self._write_json(
            self._session_dir(session_id) / "snapshot.json",
            {"turn": state.turn, "saved_at": utcnow(), "state": state.model_dump(mode="json")},
        )

    def load_snapshot(self, session_id: str) -> GameState | None:
        path = self._session_dir(session_id) / "snapshot.json"
        if not path.exists():
            return None
        data = self._read_json(path)
        try:
            return GameState.model_validate(data["state"])
        except (KeyError, TypeError, ValidationError) as e:
            raise StorageError(f"Snapshot for {session_id!r} is unreadable: {e}") from e

    # ------------------------------------------------------------------
    # Turn log (append-only)
    # ------------------------------------------------------------------

    def get_turns(self, session_id: str) -> list[TurnRecord]:
        path = self._session_dir(session_id) / "turns.json"
        if not path.exists():
            return []
        try:
            return [TurnRecord.model_validate(t) for t in self._read_json(path)]
        except (TypeError, ValidationError) as e:
            raise StorageError(f"Turn log for {session_id!r} is unreadable: {e}") from e

    def append_turn(self, session_id: str, record: TurnRecord) -> None:
        existing = self.get_turns(session_id)
        existing.append(record)
        self._write_json(
            self._session_dir(session_id) / "turns.json",
            [t.model_dump(mode="json") for t in existing],
        )

    # ------------------------------------------------------------------
    # Transcript
    # ------------------------------------------------------------------

    def append_log(self, session_id: str, label: str, text: str) -> None:
        with (self._logs_root / f"{session_id}.log").open("a", encoding="utf-8") as f:
            f.write(f"{label}: {text}\n")
