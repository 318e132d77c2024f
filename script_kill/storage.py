"""JSON file storage.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM - reads and writes go through plain helper
methods that load and dump pydantic models.

Directory layout:

    {base}/
      scripts/
        {script_id}.json      ← Script (read-only after creation)
      sessions/
        {session_id}.json     ← GameSession, including personal scripts,
                                 round records and cached summaries

Sessions carry a `version` counter. put_session() refuses to overwrite a
record whose stored version differs from the one the caller read, so two
writers racing on the same session cannot silently lose an update. Files are
written to a sibling temp file and moved into place, so readers never see a
half-written record.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from script_kill.models import GameSession, Script


class ConcurrencyError(RuntimeError):
    """Raised when a session was modified since the caller read it."""


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._scripts_root = base_path / "scripts"
        self._sessions_root = base_path / "sessions"
        self._scripts_root.mkdir(parents=True, exist_ok=True)
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _script_file(self, script_id: str) -> Path:
        return self._scripts_root / f"{script_id}.json"

    def _session_file(self, session_id: str) -> Path:
        return self._sessions_root / f"{session_id}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text(encoding="utf-8"))

    def _write_text(self, path: Path, text: str) -> None:
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------

    def save_script(self, script: Script) -> Script:
        self._write_text(self._script_file(script.id), script.model_dump_json(indent=2))
        return script

    def get_script(self, script_id: str) -> Script | None:
        path = self._script_file(script_id)
        if not path.is_file():
            return None
        return Script.model_validate(self._read_json(path))

    def list_scripts(self) -> list[Script]:
        return [
            Script.model_validate(self._read_json(path))
            for path in sorted(self._scripts_root.glob("*.json"))
        ]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: GameSession) -> GameSession:
        path = self._session_file(session.id)
        if path.exists():
            raise ConcurrencyError(f"Session {session.id} already exists")
        session.version = 1
        self._write_text(path, session.model_dump_json(indent=2))
        return session

    def get_session(self, session_id: str) -> GameSession | None:
        path = self._session_file(session_id)
        if not path.is_file():
            return None
        return GameSession.model_validate(self._read_json(path))

    def list_sessions(self) -> list[GameSession]:
        return [
            GameSession.model_validate(self._read_json(path))
            for path in sorted(self._sessions_root.glob("*.json"))
        ]

    def put_session(self, session: GameSession, expected_version: int) -> GameSession:
        """Persist `session` if the stored copy is still at `expected_version`.

        Bumps `session.version` on success.
        """
        current = self.get_session(session.id)
        stored_version = current.version if current else 0
        if stored_version != expected_version:
            raise ConcurrencyError(
                f"Session {session.id} is at version {stored_version}, "
                f"expected {expected_version}"
            )
        session.version = expected_version + 1
        self._write_text(self._session_file(session.id), session.model_dump_json(indent=2))
        return session
