"""FastMCP server exposing host actions on a game session as MCP tools.

Tools:
  - get_session_state(session_id)                         - status, rounds, ready and end confirmations
  - mark_ready(session_id, player_id)                     - ready-up; opens round 1 when everyone is ready
  - advance_round(session_id, player_id, current, next)   - host opens the next round
  - end_story(session_id, player_id)                      - request the end of the story

Rejections (wrong round, not host, ...) surface as tool errors carrying the
rejection message. The engine is replaced via set_engine() in tests, or
built from DATA_DIR when run as __main__.

Usage:
    uv run python -m backend.mcp_server
"""

from dataclasses import asdict

from mcp.server.fastmcp import FastMCP

from script_kill.models import GameSession
from script_kill.pipeline import SessionEngine

mcp = FastMCP("script-kill")

_engine: SessionEngine | None = None


def set_engine(engine: SessionEngine) -> None:
    """Replace the active engine (used in tests)."""
    global _engine
    _engine = engine


def get_engine() -> SessionEngine:
    assert _engine is not None, "Call set_engine() before using the MCP tools"
    return _engine


def _state(session: GameSession) -> dict:
    return {
        "session_id": session.id,
        "status": session.status,
        "current_round": session.current_round,
        "rounds": session.rounds,
        "host_id": session.host_id,
        "players": session.players,
        "ready_players": session.ready_players,
        "end_confirmed_players": session.end_confirmed_players,
        "end_policy": session.end_policy,
    }


@mcp.tool()
def get_session_state(session_id: str) -> dict:
    """Return the lifecycle state of a game session."""
    return _state(get_engine().get_session(session_id))


@mcp.tool()
async def mark_ready(session_id: str, player_id: str) -> dict:
    """Mark a player ready. Returns the updated session state."""
    return _state(await get_engine().mark_ready(session_id, player_id))


@mcp.tool()
async def advance_round(session_id: str, player_id: str, current_round: int, next_round: int) -> dict:
    """Open `next_round` (host only, exactly current_round + 1). Returns the updated state."""
    return _state(await get_engine().advance_round(session_id, player_id, current_round, next_round))


@mcp.tool()
async def end_story(session_id: str, player_id: str) -> dict:
    """Request the end of the story. Returns ended / confirmed / total."""
    return asdict(await get_engine().end_story(session_id, player_id))


if __name__ == "__main__":
    import os
    from pathlib import Path

    from script_kill.storage import Storage

    data_path = Path(os.getenv("DATA_DIR", Path(__file__).parent.parent / "data"))
    set_engine(SessionEngine(Storage(data_path)))
    mcp.run()
