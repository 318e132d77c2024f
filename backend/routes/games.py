"""Game endpoints: start, state, ready-up, rounds, chat, NPC replies, end, summary."""

from contextlib import contextmanager
from dataclasses import asdict

from fastapi import APIRouter, HTTPException

from backend import runtime
from script_kill.errors import GameError
from script_kill.models import GameSession
from script_kill.pipeline import advise_round_advance, start_game, summarize
from script_kill.storage import ConcurrencyError

from .models import (
    AdvanceRoundBody,
    AIResponseBody,
    ChatBody,
    PlayerBody,
    StartGameBody,
    SummaryBody,
)

router = APIRouter()

_NOT_FOUND = {"session_not_found", "script_not_found"}
_FORBIDDEN = {"not_host", "not_participant"}


def _http_error(e: GameError) -> HTTPException:
    if e.code in _NOT_FOUND:
        status = 404
    elif e.code in _FORBIDDEN:
        status = 403
    else:
        status = 409
    return HTTPException(status, e.to_dict())


@contextmanager
def _game_errors():
    """Turn GameError rejections and lost write races into HTTP errors."""
    try:
        yield
    except GameError as e:
        raise _http_error(e) from e
    except ConcurrencyError as e:
        raise HTTPException(409, {"code": "concurrent_update", "message": str(e)}) from e
    except ValueError as e:
        raise HTTPException(422, str(e)) from e


def _public(session: GameSession) -> dict:
    """Session as JSON; personal scripts are served per player only."""
    return session.model_dump(mode="json", exclude={"personal_scripts"})


@router.post("/games")
async def create_game(body: StartGameBody):
    """Synthesize the script and personal scripts, then create the session."""
    game = runtime.config()["game"]
    if body.rounds > int(game["max_rounds"]):
        raise HTTPException(422, f"At most {game['max_rounds']} rounds are allowed")
    with _game_errors():
        script, session = await start_game(
            llm=runtime.llm(),
            engine=runtime.engine(),
            host_id=body.host_id,
            players=body.players,
            plot_requirement=body.plot_requirement,
            rounds=body.rounds,
            ai_npcs=body.ai_npcs,
            room_id=body.room_id,
            end_policy=body.end_policy or game["end_policy"],
        )
    return {"script": script.model_dump(mode="json"), "session": _public(session)}


@router.get("/games/{game_id}")
async def get_game(game_id: str):
    """Get a session together with its script."""
    engine = runtime.engine()
    with _game_errors():
        session = engine.get_session(game_id)
        script = engine.get_script(session.script_id)
    return {"script": script.model_dump(mode="json"), "session": _public(session)}


@router.get("/games/{game_id}/personal-script/{player_id}")
async def get_personal_script(game_id: str, player_id: str):
    """Get the personal script of the character a player plays."""
    with _game_errors():
        return runtime.engine().personal_script_for(game_id, player_id)


@router.post("/games/{game_id}/ready")
async def mark_ready(game_id: str, body: PlayerBody):
    """Mark a player ready. Round 1 opens once everyone is ready."""
    with _game_errors():
        session = await runtime.engine().mark_ready(game_id, body.player_id)
    return _public(session)


@router.post("/games/{game_id}/advance-round")
async def advance_round(game_id: str, body: AdvanceRoundBody):
    """Host opens the next round."""
    with _game_errors():
        session = await runtime.engine().advance_round(
            game_id, body.player_id, body.current_round, body.next_round,
        )
    return _public(session)


@router.post("/games/{game_id}/chat")
async def chat(game_id: str, body: ChatBody):
    """Append a player message, then let the NPCs react to it."""
    engine = runtime.engine()
    with _game_errors():
        message = await engine.append_message(game_id, body.player_id, body.message)
        npc_messages = await runtime.speech_policy().react(engine, game_id, trigger=message)
    return {"message": message, "npc_messages": npc_messages}


@router.post("/games/{game_id}/ai-response")
async def ai_response(game_id: str, body: AIResponseBody):
    """Have one NPC answer a message directly; the reply is appended to the chat."""
    engine = runtime.engine()
    with _game_errors():
        session = engine.get_session(game_id)
        npc = session.npc(body.npc_id)
        if npc is None or not npc.is_active:
            raise HTTPException(404, "NPC not found")
        line = await runtime.speech_policy().reply(npc, session, body.message)
        message = await engine.append_message(game_id, npc.id, line, is_npc=True)
    return message


@router.get("/games/{game_id}/round-advice")
async def round_advice(game_id: str):
    """Ask the provider whether the discussion is ready for the next round."""
    with _game_errors():
        session = runtime.engine().get_session(game_id)
    advice = await advise_round_advance(runtime.llm(), session)
    return asdict(advice)


@router.post("/games/{game_id}/end-story")
async def end_story(game_id: str, body: PlayerBody):
    """Request the end of the story (final round only)."""
    with _game_errors():
        result = await runtime.engine().end_story(game_id, body.player_id)
    return asdict(result)


@router.post("/games/{game_id}/generate-summary")
async def generate_summary(game_id: str, body: SummaryBody):
    """Get or generate the end-of-game summary for a player."""
    with _game_errors():
        return await summarize(
            runtime.engine(), runtime.llm(), game_id, body.player_id, force=body.force,
        )
