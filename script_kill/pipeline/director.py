"""Game start: script, personal scripts, then the session."""

from __future__ import annotations

import logging

from script_kill.llm import LLM
from script_kill.models import AINPCConfig, EndPolicy, GameSession, Script
from script_kill.pipeline.personal import synthesize_all_personal_scripts
from script_kill.pipeline.script_writer import synthesize_script
from script_kill.pipeline.session import SessionEngine, check_roster

logger = logging.getLogger(__name__)


async def start_game(
    *,
    llm: LLM,
    engine: SessionEngine,
    host_id: str,
    players: list[str],
    plot_requirement: str,
    rounds: int,
    ai_npcs: list[AINPCConfig] | None = None,
    room_id: str | None = None,
    end_policy: EndPolicy = "quorum",
) -> tuple[Script, GameSession]:
    """Synthesize and store everything a new game needs.

    The roster is checked before any provider call, so a bad request costs
    nothing. Provider failures only lower the quality of the generated text.
    """
    npcs = list(ai_npcs or [])
    check_roster(host_id, players, npcs)

    script = await synthesize_script(llm, plot_requirement, rounds, len(players), len(npcs))
    engine.storage.save_script(script)
    personal = await synthesize_all_personal_scripts(llm, script)

    session = engine.create_session(
        script,
        host_id=host_id,
        players=players,
        ai_npcs=npcs,
        plot_requirement=plot_requirement,
        room_id=room_id,
        personal_scripts=personal,
        end_policy=end_policy,
    )
    logger.info("game %s started from script %s (%s)", session.id, script.id, script.created_by)
    return script, session
