"""End-of-game summary.

A summary has three narrative parts (recap, analysis, close-out) and one
critique per human player. It can be requested once the final round is
open and is cached per requesting player: a complete cached summary is
returned as-is unless `force` is set, an empty or partial one is rebuilt.
Provider failures are replaced with neutral deterministic text so the
summary is never empty.
"""

from __future__ import annotations

import logging

from script_kill.decoding import parse_labeled_lines
from script_kill.errors import NotFinalRound, NotParticipant
from script_kill.llm import LLM, ask
from script_kill.models import GameSession, GameSummary, PlayerAnalysis, Script
from script_kill.pipeline.session import SessionEngine
from script_kill.prompts import (
    SUMMARY_ANALYSIS_PROMPT,
    SUMMARY_ELEVATION_PROMPT,
    SUMMARY_PLAYER_PROMPT,
    SUMMARY_REVIEW_PROMPT,
    render_prompt,
)

logger = logging.getLogger(__name__)

ANALYSIS_LABELS: dict[str, tuple[str, ...]] = {
    "viewpoint_summary": ("Viewpoint", "观点总结"),
    "plot_related_comment": ("Plot contribution", "Plot comment", "剧情相关点评", "剧情贡献"),
    "style_comment": ("Speaking style", "Style", "发言风格"),
}

DEFAULT_ANALYSIS = {
    "viewpoint_summary": "Held a steady position and judged from the information of each round.",
    "plot_related_comment": "Linked clues or challenged theories at key moments, helping the discussion converge.",
    "style_comment": "Expressed ideas clearly and cooperated well with the others.",
}

FALLBACK_ANALYSIS = (
    "The key reasoning came from checking private clues against the shared plot; "
    "conflicting clues left room for more than one reading."
)

FALLBACK_ELEVATION = (
    "Clues were released round by round and the discussion narrowed steadily; "
    "sharing findings early is worth repeating next time."
)


def build_transcript(session: GameSession) -> str:
    lines = []
    for record in session.round_records:
        lines.append(f"Round {record.round} plot: {record.plot}")
        lines.extend(f"{m.sender_name}: {m.content}" for m in record.messages)
    return "\n".join(lines)


def _player_name(session: GameSession, script: Script, player_id: str) -> str:
    for message in session.all_messages():
        if message.sender_id == player_id and message.sender_name:
            return message.sender_name
    character = script.character(session.player_characters.get(player_id, ""))
    if character is not None:
        return character.name
    return f"Player {session.players.index(player_id) + 1}"


def _fallback_review(session: GameSession) -> str:
    return (
        f"Over {session.rounds} rounds the group followed the story from its opening "
        "to the final reveal, comparing private clues against each round's events."
    )


async def _section(llm: LLM, stage: str, template: str, context: dict, fallback: str) -> str:
    text = await ask(llm, stage, render_prompt(template, context))
    if text is None or not text.strip():
        logger.warning("summary section %s empty, using fallback", stage)
        return fallback
    return text.strip()


async def _analyse_player(
    llm: LLM, session: GameSession, script: Script, player_id: str
) -> PlayerAnalysis:
    name = _player_name(session, script, player_id)
    messages = [
        {"sender_name": m.sender_name or name, "content": m.content}
        for m in session.all_messages() if m.sender_id == player_id
    ]
    text = await ask(llm, "summary_player", render_prompt(SUMMARY_PLAYER_PROMPT, {
        "player_name": name,
        "messages": messages,
    }))
    fields = parse_labeled_lines(text or "", ANALYSIS_LABELS)
    missing = [f for f in ANALYSIS_LABELS if f not in fields]
    if missing:
        logger.warning("analysis of %s missing %s, using defaults", player_id, ", ".join(missing))
    return PlayerAnalysis(
        player_id=player_id,
        player_name=name,
        **{f: fields.get(f, DEFAULT_ANALYSIS[f]) for f in ANALYSIS_LABELS},
    )


async def summarize(
    engine: SessionEngine,
    llm: LLM,
    session_id: str,
    requesting_player_id: str,
    force: bool = False,
) -> GameSummary:
    """Return the summary for `requesting_player_id`, generating it if needed."""
    session = engine.get_session(session_id)
    if not session.is_participant(requesting_player_id):
        raise NotParticipant(f"Player {requesting_player_id} is not in game {session_id}")
    if not session.is_final_round:
        raise NotFinalRound("A summary can only be generated in the final round")

    cached = (session.final_summary or {}).get(requesting_player_id)
    if cached is not None and cached.is_complete(session.players) and not force:
        logger.debug("game %s: summary cache hit for %s", session_id, requesting_player_id)
        return cached

    script = engine.get_script(session.script_id)
    context = {
        "background": session.script_background,
        "rounds": session.rounds,
        "transcript": build_transcript(session),
    }
    summary = GameSummary(
        player_id=requesting_player_id,
        story_review=await _section(
            llm, "summary_review", SUMMARY_REVIEW_PROMPT, context, _fallback_review(session)
        ),
        plot_analysis=await _section(
            llm, "summary_analysis", SUMMARY_ANALYSIS_PROMPT, context, FALLBACK_ANALYSIS
        ),
        story_elevation=await _section(
            llm, "summary_elevation", SUMMARY_ELEVATION_PROMPT, context, FALLBACK_ELEVATION
        ),
    )
    for pid in session.players:
        summary.player_analysis[pid] = await _analyse_player(llm, session, script, pid)

    await engine.store_summary(session_id, requesting_player_id, summary)
    logger.info("game %s: summary generated for %s", session_id, requesting_player_id)
    return summary
