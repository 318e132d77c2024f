"""Script synthesis with a three-tier fallback ladder.

  1. One-shot: a single prompt asks for the whole script. If the reply
     decodes and has a title, a cast and round contents, it is used.
  2. Incremental: the skeleton (title, background, cast) is requested on its
     own, then every round one by one. Any piece the provider fails to
     deliver is replaced by deterministic filler.
  3. Deterministic: when nothing decodes, the skeleton and every round are
     placeholders built from the plot requirement.

Whatever tier produced it, the result is normalised: exactly
human_count + ai_count characters (the first human_count flagged main),
exactly `rounds` round contents numbered 1..rounds, and a private clue for
every character in every round. Provider failures never reach the caller.
"""

from __future__ import annotations

import logging
from typing import Any

from script_kill.decoding import ParseError, decode_object
from script_kill.llm import LLM, ask
from script_kill.models import MAX_ROUNDS, Character, RoundContent, Script
from script_kill.prompts import ROUND_PROMPT, SCRIPT_PROMPT, SKELETON_PROMPT, render_prompt

logger = logging.getLogger(__name__)

PLOT_TARGET_MIN = 900
PLOT_TARGET_MAX = 1120


def _pick(data: dict[str, Any], *keys: str) -> Any:
    """First present key among camelCase/snake_case spellings."""
    for key in keys:
        if key in data:
            return data[key]
    return None


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# Deterministic placeholders
# ---------------------------------------------------------------------------

def placeholder_cast(human_count: int, ai_count: int) -> list[Character]:
    return [
        Character(
            id=f"char_{i + 1}",
            name=f"Character {i + 1}",
            identity=f"Identity {i + 1}",
            personality=f"Personality {i + 1}",
            is_main_character=i < human_count,
        )
        for i in range(human_count + ai_count)
    ]


def placeholder_plot(plot_requirement: str, round_number: int, rounds: int) -> str:
    """A plot padded to the per-round density target."""
    segments = [
        "[Scene] Time moves on and the setting sharpens: a lingering smell, a change "
        "in the light from the window and small noises build the tension.",
        f'[Development] A phenomenon tied to the core conflict of "{plot_requirement}" '
        "appears; everyone falls silent, one person floats a theory, another denies "
        "it, a third avoids the subject.",
        "[Confrontation] Two main characters press each other on whether a clue is "
        "genuine, polite in words but sharp in tone; a supporting character adds an "
        "outsider's view and the lines of reasoning have to be rebuilt.",
        "[Clue] A new clue surfaces. On the surface it points one obvious way, but its "
        "details contradict each other; each character picks the fragments that suit "
        "their position.",
        "[Undercurrent] One character answers cooperatively after a pause but with an "
        "odd choice of words; another's expression is noted by someone sharp-eyed, a "
        "possible flashpoint for later.",
        "[Open question] The round ends on a small anomaly nobody can verify yet: a "
        "decoy, or a door into something deeper, and it reshuffles everyone's priorities.",
    ]
    if round_number == 1:
        segments.insert(
            0,
            f"[Opening] Round {round_number} begins. After a first exchange of what "
            f'they know, the characters start a targeted search, still free to misread "{plot_requirement}".',
        )
    if round_number == rounds:
        segments.append(
            "[Closing in] With earlier contradictions squeezed out, the hidden structure "
            "takes shape, yet one core motive still fits no account and waits for the reveal.",
        )
    text = f"Round {round_number} of {plot_requirement}: " + " ".join(segments)
    filler = (
        " [Detail] The rhythm of breathing, changes in pace and pauses in glances all "
        "enter the shared memory, to be compared later as evidence for or against a theory."
    )
    while len(text) < PLOT_TARGET_MIN:
        text += filler
        if len(text) > PLOT_TARGET_MAX:
            break
    return text


def placeholder_clue(plot_requirement: str, round_number: int, character: Character) -> str:
    return (
        f"Clue {round_number} for {character.name}: a personal hint about "
        f'"{plot_requirement}" that hints at their position or a possible red herring.'
    )


def placeholder_round(
    plot_requirement: str, round_number: int, rounds: int, cast: list[Character]
) -> RoundContent:
    return RoundContent(
        round=round_number,
        plot=placeholder_plot(plot_requirement, round_number, rounds),
        private_clues={c.id: placeholder_clue(plot_requirement, round_number, c) for c in cast},
    )


# ---------------------------------------------------------------------------
# Normalisation of provider output
# ---------------------------------------------------------------------------

def _unique_id(candidate: str, index: int, taken: set[str]) -> str:
    base = candidate or f"char_{index + 1}"
    cid = base
    suffix = 2
    while cid in taken:
        cid = f"{base}_{suffix}"
        suffix += 1
    taken.add(cid)
    return cid


def normalize_cast(raw: Any, human_count: int, ai_count: int) -> list[Character]:
    """Coerce model characters into exactly human_count + ai_count entries.

    Main flags are re-applied by position so main characters always equal
    the number of human players.
    """
    total = human_count + ai_count
    fallback = placeholder_cast(human_count, ai_count)
    entries = [c for c in raw if isinstance(c, dict)] if isinstance(raw, list) else []

    cast: list[Character] = []
    taken: set[str] = set()
    for i in range(total):
        entry = entries[i] if i < len(entries) else {}
        default = fallback[i]
        cast.append(Character(
            id=_unique_id(_text(entry.get("id")) or default.id, i, taken),
            name=_text(entry.get("name")) or default.name,
            identity=_text(entry.get("identity")) or default.identity,
            personality=_text(entry.get("personality")) or default.personality,
            is_main_character=i < human_count,
        ))
    if len(entries) != total:
        logger.warning("cast size %d repaired to %d", len(entries), total)
    return cast


def _clues_for(
    raw: Any, cast: list[Character], plot_requirement: str, round_number: int
) -> dict[str, str]:
    """Private clue per character; clues keyed by name are accepted too."""
    raw = raw if isinstance(raw, dict) else {}
    clues: dict[str, str] = {}
    for c in cast:
        clue = _text(raw.get(c.id)) or _text(raw.get(c.name))
        clues[c.id] = clue or placeholder_clue(plot_requirement, round_number, c)
    return clues


def round_from_data(
    data: dict[str, Any] | None,
    round_number: int,
    rounds: int,
    cast: list[Character],
    plot_requirement: str,
) -> RoundContent:
    data = data or {}
    plot = _text(data.get("plot"))
    if not plot:
        logger.warning("round %d plot missing, using placeholder", round_number)
        plot = placeholder_plot(plot_requirement, round_number, rounds)
    return RoundContent(
        round=round_number,
        plot=plot,
        private_clues=_clues_for(
            _pick(data, "privateClues", "private_clues"), cast, plot_requirement, round_number
        ),
    )


def normalize_rounds(
    raw: Any, rounds: int, cast: list[Character], plot_requirement: str
) -> list[RoundContent]:
    """Exactly `rounds` contents numbered 1..rounds.

    Entries are matched by their round number, or by position when none
    carries a usable number; extras are dropped and gaps filled with
    placeholders.
    """
    entries = [r for r in raw if isinstance(r, dict)] if isinstance(raw, list) else []
    by_number: dict[int, dict[str, Any]] = {}
    for entry in entries:
        number = entry.get("round")
        if isinstance(number, int) and 1 <= number <= rounds and number not in by_number:
            by_number[number] = entry
    if not by_number:
        by_number = {i + 1: entry for i, entry in enumerate(entries[:rounds])}

    return [
        round_from_data(by_number.get(n), n, rounds, cast, plot_requirement)
        for n in range(1, rounds + 1)
    ]


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------

def _valid_one_shot(data: dict[str, Any]) -> bool:
    characters = data.get("characters")
    round_contents = _pick(data, "roundContents", "round_contents")
    return (
        bool(_text(data.get("title")))
        and isinstance(characters, list) and len(characters) > 0
        and isinstance(round_contents, list) and len(round_contents) > 0
    )


async def _incremental(
    llm: LLM, plot_requirement: str, rounds: int, human_count: int, ai_count: int,
) -> Script:
    total = human_count + ai_count
    skeleton_text = await ask(llm, "script_skeleton", render_prompt(SKELETON_PROMPT, {
        "plot_requirement": plot_requirement,
        "total": total,
        "human_count": human_count,
        "ai_count": ai_count,
    }))
    skeleton = decode_object(skeleton_text)
    data = {} if isinstance(skeleton, ParseError) else skeleton.value
    raw_cast = data.get("characters")
    if isinstance(raw_cast, list) and len(raw_cast) == total:
        cast = normalize_cast(raw_cast, human_count, ai_count)
    else:
        logger.warning("skeleton unusable, using placeholder cast of %d", total)
        cast = placeholder_cast(human_count, ai_count)

    title = _text(data.get("title")) or f"Untitled mystery: {plot_requirement[:20]}"
    background = _text(data.get("background")) or f"Background: the story of {plot_requirement}."

    contents = []
    ids = ", ".join(c.id for c in cast)
    for n in range(1, rounds + 1):
        round_text = await ask(llm, "script_round", render_prompt(ROUND_PROMPT, {
            "round": n,
            "character_ids": ids,
            "background": background,
            "plot_requirement": plot_requirement,
        }))
        decoded = decode_object(round_text)
        if isinstance(decoded, ParseError):
            logger.warning("round %d unusable (%s), using placeholder", n, decoded.reason)
            contents.append(placeholder_round(plot_requirement, n, rounds, cast))
        else:
            contents.append(round_from_data(decoded.value, n, rounds, cast, plot_requirement))

    return Script(
        title=title,
        rounds=rounds,
        background=background,
        characters=cast,
        round_contents=contents,
        created_by="incremental",
    )


async def synthesize_script(
    llm: LLM,
    plot_requirement: str,
    rounds: int,
    human_count: int,
    ai_count: int,
    created_by: str = "system",
) -> Script:
    """Produce a structurally valid Script, degrading gracefully on provider failure.

    Raises ValueError only for malformed input (rounds outside 1..30,
    negative counts, or an empty cast).
    """
    if not 1 <= rounds <= MAX_ROUNDS:
        raise ValueError(f"rounds must be between 1 and {MAX_ROUNDS}, got {rounds}")
    if human_count < 0 or ai_count < 0 or human_count + ai_count < 1:
        raise ValueError("at least one character is required")

    total = human_count + ai_count
    text = await ask(llm, "script", render_prompt(SCRIPT_PROMPT, {
        "plot_requirement": plot_requirement,
        "rounds": rounds,
        "human_count": human_count,
        "ai_count": ai_count,
        "total": total,
    }))
    decoded = decode_object(text, required=("title", "characters"))
    if not isinstance(decoded, ParseError) and _valid_one_shot(decoded.value):
        data = decoded.value
        cast = normalize_cast(data["characters"], human_count, ai_count)
        script = Script(
            title=_text(data["title"]),
            rounds=rounds,
            background=_text(data.get("background")),
            characters=cast,
            round_contents=normalize_rounds(
                _pick(data, "roundContents", "round_contents"), rounds, cast, plot_requirement
            ),
            created_by=created_by,
        )
        logger.info("script %s synthesized in one shot (%d rounds)", script.id, rounds)
        return script

    reason = decoded.reason if isinstance(decoded, ParseError) else "incomplete shape"
    logger.warning("one-shot script failed (%s), switching to incremental mode", reason)
    script = await _incremental(llm, plot_requirement, rounds, human_count, ai_count)
    logger.info("script %s synthesized incrementally (%d rounds)", script.id, rounds)
    return script
