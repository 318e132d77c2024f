"""Personal-script synthesis: one character's private view of the shared script.

The provider is asked for a character-voiced background plus, per round, a
personal plot and one piece of hidden information. An unparsable reply gets
one stricter "JSON only" retry on the light model. Whatever comes back is
repaired field by field against the shared script, and a fully
deterministic version is used when nothing decodes, so every character ends
up with exactly one personal round per script round.
"""

from __future__ import annotations

import logging
from typing import Any

from script_kill.decoding import Ok, ParseError, decode_object
from script_kill.llm import LLM, ask
from script_kill.models import Character, PersonalRoundContent, PersonalScript, Script
from script_kill.prompts import (
    PERSONAL_SCRIPT_PROMPT,
    STRICT_JSON_PREFIX,
    STRICT_JSON_SUFFIX,
    render_prompt,
)

logger = logging.getLogger(__name__)

DEFAULT_HIDDEN_INFO = "You hold a few clues you would rather not reveal yet."
FALLBACK_HIDDEN_INFO = "No extra hidden information for now."

_REQUIRED = ("personalBackground", "personalRoundContents")


def fallback_personal_script(script: Script, character: Character) -> PersonalScript:
    """Deterministic personal script built from the shared content."""
    return PersonalScript(
        character_id=character.id,
        personal_background=(
            f"As {character.name}, you find yourself drawn into the affair. {script.background}"
        ).strip(),
        personal_round_contents=[
            PersonalRoundContent(
                round=rc.round,
                personal_plot=f"[Your view] Round {rc.round}: {rc.plot}",
                hidden_info=FALLBACK_HIDDEN_INFO,
            )
            for rc in script.round_contents
        ],
    )


def _usable(decoded: Ok | ParseError) -> dict[str, Any] | None:
    if isinstance(decoded, ParseError):
        logger.warning("personal script reply unusable: %s", decoded.reason)
        return None
    data = decoded.value
    background = data.get("personalBackground")
    if not isinstance(background, str) or not background.strip():
        return None
    if not isinstance(data.get("personalRoundContents"), list):
        return None
    return data


def _repair(data: dict[str, Any], script: Script, character: Character) -> PersonalScript:
    entries = [e for e in data["personalRoundContents"] if isinstance(e, dict)]
    by_number = {e.get("round"): e for e in entries if isinstance(e.get("round"), int)}

    contents = []
    for idx, rc in enumerate(script.round_contents):
        entry = by_number.get(rc.round)
        if entry is None and idx < len(entries) and not by_number:
            entry = entries[idx]
        entry = entry or {}
        plot = entry.get("personalPlot") or entry.get("plot")
        hidden = entry.get("hiddenInfo") or entry.get("secret")
        contents.append(PersonalRoundContent(
            round=rc.round,
            personal_plot=plot.strip() if isinstance(plot, str) and plot.strip()
            else f"Round {rc.round}: {rc.plot}",
            hidden_info=hidden.strip() if isinstance(hidden, str) and hidden.strip()
            else DEFAULT_HIDDEN_INFO,
        ))
    return PersonalScript(
        character_id=character.id,
        personal_background=data["personalBackground"].strip(),
        personal_round_contents=contents,
    )


async def synthesize_personal_script(
    llm: LLM,
    script: Script,
    character_id: str,
    all_characters: list[Character] | None = None,
    is_main_character: bool | None = None,
) -> PersonalScript:
    """Return the personal script for `character_id`; never fails on provider errors.

    Raises ValueError if the character is not part of the cast.
    """
    cast = all_characters if all_characters is not None else script.characters
    character = next((c for c in cast if c.id == character_id), None)
    if character is None:
        raise ValueError(f"Character {character_id!r} not found")
    is_main = character.is_main_character if is_main_character is None else is_main_character

    prompt = render_prompt(PERSONAL_SCRIPT_PROMPT, {
        "title": script.title,
        "background": script.background,
        "rounds": script.rounds,
        "character": character.model_dump(),
        "is_main": is_main,
        "cast": [c.model_dump() for c in cast],
        "round_contents": [rc.model_dump() for rc in script.round_contents],
    })

    data = _usable(decode_object(await ask(llm, "personal_script", prompt), required=_REQUIRED))
    if data is None:
        logger.warning("personal script for %s: retrying with strict JSON prompt", character_id)
        strict = STRICT_JSON_PREFIX + prompt + STRICT_JSON_SUFFIX
        data = _usable(decode_object(await ask(llm, "personal_script_retry", strict), required=_REQUIRED))

    if data is None:
        logger.warning("personal script for %s: using deterministic fallback", character_id)
        return fallback_personal_script(script, character)
    return _repair(data, script, character)


async def synthesize_all_personal_scripts(llm: LLM, script: Script) -> dict[str, PersonalScript]:
    """Personal scripts for the whole cast, in cast order, keyed by character id."""
    personal: dict[str, PersonalScript] = {}
    for character in script.characters:
        personal[character.id] = await synthesize_personal_script(
            llm, script, character.id, script.characters, character.is_main_character,
        )
    return personal
