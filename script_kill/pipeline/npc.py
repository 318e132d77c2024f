"""NPC speech policy.

For every chat message, each active NPC is asked in turn whether it wants to
speak. The provider's answer is only advice: the line is cleaned up here so
that NPCs always talk in the first person, never narrate themselves by name,
and stay within the length cap. An NPC that is addressed directly (named,
or asked a question) always answers, even when the provider declines or
fails.

Also home to the round-pacing advisor, which suggests but never performs a
round advance.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from script_kill.decoding import ParseError, decode_object
from script_kill.errors import SessionFinished
from script_kill.llm import LLM, ask
from script_kill.models import AINPCConfig, GameMessage, GameSession
from script_kill.prompts import (
    NPC_DECISION_PROMPT,
    NPC_REPLY_PROMPT,
    ROUND_ADVICE_PROMPT,
    render_prompt,
)

if TYPE_CHECKING:
    from script_kill.pipeline.session import SessionEngine

logger = logging.getLogger(__name__)

MAX_CHARS = 60
NO_CLUE = "No special clue"

_QUOTES = "\"'“”‘’「」『』"
_FIRST_PERSON_RE = re.compile(r"\bI\b|\b(?:[Mm]e|[Mm]y|[Mm]ine|[Mm]yself)\b|我")
_DOUBLE_FILLER_RE = re.compile(r"\bI think,?\s+I think\b")
_CLAUSE_BREAKS = ".!?;:,，。！？；："
_LOWERABLE = frozenset({
    "a", "an", "the", "this", "that", "these", "those", "it", "there",
    "someone", "somebody", "everyone", "nobody", "we", "they", "he", "she",
    "you", "his", "her", "their", "our", "your",
})

FALLBACK_REPLIES = (
    "That point is interesting, I think.",
    "I have an idea, hear me out.",
    "I suspect something here is off.",
    "I lean towards another explanation.",
    "I want to double-check one detail.",
)


@dataclass
class SpeechDecision:
    npc_id: str
    should_speak: bool
    content: str = ""
    forced: bool = False


@dataclass
class RoundAdvice:
    should_advance: bool
    reason: str


# ---------------------------------------------------------------------------
# Line normalisation
# ---------------------------------------------------------------------------

def _self_names(npc: AINPCConfig) -> list[str]:
    names = {n.strip() for n in (npc.name, npc.character_name or "") if n and n.strip()}
    # Longest first so "Lady Ash" wins over "Ash".
    return sorted(names, key=len, reverse=True)


def _name_pattern(name: str) -> str:
    escaped = re.escape(name)
    return rf"\b{escaped}\b" if name.isascii() else escaped


def _replace_self_name(text: str, name: str) -> str:
    pattern = _name_pattern(name)
    text = re.sub(pattern + r"['’]s\b", "my", text)

    def pronoun(match: re.Match) -> str:
        before = text[:match.start()].rstrip()
        # Subject at the start of a clause, object anywhere else.
        return "I" if not before or before[-1] in _CLAUSE_BREAKS else "me"

    return re.sub(pattern, pronoun, text)


def _add_filler(text: str) -> str:
    first, _, rest = text.partition(" ")
    if first.lower() in _LOWERABLE:
        text = f"{first.lower()} {rest}".rstrip()
    return f"I think {text}"


def normalize_line(text: str, npc: AINPCConfig, max_chars: int = MAX_CHARS) -> str:
    """Clean a model line: quotes, self-name, first person, length cap."""
    line = text.strip().strip(_QUOTES).strip()
    if not line:
        return ""
    for name in _self_names(npc):
        line = _replace_self_name(line, name)
    if not _FIRST_PERSON_RE.search(line):
        line = _add_filler(line)
    line = _DOUBLE_FILLER_RE.sub("I think", line)
    return line[:max_chars].rstrip()


def is_addressed(message: GameMessage | None, npc: AINPCConfig) -> bool:
    """True if the message names the NPC or ends in a question mark."""
    if message is None or message.sender_id == npc.id:
        return False
    content = message.content.strip()
    if any(re.search(_name_pattern(name), content, re.IGNORECASE) for name in _self_names(npc)):
        return True
    return content.endswith(("?", "？"))


def forced_line(message: GameMessage, max_chars: int = MAX_CHARS) -> str:
    """Short acknowledgement for an NPC that would otherwise ignore a direct question."""
    if "where" in message.content.lower():
        line = "I was elsewhere on an errand; I can explain now."
    else:
        line = "I'm here, just sorting my clues. My view comes soon."
    return line[:max_chars]


def _message_dicts(messages: list[GameMessage]) -> list[dict[str, str]]:
    return [{"sender_name": m.sender_name, "content": m.content} for m in messages]


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

class NPCSpeechPolicy:
    """Decides if and what each NPC says after a chat message.

    Args:
        llm:               Content provider.
        max_chars:         Length cap for every NPC line.
        speak_probability: When set, voluntary speech is kept only with this
                           probability. Direct answers are never dropped.
        rng:               Random source for the gate and canned replies.
        delay:             Seconds to wait between two speaking NPCs.
    """

    def __init__(
        self,
        llm: LLM,
        max_chars: int = MAX_CHARS,
        speak_probability: float | None = None,
        rng: random.Random | None = None,
        delay: float = 0.0,
    ) -> None:
        self._llm = llm
        self._max_chars = max_chars
        self._speak_probability = speak_probability
        self._rng = rng or random.Random()
        self._delay = delay

    async def decide(
        self, npc: AINPCConfig, session: GameSession, round_number: int | None = None
    ) -> SpeechDecision:
        round_number = round_number or session.current_round
        if not 1 <= round_number <= len(session.round_records):
            return SpeechDecision(npc_id=npc.id, should_speak=False)
        record = session.round_records[round_number - 1]
        newest = record.messages[-1] if record.messages else None
        addressed = is_addressed(newest, npc)

        clue = (
            record.private_clues.get(npc.character_id or "")
            or record.private_clues.get(npc.id)
            or NO_CLUE
        )
        prompt = render_prompt(NPC_DECISION_PROMPT, {
            "npc": npc.model_dump(),
            "friend_style": bool(npc.friend_style_of_user_id),
            "background": session.script_background,
            "round": round_number,
            "plot": record.plot,
            "clue": clue,
            "messages": _message_dicts(record.messages),
            "newest": _message_dicts([newest])[0] if newest else None,
            "max_chars": self._max_chars,
        })

        decoded = decode_object(await ask(self._llm, "npc_decision", prompt), required=("shouldSpeak",))
        line = ""
        if isinstance(decoded, ParseError):
            logger.warning("npc %s decision unusable: %s", npc.id, decoded.reason)
        elif decoded.value.get("shouldSpeak") is True and isinstance(decoded.value.get("content"), str):
            line = normalize_line(decoded.value["content"], npc, self._max_chars)

        if line and not addressed and self._speak_probability is not None:
            if self._rng.random() >= self._speak_probability:
                logger.debug("npc %s voluntary line dropped by probability gate", npc.id)
                line = ""

        if line:
            return SpeechDecision(npc_id=npc.id, should_speak=True, content=line)
        if addressed:
            logger.info("npc %s addressed directly, forcing a reply", npc.id)
            return SpeechDecision(
                npc_id=npc.id, should_speak=True,
                content=forced_line(newest, self._max_chars), forced=True,
            )
        return SpeechDecision(npc_id=npc.id, should_speak=False)

    async def reply(self, npc: AINPCConfig, session: GameSession, user_message: str) -> str:
        """A direct in-character answer to `user_message`. Always returns a line."""
        record = session.open_round
        prompt = render_prompt(NPC_REPLY_PROMPT, {
            "npc": npc.model_dump(),
            "background": session.script_background,
            "round": session.current_round,
            "user_message": user_message,
            "messages": _message_dicts(record.messages if record else []),
            "max_chars": self._max_chars,
        })
        text = await ask(self._llm, "npc_reply", prompt)
        line = normalize_line(text, npc, self._max_chars) if text else ""
        if not line:
            logger.warning("npc %s reply empty, using canned line", npc.id)
            line = self._rng.choice(FALLBACK_REPLIES)[:self._max_chars]
        return line

    async def react(
        self, engine: SessionEngine, session_id: str, trigger: GameMessage | None = None
    ) -> list[GameMessage]:
        """Let every active NPC respond to the latest message, in roster order.

        All NPCs decide on the same snapshot of the session; speaking NPCs are
        appended one after another with `delay` seconds in between.
        """
        session = engine.get_session(session_id)
        if session.status == "finished" or session.open_round is None:
            return []

        appended: list[GameMessage] = []
        for npc in session.ai_npcs:
            if not npc.is_active or (trigger is not None and trigger.sender_id == npc.id):
                continue
            decision = await self.decide(npc, session)
            if not decision.should_speak:
                continue
            if appended and self._delay > 0:
                await asyncio.sleep(self._delay)
            try:
                message = await engine.append_message(
                    session_id, npc.id, decision.content, is_npc=True,
                )
            except SessionFinished:
                logger.info("game %s finished while NPCs were answering", session_id)
                break
            appended.append(message)
        return appended


# ---------------------------------------------------------------------------
# Round pacing
# ---------------------------------------------------------------------------

async def advise_round_advance(llm: LLM, session: GameSession) -> RoundAdvice:
    """Ask whether the discussion is ready for the next round. Advisory only."""
    record = session.open_round
    if record is None:
        return RoundAdvice(should_advance=False, reason="No round is open yet")
    if session.is_final_round:
        return RoundAdvice(should_advance=False, reason="The final round is already open")

    prompt = render_prompt(ROUND_ADVICE_PROMPT, {
        "round": record.round,
        "rounds": session.rounds,
        "plot": record.plot,
        "messages": _message_dicts(record.messages),
    })
    decoded = decode_object(await ask(llm, "round_advice", prompt), required=("shouldAdvance",))
    if isinstance(decoded, ParseError):
        logger.warning("round advice unusable: %s", decoded.reason)
        return RoundAdvice(should_advance=False, reason="No advice available")
    reason = decoded.value.get("reason")
    return RoundAdvice(
        should_advance=decoded.value["shouldAdvance"] is True,
        reason=reason.strip() if isinstance(reason, str) and reason.strip() else "",
    )
