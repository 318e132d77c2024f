"""Session state machine.

States: preparing → story_reading → round_playing → finished

  create        session is stored in "preparing" with no round records
  mark_ready    once every player is ready, round 1 is opened and the
                session moves to "story_reading" (the only automatic move)
  advance_round host only, strictly current → current + 1, up to `rounds`
  append_message chat goes into the open round; rejected before round 1
  end_story     only with the final round open; the session's end policy
                ("single" or "quorum") decides when it finalizes

Every mutation runs under a per-session asyncio.Lock, re-reads the record
from storage, checks all guards, and only then writes with the version it
read. A rejected operation therefore never leaves partial state, and a
writer outside this process is caught by Storage.put_session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from script_kill.errors import (
    InvalidRoster,
    NotFinalRound,
    NotHost,
    NotParticipant,
    RoundLimitExceeded,
    RoundMismatch,
    RoundNotOpen,
    ScriptNotFound,
    SessionFinished,
    SessionNotFound,
)
from script_kill.models import (
    AINPCConfig,
    EndPolicy,
    GameMessage,
    GameSession,
    GameSummary,
    PersonalScript,
    RoundRecord,
    Script,
    utcnow,
)
from script_kill.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class EndResult:
    """Outcome of an end-story request."""

    ended: bool
    confirmed: int
    total: int


def _record_from_script(script: Script, round_number: int) -> RoundRecord:
    content = script.round_contents[round_number - 1]
    return RoundRecord(
        round=round_number,
        plot=content.plot,
        private_clues=dict(content.private_clues),
    )


def check_roster(host_id: str, players: list[str], ai_npcs: list[AINPCConfig]) -> None:
    """Raise InvalidRoster unless every player and NPC id is unique and the host plays."""
    if not players:
        raise InvalidRoster("A game needs at least one player")
    if len(set(players)) != len(players):
        raise InvalidRoster("Player ids must be unique")
    if host_id not in players:
        raise InvalidRoster(f"Host {host_id} must be one of the players")
    npc_ids = [n.id for n in ai_npcs]
    if len(set(npc_ids)) != len(npc_ids):
        raise InvalidRoster("NPC ids must be unique")
    if set(players) & set(npc_ids):
        raise InvalidRoster("NPC ids must differ from player ids")


def assign_characters(
    script: Script, players: list[str], ai_npcs: list[AINPCConfig]
) -> tuple[dict[str, str], list[AINPCConfig]]:
    """Map players to main characters and NPCs to supporting characters.

    Players take main characters in order. An NPC keeps the character it
    names if that is a free supporting character, otherwise it takes the
    next free one. Raises InvalidRoster when the cast does not fit.
    """
    mains = script.main_characters
    if len(mains) != len(players):
        raise InvalidRoster(
            f"Script has {len(mains)} main characters for {len(players)} players"
        )
    player_characters = {pid: c.id for pid, c in zip(players, mains)}

    supporting = {c.id: c for c in script.supporting_characters}
    if len(ai_npcs) > len(supporting):
        raise InvalidRoster(
            f"Script has {len(supporting)} supporting characters for {len(ai_npcs)} NPCs"
        )
    taken: set[str] = set()
    for npc in ai_npcs:
        if npc.character_id is not None:
            if npc.character_id not in supporting or npc.character_id in taken:
                raise InvalidRoster(
                    f"NPC {npc.id} cannot play character {npc.character_id}"
                )
            taken.add(npc.character_id)

    free = [cid for cid in supporting if cid not in taken]
    assigned = []
    for npc in ai_npcs:
        cid = npc.character_id or free.pop(0)
        assigned.append(npc.model_copy(update={
            "character_id": cid,
            "character_name": supporting[cid].name,
        }))
    return player_characters, assigned


class SessionEngine:
    """Single writer per session on top of a Storage."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def storage(self) -> Storage:
        return self._storage

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    @asynccontextmanager
    async def _mutate(self, session_id: str) -> AsyncIterator[GameSession]:
        """Yield the latest stored session; persist it if the block completes."""
        # Unknown ids are rejected before a lock is created for them.
        self.get_session(session_id)
        async with self._lock(session_id):
            session = self.get_session(session_id)
            expected = session.version
            yield session
            self._storage.put_session(session, expected)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> GameSession:
        session = self._storage.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Game {session_id} not found")
        return session

    def get_script(self, script_id: str) -> Script:
        script = self._storage.get_script(script_id)
        if script is None:
            raise ScriptNotFound(f"Script {script_id} not found")
        return script

    def personal_script_for(self, session_id: str, player_id: str) -> PersonalScript:
        """The personal script of the character a player plays."""
        session = self.get_session(session_id)
        if not session.is_participant(player_id):
            raise NotParticipant(f"Player {player_id} is not in game {session_id}")
        character_id = session.player_characters[player_id]
        personal = session.personal_scripts.get(character_id)
        if personal is None:
            raise ScriptNotFound(f"No personal script for character {character_id}")
        return personal

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create_session(
        self,
        script: Script,
        host_id: str,
        players: list[str],
        ai_npcs: list[AINPCConfig] | None = None,
        plot_requirement: str = "",
        room_id: str | None = None,
        personal_scripts: dict[str, PersonalScript] | None = None,
        end_policy: EndPolicy = "quorum",
    ) -> GameSession:
        """Store a new session in "preparing" with explicit character mappings."""
        npcs = list(ai_npcs or [])
        check_roster(host_id, players, npcs)

        player_characters, assigned = assign_characters(script, players, npcs)
        session = GameSession(
            room_id=room_id,
            script_id=script.id,
            host_id=host_id,
            players=list(players),
            ai_npcs=assigned,
            player_characters=player_characters,
            ai_characters={n.id: n.character_id for n in assigned},
            personal_scripts=dict(personal_scripts or {}),
            plot_requirement=plot_requirement,
            rounds=script.rounds,
            script_background=script.background,
            end_policy=end_policy,
        )
        self._storage.create_session(session)
        logger.info(
            "game %s created: script=%s players=%d npcs=%d policy=%s",
            session.id, script.id, len(players), len(assigned), end_policy,
        )
        return session

    async def mark_ready(self, session_id: str, player_id: str) -> GameSession:
        """Record readiness; opens round 1 once everyone is ready."""
        async with self._mutate(session_id) as session:
            if session.status == "finished":
                raise SessionFinished(f"Game {session_id} is finished")
            if not session.is_participant(player_id):
                raise NotParticipant(f"Player {player_id} is not in game {session_id}")
            if player_id not in session.ready_players:
                session.ready_players.append(player_id)

            if set(session.players) <= set(session.ready_players) and not session.round_records:
                script = self.get_script(session.script_id)
                session.round_records.append(_record_from_script(script, 1))
                session.status = "story_reading"
                logger.info("game %s: all players ready, round 1 opened", session_id)
        return session

    async def advance_round(
        self, session_id: str, caller_id: str, current_round: int, next_round: int
    ) -> GameSession:
        """Open `next_round`. Only the host may do this, one round at a time."""
        async with self._mutate(session_id) as session:
            if session.status == "finished":
                raise SessionFinished(f"Game {session_id} is finished")
            if caller_id != session.host_id:
                raise NotHost("Only the host can advance the round")
            if not session.round_records:
                raise RoundNotOpen("Round 1 opens when every player is ready")
            if next_round != current_round + 1:
                raise RoundMismatch(
                    f"Cannot go from round {current_round} to round {next_round}"
                )
            if session.current_round != current_round:
                raise RoundMismatch(
                    f"Round {session.current_round} is open, not round {current_round}"
                )
            if next_round > session.rounds:
                raise RoundLimitExceeded(
                    f"Game has {session.rounds} rounds, cannot open round {next_round}"
                )

            script = self.get_script(session.script_id)
            session.round_records[-1].is_finished = True
            session.round_records.append(_record_from_script(script, next_round))
            session.status = "round_playing"
            logger.info("game %s: round %d opened", session_id, next_round)
        return session

    def _sender_name(self, session: GameSession, sender_id: str) -> str:
        npc = session.npc(sender_id)
        if npc is not None:
            return npc.character_name or npc.name
        character = self.get_script(session.script_id).character(
            session.player_characters.get(sender_id, "")
        )
        return character.name if character else sender_id

    async def append_message(
        self,
        session_id: str,
        sender_id: str,
        content: str,
        is_npc: bool = False,
        sender_name: str | None = None,
    ) -> GameMessage:
        """Append a chat line to the open round.

        The sender name defaults to the sender's character name at send
        time. Timestamps never go backwards within a session.
        """
        content = content.strip()
        if not content:
            raise ValueError("Message content is empty")

        async with self._mutate(session_id) as session:
            if session.status == "finished":
                raise SessionFinished(f"Game {session_id} is finished")
            record = session.open_round
            if record is None:
                raise RoundNotOpen("No round is open yet")
            known = session.npc(sender_id) is not None if is_npc else session.is_participant(sender_id)
            if not known:
                raise NotParticipant(f"{sender_id} is not in game {session_id}")

            timestamp = utcnow()
            previous = session.all_messages()
            if previous and timestamp <= previous[-1].timestamp:
                timestamp = previous[-1].timestamp + timedelta(microseconds=1)

            message = GameMessage(
                sender_id=sender_id,
                sender_name=sender_name or self._sender_name(session, sender_id),
                content=content,
                timestamp=timestamp,
                is_npc=is_npc,
            )
            record.messages.append(message)
        logger.debug("game %s round %d: message from %s", session_id, record.round, sender_id)
        return message

    def _finalize(self, session: GameSession, ended_by: str) -> None:
        session.status = "finished"
        session.finished_at = utcnow()
        session.ended_by = ended_by
        session.round_records[-1].is_finished = True
        summaries = dict(session.final_summary or {})
        for pid in session.players:
            summaries.setdefault(pid, GameSummary(player_id=pid))
        session.final_summary = summaries
        logger.info("game %s finished (ended by %s)", session.id, ended_by)

    async def end_story(self, session_id: str, player_id: str) -> EndResult:
        """Request the end of the story; allowed only while the final round is open."""
        async with self._mutate(session_id) as session:
            if session.status == "finished":
                raise SessionFinished(f"Game {session_id} is finished")
            if not session.is_participant(player_id):
                raise NotParticipant(f"Player {player_id} is not in game {session_id}")
            if not session.is_final_round:
                raise NotFinalRound(
                    f"The story can only end in round {session.rounds}, "
                    f"round {session.current_round} is open"
                )

            if player_id not in session.end_confirmed_players:
                session.end_confirmed_players.append(player_id)
            confirmed = len(session.end_confirmed_players)
            total = len(session.players)

            if session.end_policy == "single" or set(session.players) <= set(session.end_confirmed_players):
                self._finalize(session, player_id)
                return EndResult(ended=True, confirmed=confirmed, total=total)
            logger.info("game %s: %d/%d players want to end", session_id, confirmed, total)
            return EndResult(ended=False, confirmed=confirmed, total=total)

    async def store_summary(
        self, session_id: str, player_id: str, summary: GameSummary
    ) -> GameSession:
        """Write one player's summary slot."""
        async with self._mutate(session_id) as session:
            if not session.is_participant(player_id):
                raise NotParticipant(f"Player {player_id} is not in game {session_id}")
            summaries = dict(session.final_summary or {})
            summaries[player_id] = summary
            session.final_summary = summaries
        return session
