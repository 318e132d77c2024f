"""Core domain models.

Every synthesizer, the session state machine and the storage layer operate
on these types. Pydantic is used for validation and serialisation at every
data boundary.

Lifecycle:
  Script, PersonalScript  - created once per game, read-only afterwards.
  GameSession             - created in "preparing", mutated by the state
                            machine, frozen once "finished". Summaries are
                            attached post-hoc.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, model_validator

SessionStatus = Literal["preparing", "story_reading", "round_playing", "finished"]
EndPolicy = Literal["single", "quorum"]

MAX_ROUNDS = 30


def new_id(prefix: str) -> str:
    """Return an opaque id such as "game_3f9c0d2e41ab"."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Script - the shared narrative skeleton
# ---------------------------------------------------------------------------

class Character(BaseModel):
    """A role in the script. Main characters go to humans, the rest to NPCs."""

    id: str
    name: str
    identity: str = ""
    personality: str = ""
    is_main_character: bool = False


class RoundContent(BaseModel):
    """Planned content of one round: plot plus a private clue per character."""

    round: int
    plot: str
    private_clues: dict[str, str] = Field(default_factory=dict)


class Script(BaseModel):
    id: str = Field(default_factory=lambda: new_id("script"))
    title: str
    rounds: int = Field(ge=1, le=MAX_ROUNDS)
    background: str = ""
    characters: list[Character]
    round_contents: list[RoundContent]
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = "system"
    derivative_of: str | None = None
    root_original: str | None = None

    @model_validator(mode="after")
    def _rounds_contiguous(self) -> Script:
        numbers = [rc.round for rc in self.round_contents]
        if numbers != list(range(1, self.rounds + 1)):
            raise ValueError(
                f"round_contents must be numbered 1..{self.rounds}, got {numbers}"
            )
        return self

    def character(self, character_id: str) -> Character | None:
        for c in self.characters:
            if c.id == character_id:
                return c
        return None

    @property
    def main_characters(self) -> list[Character]:
        return [c for c in self.characters if c.is_main_character]

    @property
    def supporting_characters(self) -> list[Character]:
        return [c for c in self.characters if not c.is_main_character]


class PersonalRoundContent(BaseModel):
    round: int
    personal_plot: str
    hidden_info: str


class PersonalScript(BaseModel):
    """One character's private lens over the shared script."""

    character_id: str
    personal_background: str
    personal_round_contents: list[PersonalRoundContent]


# ---------------------------------------------------------------------------
# Session - the mutable play-through
# ---------------------------------------------------------------------------

class AINPCConfig(BaseModel):
    """An AI-controlled participant.

    `friend_style_of_user_id` names a consenting human whose speaking style
    the persona imitates. It grants style access only, not ownership.
    """

    id: str
    name: str
    style: str = ""
    personality: str = ""
    is_active: bool = True
    character_id: str | None = None
    character_name: str | None = None
    friend_style_of_user_id: str | None = None


class GameMessage(BaseModel):
    """A chat line. `sender_name` is the character name at send time."""

    id: str = Field(default_factory=lambda: new_id("msg"))
    sender_id: str
    sender_name: str
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    is_npc: bool = False


class RoundRecord(BaseModel):
    """An opened round. Plot and clues are copied from the script at open time."""

    round: int
    plot: str
    private_clues: dict[str, str] = Field(default_factory=dict)
    messages: list[GameMessage] = Field(default_factory=list)
    is_finished: bool = False


class PlayerAnalysis(BaseModel):
    player_id: str
    player_name: str
    viewpoint_summary: str = ""
    plot_related_comment: str = ""
    style_comment: str = ""


class GameSummary(BaseModel):
    player_id: str
    story_review: str = ""
    plot_analysis: str = ""
    story_elevation: str = ""
    player_analysis: dict[str, PlayerAnalysis] = Field(default_factory=dict)

    def is_complete(self, players: list[str] | None = None) -> bool:
        """True when all three narrative sections hold text.

        With `players`, every one of them must also have an analysis.
        """
        sections = all(
            part.strip()
            for part in (self.story_review, self.plot_analysis, self.story_elevation)
        )
        return sections and all(pid in self.player_analysis for pid in players or ())


class GameSession(BaseModel):
    id: str = Field(default_factory=lambda: new_id("game"))
    room_id: str | None = None
    script_id: str
    host_id: str
    players: list[str]
    ai_npcs: list[AINPCConfig] = Field(default_factory=list)
    player_characters: dict[str, str] = Field(default_factory=dict)
    ai_characters: dict[str, str] = Field(default_factory=dict)
    personal_scripts: dict[str, PersonalScript] = Field(default_factory=dict)
    plot_requirement: str = ""
    rounds: int = Field(ge=1, le=MAX_ROUNDS)
    script_background: str = ""
    round_records: list[RoundRecord] = Field(default_factory=list)
    status: SessionStatus = "preparing"
    ready_players: list[str] = Field(default_factory=list)
    end_confirmed_players: list[str] = Field(default_factory=list)
    end_policy: EndPolicy = "quorum"
    ended_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: datetime | None = None
    final_summary: dict[str, GameSummary] | None = None
    version: int = 0

    @property
    def current_round(self) -> int:
        """Number of the open round, 0 before round 1 is opened."""
        return len(self.round_records)

    @property
    def open_round(self) -> RoundRecord | None:
        return self.round_records[-1] if self.round_records else None

    @property
    def is_final_round(self) -> bool:
        return self.current_round == self.rounds

    def is_participant(self, player_id: str) -> bool:
        return player_id in self.players

    def npc(self, npc_id: str) -> AINPCConfig | None:
        for n in self.ai_npcs:
            if n.id == npc_id:
                return n
        return None

    def all_messages(self) -> list[GameMessage]:
        return [m for record in self.round_records for m in record.messages]
