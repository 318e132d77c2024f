"""Pydantic request models for API endpoints."""

from typing import Any

from pydantic import BaseModel, Field

from script_kill.llm import ProviderFormat
from script_kill.models import MAX_ROUNDS, AINPCConfig, EndPolicy


class StartGameBody(BaseModel):
    host_id: str
    players: list[str] = Field(min_length=1)
    plot_requirement: str = Field(min_length=1)
    rounds: int = Field(ge=1, le=MAX_ROUNDS)
    ai_npcs: list[AINPCConfig] = Field(default_factory=list)
    room_id: str | None = None
    end_policy: EndPolicy | None = None


class PlayerBody(BaseModel):
    player_id: str


class AdvanceRoundBody(BaseModel):
    player_id: str
    current_round: int
    next_round: int


class ChatBody(BaseModel):
    player_id: str
    message: str = Field(min_length=1)


class AIResponseBody(BaseModel):
    npc_id: str
    message: str = Field(min_length=1)


class SummaryBody(BaseModel):
    player_id: str
    force: bool = False


class SettingsBody(BaseModel):
    llm: dict[str, Any] | None = None
    game: dict[str, Any] | None = None


class CheckConnectionBody(BaseModel):
    provider_url: str
    api_key: str = ""
    provider_format: ProviderFormat = "gemini"
