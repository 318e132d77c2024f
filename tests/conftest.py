"""Shared fixtures: a scripted provider stub, storage, engine and a ready-made game."""

from collections.abc import Callable
from pathlib import Path

import pytest

from script_kill.llm import LLMError
from script_kill.models import AINPCConfig, GameSession, Script
from script_kill.pipeline import SessionEngine
from script_kill.pipeline.script_writer import placeholder_cast, placeholder_round
from script_kill.storage import Storage

Response = str | list[str] | Callable[[str], str]


class StubLLM:
    """Replays canned responses per stage and records every call.

    A list is consumed in order and its last item repeats. A stage with no
    canned response returns `default`, or raises LLMError when default is None.
    """

    def __init__(self, responses: dict[str, Response] | None = None, default: str | None = None) -> None:
        self.responses = {k: list(v) if isinstance(v, list) else v for k, v in (responses or {}).items()}
        self.default = default
        self.calls: list[tuple[str, str]] = []

    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        response = self.responses.get(stage)
        if response is None:
            if self.default is None:
                raise LLMError(f"no response scripted for {stage}")
            return self.default
        if isinstance(response, list):
            return response.pop(0) if len(response) > 1 else response[0]
        if callable(response):
            return response(prompt)
        return response


class FailingLLM:
    """Every call fails like an unreachable backend."""

    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls += 1
        raise LLMError("Cannot connect to LLM backend")


@pytest.fixture
def stub_llm() -> type[StubLLM]:
    return StubLLM


@pytest.fixture
def failing_llm() -> FailingLLM:
    return FailingLLM()


@pytest.fixture
def storage(tmp_path: Path) -> Storage:
    return Storage(tmp_path)


@pytest.fixture
def engine(storage: Storage) -> SessionEngine:
    return SessionEngine(storage)


def make_script(rounds: int = 3, human_count: int = 2, ai_count: int = 1) -> Script:
    cast = placeholder_cast(human_count, ai_count)
    return Script(
        title="The Lighthouse Keeper",
        rounds=rounds,
        background="A storm cuts the island off; the keeper is found dead at dawn.",
        characters=cast,
        round_contents=[placeholder_round("a death at the lighthouse", n, rounds, cast) for n in range(1, rounds + 1)],
    )


@pytest.fixture
def script(storage: Storage) -> Script:
    return storage.save_script(make_script())


@pytest.fixture
def npc() -> AINPCConfig:
    return AINPCConfig(id="npc_ash", name="Ash", style="dry", personality="guarded")


@pytest.fixture
def session(engine: SessionEngine, script: Script, npc: AINPCConfig) -> GameSession:
    """rounds=3, players alice (host) and bob, one NPC on the supporting character."""
    return engine.create_session(
        script,
        host_id="alice",
        players=["alice", "bob"],
        ai_npcs=[npc],
        plot_requirement="a death at the lighthouse",
    )


@pytest.fixture
async def playing(engine: SessionEngine, session: GameSession) -> GameSession:
    """The same game with both players ready, so round 1 is open."""
    await engine.mark_ready(session.id, "alice")
    return await engine.mark_ready(session.id, "bob")


@pytest.fixture
async def final_round(engine: SessionEngine, playing: GameSession) -> GameSession:
    """The same game with round 3 of 3 open."""
    await engine.advance_round(playing.id, "alice", 1, 2)
    return await engine.advance_round(playing.id, "alice", 2, 3)
