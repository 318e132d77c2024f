"""Process-wide wiring for the HTTP layer: data dir, storage, engine, provider.

init_runtime() must run before any route is served. The provider client is
rebuilt from config.json on every request so PATCH /settings takes effect
immediately; tests pass a stub instead.
"""

from pathlib import Path

from script_kill.config import build_llm, get_config
from script_kill.llm import LLM
from script_kill.pipeline import NPCSpeechPolicy, SessionEngine
from script_kill.storage import Storage

_data_dir: Path | None = None
_engine: SessionEngine | None = None
_llm_override: LLM | None = None


def init_runtime(data_dir: Path, llm: LLM | None = None) -> None:
    global _data_dir, _engine, _llm_override
    data_dir.mkdir(parents=True, exist_ok=True)
    _data_dir = data_dir
    _engine = SessionEngine(Storage(data_dir))
    _llm_override = llm


def data_dir() -> Path:
    assert _data_dir is not None, "Call init_runtime() before using the runtime"
    return _data_dir


def engine() -> SessionEngine:
    assert _engine is not None, "Call init_runtime() before using the runtime"
    return _engine


def config() -> dict:
    return get_config(data_dir())


def llm() -> LLM:
    if _llm_override is not None:
        return _llm_override
    return build_llm(config())


def speech_policy() -> NPCSpeechPolicy:
    game = config()["game"]
    return NPCSpeechPolicy(
        llm(),
        max_chars=int(game["npc_max_chars"]),
        speak_probability=game["npc_speak_probability"],
        delay=float(game["npc_delay"]),
    )
