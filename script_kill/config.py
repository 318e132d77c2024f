"""App configuration (provider connection and game options).

Stored as {data_dir}/config.json. get_config() returns the defaults merged
with stored values and then with environment overrides; update_config()
merges partial updates group by group and persists them.

Environment overrides (read after python-dotenv has loaded .env):
  LLM_PROVIDER_URL, LLM_PROVIDER_FORMAT, LLM_MODEL, LLM_HEAVY_MODEL,
  LLM_FALLBACK_MODEL, LLM_API_KEY (or GEMINI_API_KEY)
"""

from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any

from script_kill.llm import HttpLLM

_CONFIG_DEFAULTS: dict[str, Any] = {
    "llm": {
        "provider_url": "https://generativelanguage.googleapis.com",
        "api_key": "",
        "provider_format": "gemini",
        "model": "gemini-2.0-flash",
        "heavy_model": "gemini-2.5-pro",
        "fallback_model": "gemini-2.0-flash",
        "timeout": 60,
        "retries": 3,
    },
    "game": {
        "end_policy": "quorum",
        "npc_delay": 0.8,
        "npc_speak_probability": None,
        "npc_max_chars": 60,
        "max_rounds": 30,
    },
}

MASK = "***"

_ENV_OVERRIDES = {
    "LLM_PROVIDER_URL": "provider_url",
    "LLM_PROVIDER_FORMAT": "provider_format",
    "LLM_MODEL": "model",
    "LLM_HEAVY_MODEL": "heavy_model",
    "LLM_FALLBACK_MODEL": "fallback_model",
    "GEMINI_API_KEY": "api_key",
    "LLM_API_KEY": "api_key",
}


def _config_path(data_dir: Path) -> Path:
    return data_dir / "config.json"


def _stored(data_dir: Path) -> dict[str, Any]:
    path = _config_path(data_dir)
    if not path.is_file():
        return {}
    return json.loads(path.read_text(encoding="utf-8"))


def _merge(config: dict[str, Any], fields: dict[str, Any]) -> None:
    for group in ("llm", "game"):
        vals = fields.get(group)
        if isinstance(vals, dict):
            config[group].update({k: v for k, v in vals.items() if k in config[group]})


def get_config(data_dir: Path, use_env: bool = True) -> dict[str, Any]:
    """Read config, returning defaults merged with stored values and env."""
    config = copy.deepcopy(_CONFIG_DEFAULTS)
    _merge(config, _stored(data_dir))
    if use_env:
        for var, key in _ENV_OVERRIDES.items():
            value = os.getenv(var, "").replace('"', "").strip()
            if value:
                config["llm"][key] = value
    return config


def update_config(data_dir: Path, fields: dict[str, Any]) -> dict[str, Any]:
    """Merge fields into the stored config and persist. Returns the full config."""
    stored = get_config(data_dir, use_env=False)
    llm = fields.get("llm")
    if isinstance(llm, dict) and llm.get("api_key") == MASK:
        # A masked key echoed back from GET /settings keeps the stored one.
        fields = {**fields, "llm": {k: v for k, v in llm.items() if k != "api_key"}}
    _merge(stored, fields)
    _config_path(data_dir).write_text(json.dumps(stored, indent=2), encoding="utf-8")
    return get_config(data_dir)


def public_config(config: dict[str, Any]) -> dict[str, Any]:
    """Config safe to return over HTTP: the API key is masked."""
    masked = copy.deepcopy(config)
    if masked["llm"].get("api_key"):
        masked["llm"]["api_key"] = MASK
    return masked


def build_llm(config: dict[str, Any]) -> HttpLLM:
    """Construct the provider client. The key is handed over here, never stashed globally."""
    llm = config["llm"]
    return HttpLLM(
        provider_url=llm["provider_url"],
        api_key=llm["api_key"],
        provider_format=llm["provider_format"],
        model=llm["model"],
        heavy_model=llm["heavy_model"],
        fallback_model=llm["fallback_model"],
        timeout=float(llm["timeout"]),
        retries=int(llm["retries"]),
    )
