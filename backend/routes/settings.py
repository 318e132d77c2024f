"""Health check, settings and connection check endpoints."""

import httpx
from fastapi import APIRouter

from backend import runtime
from script_kill.config import public_config, update_config

from .models import CheckConnectionBody, SettingsBody

router = APIRouter()

_MODEL_LIST_PATHS = {
    "gemini": "/v1beta/models",
    "openai": "/v1/models",
    "koboldcpp": "/api/v1/model",
}


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection(body: CheckConnectionBody):
    """Quick reachability check against a provider URL."""
    url = f"{body.provider_url.rstrip('/')}{_MODEL_LIST_PATHS[body.provider_format]}"
    headers: dict[str, str] = {}
    if body.api_key:
        if body.provider_format == "gemini":
            headers["X-goog-api-key"] = body.api_key
        else:
            headers["Authorization"] = f"Bearer {body.api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        return {"ok": True}
    except httpx.HTTPError:
        return {"ok": False}


@router.get("/settings")
async def get_settings():
    """Get settings (provider connection and game options). The API key is masked."""
    return public_config(runtime.config())


@router.patch("/settings")
async def update_settings(body: SettingsBody):
    """Update settings (partial merge per group)."""
    return public_config(update_config(runtime.data_dir(), body.model_dump(exclude_none=True)))
