"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings, check-connection) and games
(start, state, personal script, ready, advance-round, chat, ai-response,
round-advice, end-story, generate-summary). Game rejections are returned as
{"detail": {"code": ..., "message": ...}} with 404, 403 or 409.
"""

from fastapi import APIRouter

from .games import router as games_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(games_router)
