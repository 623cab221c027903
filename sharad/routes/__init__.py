"""FastAPI admin endpoints under /api.

Endpoint groups: health and sessions (state, turn log, administrative
function calls). Everything is read-only except POST .../calls, which goes
through the same dispatcher and store lock as the game loop.
"""

from fastapi import APIRouter

from .sessions import router as sessions_router

router = APIRouter()
router.include_router(sessions_router)
