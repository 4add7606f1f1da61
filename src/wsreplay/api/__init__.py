from __future__ import annotations

from fastapi import APIRouter

from wsreplay.api.routes.health import router as health_router

# Top-level HTTP API router (the replay websocket is mounted at the root)
router = APIRouter()

# Route composition
router.include_router(health_router)
