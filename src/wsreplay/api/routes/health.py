from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """
    Minimal health check response.

    active_sessions counts replay sessions that are collecting or delivering.
    """

    status: str
    environment: str
    active_sessions: int


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
def health(request: Request) -> HealthResponse:
    state = request.app.state
    return HealthResponse(
        status="ok",
        environment=state.settings.env,
        active_sessions=len(state.registry),
    )
